"""User accounts — the identity provider's backing table."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Index

from src.db.tables import Base, utcnow


class UserRow(Base):
    """Account with a single role. Staff-capable roles: admin, moderator, staff."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=True, unique=True, index=True)
    password_hash = Column(String(256), nullable=True)  # PBKDF2-SHA256
    display_name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="user")  # admin, moderator, staff, user
    is_active = Column(Boolean, nullable=False, default=True)
    suspended_until = Column(DateTime(timezone=True), nullable=True)  # set by a timed suspension

    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_active_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_users_role_active", "role", "is_active"),
    )
