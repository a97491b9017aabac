"""Moderation audit trail and notification tables."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Text, DateTime, Boolean,
    Index, UniqueConstraint,
)

from src.db.tables import Base, utcnow


class ModerationLogRow(Base):
    """Append-only audit record. Written once per state-changing action, never updated."""
    __tablename__ = "moderation_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id = Column(String(36), nullable=False, index=True)
    action = Column(String(50), nullable=False)  # report transitions plus warn_user, suspend_user, deactivate_user
    target_report_id = Column(String(36), nullable=True, index=True)
    target_user_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_modlog_action_ts", "action", "created_at"),
    )


class NotificationRow(Base):
    """One delivery unit for one recipient."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_id = Column(String(36), nullable=False, index=True)
    kind = Column(String(30), nullable=False)
    related_report_id = Column(String(36), nullable=True, index=True)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(500), nullable=True)
    priority = Column(String(10), nullable=False, default="medium")  # low, medium, high, urgent
    read = Column(Boolean, nullable=False, default=False)
    # Soft delete: retracted rows keep their dedup key so a retried fan-out can't resurrect them
    retracted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("related_report_id", "recipient_id", "kind", name="uq_notification_dedup"),
        Index("ix_notification_recipient_unread", "recipient_id", "read"),
    )
