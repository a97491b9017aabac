"""Moderation report table — the only row that needs exclusive-transition discipline."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, JSON,
    CheckConstraint, Index,
)

from src.db.tables import Base, utcnow


class ReportRow(Base):
    """User-submitted report against a user, a piece of content, or nothing in particular."""
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reporter_id = Column(String(36), nullable=False, index=True)

    # Exactly one target: user, content, or the synthetic "general" marker
    target_kind = Column(String(10), nullable=False)  # user, content, general
    reported_user_id = Column(String(36), nullable=True, index=True)
    content_ref = Column(String(500), nullable=True)

    reason = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(String(10), nullable=False, default="medium")  # low, medium, high, critical
    evidence = Column(JSON, default=list)  # ordered list of opaque refs

    status = Column(String(20), default="pending", nullable=False)  # pending, in_progress, resolved, dismissed
    handled_by = Column(String(36), nullable=True, index=True)
    handled_at = Column(DateTime(timezone=True), nullable=True)
    resolution_note = Column(Text, nullable=True)

    # Bumped on every write; guards conditional updates and orders realtime events
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(target_kind = 'user' AND reported_user_id IS NOT NULL AND content_ref IS NULL)"
            " OR (target_kind = 'content' AND content_ref IS NOT NULL AND reported_user_id IS NULL)"
            " OR (target_kind = 'general' AND reported_user_id IS NULL AND content_ref IS NULL)",
            name="ck_report_single_target",
        ),
        CheckConstraint(
            "status = 'pending' OR handled_by IS NOT NULL",
            name="ck_report_handled_by_set",
        ),
        Index("ix_report_status_created", "status", "created_at"),
        Index("ix_report_target", "target_kind", "content_ref"),
    )
