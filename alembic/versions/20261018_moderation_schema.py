"""Create users, reports, moderation_logs and notifications tables.

Revision ID: 3f9c2a7d1b04
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "3f9c2a7d1b04"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("password_hash", sa.String(256), nullable=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("suspended_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role_active", "users", ["role", "is_active"])

    op.create_table(
        "reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("reporter_id", sa.String(36), nullable=False),
        sa.Column("target_kind", sa.String(10), nullable=False),
        sa.Column("reported_user_id", sa.String(36), nullable=True),
        sa.Column("content_ref", sa.String(500), nullable=True),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("severity", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("evidence", sa.JSON, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("handled_by", sa.String(36), nullable=True),
        sa.Column("handled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_note", sa.Text, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(target_kind = 'user' AND reported_user_id IS NOT NULL AND content_ref IS NULL)"
            " OR (target_kind = 'content' AND content_ref IS NOT NULL AND reported_user_id IS NULL)"
            " OR (target_kind = 'general' AND reported_user_id IS NULL AND content_ref IS NULL)",
            name="ck_report_single_target",
        ),
        sa.CheckConstraint(
            "status = 'pending' OR handled_by IS NOT NULL",
            name="ck_report_handled_by_set",
        ),
    )
    op.create_index("ix_reports_reporter_id", "reports", ["reporter_id"])
    op.create_index("ix_reports_reported_user_id", "reports", ["reported_user_id"])
    op.create_index("ix_reports_handled_by", "reports", ["handled_by"])
    op.create_index("ix_report_status_created", "reports", ["status", "created_at"])
    op.create_index("ix_report_target", "reports", ["target_kind", "content_ref"])

    op.create_table(
        "moderation_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("target_report_id", sa.String(36), nullable=True),
        sa.Column("target_user_id", sa.String(36), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_moderation_logs_actor_id", "moderation_logs", ["actor_id"])
    op.create_index("ix_moderation_logs_target_report_id", "moderation_logs", ["target_report_id"])
    op.create_index("ix_modlog_action_ts", "moderation_logs", ["action", "created_at"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("recipient_id", sa.String(36), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("related_report_id", sa.String(36), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("action_url", sa.String(500), nullable=True),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retracted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("related_report_id", "recipient_id", "kind", name="uq_notification_dedup"),
    )
    op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])
    op.create_index("ix_notifications_related_report_id", "notifications", ["related_report_id"])
    op.create_index("ix_notification_recipient_unread", "notifications", ["recipient_id", "read"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("moderation_logs")
    op.drop_table("reports")
    op.drop_table("users")
