"""push queue

Revision ID: 0001_push_queue
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_push_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Notifications carry derived aggregates guarded by check constraints.
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("request_id", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("targets_json", postgresql.JSONB(), nullable=False),
        sa.Column("data_json", postgresql.JSONB(), nullable=True),
        sa.Column("sound", sa.String(), nullable=True),
        sa.Column("icon", sa.String(), nullable=True),
        sa.Column("image", sa.String(), nullable=True),
        sa.Column("route", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False, server_default="general"),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("queue_priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("total_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_rate", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancelled_reason", sa.Text(), nullable=True),
        sa.Column(
            "retry_of_id",
            sa.String(),
            sa.ForeignKey("notifications.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_notifications_status",
        ),
        sa.CheckConstraint(
            "type IN ('general', 'appointment', 'result', 'emergency', 'promotion', 'reminder')",
            name="ck_notifications_type",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high')", name="ck_notifications_priority"),
        sa.CheckConstraint("target_kind IN ('tokens', 'topic', 'user')", name="ck_notifications_target_kind"),
        sa.CheckConstraint(
            "total_sent >= 0 AND successful >= 0 AND failed >= 0",
            name="ck_notifications_counts_non_negative",
        ),
        sa.CheckConstraint("total_sent >= successful + failed", name="ck_notifications_counts_consistent"),
        sa.CheckConstraint("success_rate >= 0 AND success_rate <= 100", name="ck_notifications_success_rate"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_retry_of_id", "notifications", ["retry_of_id"])
    op.create_index("ix_notifications_status_created", "notifications", ["status", "created_at"])

    # Jobs are the durable queue; claims are conditional updates on status.
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False, unique=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column(
            "notification_id",
            sa.String(),
            sa.ForeignKey("notifications.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_jobs_status",
        ),
        sa.CheckConstraint("type IN ('notification', 'bulk', 'retry')", name="ck_jobs_type"),
        sa.CheckConstraint("attempts >= 0 AND max_attempts >= 1", name="ck_jobs_attempts"),
    )
    op.create_index("ix_jobs_claim", "jobs", ["status", "scheduled_at", "priority"])
    op.create_index("ix_jobs_notification_id", "jobs", ["notification_id"])
    op.create_index("ix_jobs_status_started", "jobs", ["status", "started_at"])

    # Responses are append-only delivery history used to derive aggregates.
    op.create_table(
        "notification_responses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "notification_id",
            sa.String(),
            sa.ForeignKey("notifications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("target", sa.String(), nullable=False),
        sa.Column("target_kind", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_notification_responses_notification_target",
        "notification_responses",
        ["notification_id", "target"],
    )


def downgrade() -> None:
    op.drop_index("ix_notification_responses_notification_target", table_name="notification_responses")
    op.drop_table("notification_responses")
    op.drop_index("ix_jobs_status_started", table_name="jobs")
    op.drop_index("ix_jobs_notification_id", table_name="jobs")
    op.drop_index("ix_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_notifications_status_created", table_name="notifications")
    op.drop_index("ix_notifications_retry_of_id", table_name="notifications")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
