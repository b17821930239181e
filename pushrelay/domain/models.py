from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pushrelay.core.clock import utc_now


# Use JSONB on Postgres while keeping sqlite-backed tests on the generic JSON type.
JsonType = JSON().with_variant(JSONB(), "postgresql")

NOTIFICATION_TYPES = ("general", "appointment", "result", "emergency", "promotion", "reminder")
NOTIFICATION_PRIORITIES = ("low", "normal", "high")
NOTIFICATION_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
NOTIFICATION_TERMINAL_STATUSES = ("completed", "failed", "cancelled")
JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
JOB_TERMINAL_STATUSES = ("completed", "failed", "cancelled")
TARGET_KINDS = ("tokens", "topic", "user")


def new_id() -> str:
    return uuid4().hex


def _in_check(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    pass


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        CheckConstraint(_in_check("status", NOTIFICATION_STATUSES), name="ck_notifications_status"),
        CheckConstraint(_in_check("type", NOTIFICATION_TYPES), name="ck_notifications_type"),
        CheckConstraint(_in_check("priority", NOTIFICATION_PRIORITIES), name="ck_notifications_priority"),
        CheckConstraint(_in_check("target_kind", TARGET_KINDS), name="ck_notifications_target_kind"),
        # Aggregates are derived from responses, so they must never disagree with each other.
        CheckConstraint(
            "total_sent >= 0 AND successful >= 0 AND failed >= 0", name="ck_notifications_counts_non_negative"
        ),
        CheckConstraint("total_sent >= successful + failed", name="ck_notifications_counts_consistent"),
        CheckConstraint("success_rate >= 0 AND success_rate <= 100", name="ck_notifications_success_rate"),
        Index("ix_notifications_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    # Caller idempotency key; a second request with the same key is rejected.
    request_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    target_kind: Mapped[str] = mapped_column(String, nullable=False)
    # Resolved delivery targets, stored so retries never need to re-resolve users.
    targets_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, nullable=False, default=list)
    data_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    sound: Mapped[str | None] = mapped_column(String, nullable=True)
    icon: Mapped[str | None] = mapped_column(String, nullable=True)
    image: Mapped[str | None] = mapped_column(String, nullable=True)
    route: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str] = mapped_column(String, nullable=False, default="general")
    priority: Mapped[str] = mapped_column(String, nullable=False, default="normal")
    # Integer queue priority derived from type/priority; copied onto jobs at enqueue time.
    queue_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String, nullable=False, default="queued")
    total_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Links a retry request back to the notification whose failed targets it re-sends.
    retry_of_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("notifications.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(_in_check("status", JOB_STATUSES), name="ck_jobs_status"),
        CheckConstraint(_in_check("type", ("notification", "bulk", "retry")), name="ck_jobs_type"),
        CheckConstraint("attempts >= 0 AND max_attempts >= 1", name="ck_jobs_attempts"),
        # Claim selection scans pending rows by due time then priority.
        Index("ix_jobs_claim", "status", "scheduled_at", "priority"),
        Index("ix_jobs_notification_id", "notification_id"),
        Index("ix_jobs_status_started", "status", "started_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    job_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    # Bulk jobs span several notifications, so the reference stays nullable.
    notification_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=True
    )
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class DeliveryResponse(Base):
    __tablename__ = "notification_responses"
    __table_args__ = (
        Index("ix_notification_responses_notification_target", "notification_id", "target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(
        String, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    # Caller-visible job id; kept as plain text so job cleanup never orphans history.
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    target: Mapped[str] = mapped_column(String, nullable=False)
    target_kind: Mapped[str] = mapped_column(String, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
