from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import as_utc, utc_now
from pushrelay.domain.jobs import DeliveryTarget
from pushrelay.domain.models import Notification
from pushrelay.persistence.repos.jobs import count_open_jobs
from pushrelay.persistence.repos.notifications import (
    get_notification,
    list_delivery_responses,
    record_delivery_response,
    store_aggregates,
    update_notification_status,
)
from pushrelay.providers.delivery.base import DeliveryResult
from pushrelay.services.notifications.state import (
    ACTIVE_STATUSES,
    Aggregates,
    compute_aggregates,
    resolve_terminal_status,
    source_statuses,
)
from pushrelay.services.queue.job_queue import FailResult, complete_job, fail_job


@dataclass(frozen=True)
class TargetOutcome:
    notification_id: str
    target: DeliveryTarget
    result: DeliveryResult
    attempt_number: int


@dataclass
class JobOutcome:
    job_id: str
    responses: list[TargetOutcome] = field(default_factory=list)
    # Notifications this job may settle; settlement still requires no open jobs.
    settle_ids: list[str] = field(default_factory=list)
    skipped: bool = False


@dataclass(frozen=True)
class ReportResult:
    job_status: str
    attempts: int | None
    settled: dict[str, str]
    updates: list[tuple[str, dict[str, Any]]]


async def mark_processing(
    session: AsyncSession, notification_ids: Iterable[str], *, now: datetime | None = None
) -> list[str]:
    # First claimed job moves a queued notification to processing; later claims are no-ops.
    now = now or utc_now()
    moved: list[str] = []
    for notification_id in dict.fromkeys(notification_ids):
        result = await session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.status.in_(source_statuses("processing")))
            .values(status="processing", started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            moved.append(notification_id)
    return moved


async def record_responses(
    session: AsyncSession,
    outcomes: Sequence[TargetOutcome],
    *,
    job_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Aggregates]:
    # Responses are recorded even for cancelled notifications; aggregates are recomputed after each batch.
    now = now or utc_now()
    touched: list[str] = []
    for outcome in outcomes:
        await record_delivery_response(
            session,
            notification_id=outcome.notification_id,
            job_id=job_id,
            target=outcome.target.value,
            target_kind=outcome.target.kind,
            success=outcome.result.success,
            message_id=outcome.result.message_id,
            error_code=outcome.result.error_code,
            error_message=outcome.result.error_message,
            retryable=outcome.result.retryable,
            attempt_number=outcome.attempt_number,
            now=now,
        )
        touched.append(outcome.notification_id)
    await session.flush()
    return {
        notification_id: await recompute_aggregates(session, notification_id, now=now)
        for notification_id in dict.fromkeys(touched)
    }


async def recompute_aggregates(
    session: AsyncSession, notification_id: str, *, now: datetime | None = None
) -> Aggregates:
    # Always recompute from the full response set so counts cannot drift from history.
    responses = await list_delivery_responses(session, notification_id)
    aggregates = compute_aggregates(responses)
    await store_aggregates(
        session,
        notification_id,
        total_sent=aggregates.total_sent,
        successful=aggregates.successful,
        failed=aggregates.failed,
        success_rate=aggregates.success_rate,
        now=now,
    )
    return aggregates


async def settle_if_done(
    session: AsyncSession,
    notification_id: str,
    *,
    error: str | None = None,
    now: datetime | None = None,
) -> str | None:
    # Settle once every job for the notification is terminal; cancelled and terminal rows stay put.
    now = now or utc_now()
    notification = await get_notification(session, notification_id)
    if notification is None or notification.status not in ACTIVE_STATUSES:
        return None
    if await count_open_jobs(session, notification_id) > 0:
        return None
    aggregates = await recompute_aggregates(session, notification_id, now=now)
    status = resolve_terminal_status(aggregates)
    started_at = as_utc(notification.started_at) or as_utc(notification.created_at) or now
    fields: dict[str, Any] = {
        "completed_at": now,
        "processing_time_ms": max(0, int((now - started_at).total_seconds() * 1000)),
    }
    if status == "failed":
        # Prefer the notification's own last failure; the job error covers payloads that never reached delivery.
        fields["error_message"] = _last_error(await list_delivery_responses(session, notification_id)) or error
    moved = await update_notification_status(
        session,
        notification_id,
        status=status,
        from_statuses=source_statuses(status),
        now=now,
        **fields,
    )
    return status if moved else None


def _last_error(responses: Sequence[Any]) -> str | None:
    for response in reversed(responses):
        if not response.success:
            return f"{response.error_code or 'delivery_failed'}: {response.error_message or 'no details'}"
    return None


async def report_job_result(
    session: AsyncSession,
    *,
    job_id: str,
    worker_id: str,
    outcome: JobOutcome | None,
    error: str | None = None,
    retryable: bool = True,
    all_notification_ids: Sequence[str] = (),
    now: datetime | None = None,
) -> ReportResult:
    # Queue transition, response history, aggregates, and settlement commit as one transaction.
    now = now or utc_now()
    try:
        if error is None:
            completed = await complete_job(session, job_id, worker_id=worker_id, now=now, commit=False)
            job_status = "completed" if completed else "ignored"
            attempts = None
        else:
            failed: FailResult = await fail_job(
                session, job_id, error, retryable=retryable, worker_id=worker_id, now=now, commit=False
            )
            job_status = {"pending": "retrying"}.get(failed.status, failed.status)
            attempts = failed.attempts
        aggregates: dict[str, Aggregates] = {}
        if outcome is not None and outcome.responses:
            aggregates = await record_responses(session, outcome.responses, job_id=job_id, now=now)
        settle_candidates: list[str] = list(outcome.settle_ids) if outcome is not None else []
        if job_status in {"completed", "failed"}:
            # A terminal job releases every notification it carried.
            settle_candidates.extend(all_notification_ids)
        settled: dict[str, str] = {}
        for notification_id in dict.fromkeys(settle_candidates):
            status = await settle_if_done(session, notification_id, error=error, now=now)
            if status is not None:
                settled[notification_id] = status
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    updates = [
        (
            notification_id,
            {
                "event": "aggregates",
                "job_id": job_id,
                "total_sent": agg.total_sent,
                "successful": agg.successful,
                "failed": agg.failed,
                "success_rate": agg.success_rate,
            },
        )
        for notification_id, agg in aggregates.items()
    ]
    updates.extend(
        (notification_id, {"event": "status", "status": status, "job_id": job_id})
        for notification_id, status in settled.items()
    )
    return ReportResult(job_status=job_status, attempts=attempts, settled=settled, updates=updates)
