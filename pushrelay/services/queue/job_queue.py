from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import as_utc, utc_now
from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import ClaimContendedError, DuplicateJobError
from pushrelay.domain.jobs import BulkTask, NotificationTask, RetryTask, task_kind
from pushrelay.domain.models import JOB_STATUSES, JOB_TERMINAL_STATUSES, Job
from pushrelay.persistence.repos.jobs import average_duration_ms, count_jobs_by_status, get_job
from pushrelay.services.queue.backoff import retry_delay_s

logger = logging.getLogger(__name__)

# Seconds per job assumed by the ETA estimate before any job has completed.
_DEFAULT_AVG_JOB_S = 2.0


@dataclass(frozen=True)
class FailResult:
    job_id: str
    # pending when rescheduled, failed when terminal, ignored when the job was not ours to fail.
    status: str
    attempts: int
    retry_at: datetime | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status == "failed"


@dataclass(frozen=True)
class QueueStats:
    pending: int
    processing: int
    completed: int
    failed: int
    cancelled: int

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed + self.cancelled


def generate_job_id(kind: str) -> str:
    return f"{kind}_{uuid4().hex[:16]}"


async def enqueue(
    session: AsyncSession,
    *,
    task: NotificationTask | BulkTask | RetryTask,
    priority: int = 0,
    delay_s: float = 0.0,
    max_attempts: int | None = None,
    job_id: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> str:
    # Admit a pending job that becomes claimable once scheduled_at has passed.
    settings = get_settings()
    now = now or utc_now()
    kind = task_kind(task).value
    if max_attempts is None:
        max_attempts = settings.bulk_job_max_attempts if isinstance(task, BulkTask) else settings.job_max_attempts
    job_id = job_id or generate_job_id(kind)
    if await get_job(session, job_id) is not None:
        raise DuplicateJobError(f"job {job_id} already exists")
    job = Job(
        job_id=job_id,
        type=kind,
        notification_id=None if isinstance(task, BulkTask) else task.notification_id,
        payload_json=task.model_dump(mode="json"),
        priority=int(priority),
        status="pending",
        attempts=0,
        max_attempts=max(1, int(max_attempts)),
        scheduled_at=now + timedelta(seconds=max(0.0, float(delay_s))),
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    try:
        await session.flush()
    except IntegrityError as exc:
        # A concurrent enqueue can win between the existence check and the insert.
        await session.rollback()
        raise DuplicateJobError(f"job {job_id} already exists") from exc
    if commit:
        await session.commit()
    return job_id


async def claim_next(
    session: AsyncSession,
    *,
    worker_id: str,
    now: datetime | None = None,
    max_races: int | None = None,
    commit: bool = True,
) -> Job | None:
    # Claim the most urgent due job with a conditional update so exactly one worker wins it.
    # None means nothing is due; ClaimContendedError means due work exists but every race was lost.
    now = now or utc_now()
    if max_races is None:
        max_races = get_settings().claim_max_races
    for _ in range(max(1, int(max_races))):
        candidate_id = (
            await session.execute(
                select(Job.id)
                .where(Job.status == "pending", Job.scheduled_at <= now)
                .order_by(Job.priority.desc(), Job.scheduled_at.asc(), Job.created_at.asc(), Job.id.asc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if candidate_id is None:
            return None
        result = await session.execute(
            update(Job)
            .where(Job.id == candidate_id, Job.status == "pending")
            .values(status="processing", worker_id=worker_id, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            job = (
                await session.execute(
                    select(Job).where(Job.id == candidate_id).execution_options(populate_existing=True)
                )
            ).scalar_one()
            if commit:
                await session.commit()
            return job
        # Another worker claimed the row first; pick the next candidate.
        logger.debug("job_claim_race_lost worker_id=%s candidate=%s", worker_id, candidate_id)
    raise ClaimContendedError(f"lost {max_races} claim races in a row")


async def complete_job(
    session: AsyncSession,
    job_id: str,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> bool:
    # Completion is idempotent: only a processing row (owned by worker_id when given) transitions.
    now = now or utc_now()
    conditions = [Job.job_id == job_id, Job.status == "processing"]
    if worker_id is not None:
        conditions.append(Job.worker_id == worker_id)
    result = await session.execute(
        update(Job)
        .where(*conditions)
        .values(status="completed", worker_id=None, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return result.rowcount == 1


async def fail_job(
    session: AsyncSession,
    job_id: str,
    error: str,
    *,
    retryable: bool = True,
    worker_id: str | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
    commit: bool = True,
) -> FailResult:
    # Reschedule with exponential backoff while attempts remain, otherwise mark the job terminal.
    settings = settings or get_settings()
    now = now or utc_now()
    job = await get_job(session, job_id)
    if job is None or job.status != "processing" or (worker_id is not None and job.worker_id != worker_id):
        # A reaped or already-reported job is no longer ours; keep the current owner's state.
        return FailResult(
            job_id=job_id,
            status="ignored",
            attempts=int(job.attempts) if job is not None else 0,
            error=error,
        )
    attempts = int(job.attempts)
    conditions = [Job.id == job.id, Job.status == "processing"]
    if worker_id is not None:
        conditions.append(Job.worker_id == worker_id)
    if retryable and attempts + 1 < int(job.max_attempts):
        retry_at = now + timedelta(
            seconds=retry_delay_s(
                attempts,
                base_s=settings.retry_backoff_base_s,
                max_s=settings.retry_backoff_max_s,
            )
        )
        values = {
            "status": "pending",
            "attempts": attempts + 1,
            "worker_id": None,
            "started_at": None,
            "scheduled_at": retry_at,
            "error_message": error,
            "updated_at": now,
        }
        outcome = FailResult(job_id=job_id, status="pending", attempts=attempts + 1, retry_at=retry_at, error=error)
    else:
        values = {
            "status": "failed",
            "attempts": attempts + 1,
            "worker_id": None,
            "error_message": error,
            "completed_at": now,
            "updated_at": now,
        }
        outcome = FailResult(job_id=job_id, status="failed", attempts=attempts + 1, error=error)
    result = await session.execute(
        update(Job).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        outcome = FailResult(job_id=job_id, status="ignored", attempts=attempts, error=error)
    if commit:
        await session.commit()
    return outcome


async def reap_orphans(
    session: AsyncSession,
    *,
    stale_after_s: float | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    # Return processing jobs abandoned by crashed workers to the pending pool.
    if stale_after_s is None:
        stale_after_s = get_settings().reaper_stale_after_s
    now = now or utc_now()
    cutoff = now - timedelta(seconds=float(stale_after_s))
    result = await session.execute(
        update(Job)
        .where(Job.status == "processing", Job.started_at < cutoff)
        .values(status="pending", worker_id=None, started_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return int(result.rowcount or 0)


async def cleanup_completed(
    session: AsyncSession,
    *,
    older_than_s: float | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    # Delete terminal jobs past retention; pending and processing rows are never touched.
    if older_than_s is None:
        older_than_s = get_settings().job_retention_hours * 3600.0
    now = now or utc_now()
    cutoff = now - timedelta(seconds=float(older_than_s))
    result = await session.execute(
        delete(Job)
        .where(
            Job.status.in_(JOB_TERMINAL_STATUSES),
            func.coalesce(Job.completed_at, Job.updated_at) < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return int(result.rowcount or 0)


async def cancel_pending_jobs(
    session: AsyncSession,
    notification_id: str,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    # Only pending jobs are cancelled; a job already in flight finishes and reports normally.
    now = now or utc_now()
    result = await session.execute(
        update(Job)
        .where(Job.notification_id == notification_id, Job.status == "pending")
        .values(status="cancelled", completed_at=now, updated_at=now, error_message="cancelled")
        .execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return int(result.rowcount or 0)


async def queue_stats(session: AsyncSession) -> QueueStats:
    counts = await count_jobs_by_status(session)
    return QueueStats(**{status: counts.get(status, 0) for status in JOB_STATUSES})


async def pending_count(session: AsyncSession, *, now: datetime | None = None, due_only: bool = False) -> int:
    stmt = select(func.count()).select_from(Job).where(Job.status == "pending")
    if due_only:
        stmt = stmt.where(Job.scheduled_at <= (now or utc_now()))
    return int((await session.execute(stmt)).scalar_one())


def estimate_processing_time_s(
    *, pending: int, job_count: int = 1, avg_job_s: float | None = None, concurrency: int | None = None
) -> int:
    # Advisory ETA for callers; it never feeds scheduling or retry decisions.
    avg = avg_job_s if avg_job_s and avg_job_s > 0 else _DEFAULT_AVG_JOB_S
    workers = max(1, int(concurrency if concurrency is not None else get_settings().worker_concurrency))
    return round(avg * max(0, job_count) + max(0, pending) * avg / workers)


async def estimate_eta_s(session: AsyncSession, *, job_count: int = 1) -> int:
    avg_ms = await average_duration_ms(session)
    return estimate_processing_time_s(
        pending=await pending_count(session),
        job_count=job_count,
        avg_job_s=avg_ms / 1000.0 if avg_ms is not None else None,
    )


async def queue_health(session: AsyncSession, *, now: datetime | None = None) -> dict[str, object]:
    # Report queue depth and the oldest due job so operators can spot a stalled pool.
    now = now or utc_now()
    stats = await queue_stats(session)
    oldest_due = (
        await session.execute(
            select(func.min(Job.scheduled_at)).where(Job.status == "pending", Job.scheduled_at <= now)
        )
    ).scalar_one_or_none()
    oldest_due = as_utc(oldest_due)
    lag_s = (now - oldest_due).total_seconds() if oldest_due is not None else 0.0
    stale_cutoff = now - timedelta(seconds=get_settings().reaper_stale_after_s)
    stale_processing = int(
        (
            await session.execute(
                select(func.count())
                .select_from(Job)
                .where(Job.status == "processing", or_(Job.started_at.is_(None), Job.started_at < stale_cutoff))
            )
        ).scalar_one()
    )
    return {
        "status": "degraded" if stale_processing else "healthy",
        "queues": {
            "pending": stats.pending,
            "processing": stats.processing,
            "completed": stats.completed,
            "failed": stats.failed,
            "cancelled": stats.cancelled,
            "total": stats.total,
        },
        "oldest_due_lag_s": round(max(0.0, lag_s), 3),
        "stale_processing": stale_processing,
        "timestamp": now.isoformat(),
    }
