from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.domain.models import JOB_TERMINAL_STATUSES, Job


async def get_job(session: AsyncSession, job_id: str) -> Job | None:
    # Look jobs up by their caller-visible id; the primary key stays internal.
    result = await session.execute(
        select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_jobs_for_notification(session: AsyncSession, notification_id: str) -> list[Job]:
    result = await session.execute(
        select(Job)
        .where(Job.notification_id == notification_id)
        .order_by(Job.created_at, Job.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_open_jobs(session: AsyncSession, notification_id: str) -> int:
    # Open jobs keep a notification unsettled until they reach a terminal status.
    result = await session.execute(
        select(func.count())
        .select_from(Job)
        .where(
            Job.notification_id == notification_id,
            Job.status.not_in(JOB_TERMINAL_STATUSES),
        )
    )
    return int(result.scalar_one())


async def count_jobs_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(select(Job.status, func.count()).group_by(Job.status))
    return {str(status): int(count) for status, count in result.all()}


async def average_duration_ms(session: AsyncSession, *, sample_size: int = 100) -> float | None:
    # Average wall time of recently completed jobs; feeds the advisory queue ETA only.
    result = await session.execute(
        select(Job.started_at, Job.completed_at)
        .where(Job.status == "completed", Job.started_at.is_not(None), Job.completed_at.is_not(None))
        .order_by(Job.completed_at.desc())
        .limit(sample_size)
    )
    durations = [
        (completed_at - started_at).total_seconds() * 1000.0
        for started_at, completed_at in result.all()
        if completed_at >= started_at
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)
