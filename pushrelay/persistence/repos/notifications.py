from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import utc_now
from pushrelay.domain.models import JOB_TERMINAL_STATUSES, NOTIFICATION_TERMINAL_STATUSES, DeliveryResponse, Job, Notification


async def create_notification(
    session: AsyncSession,
    *,
    request_id: str,
    title: str,
    body: str,
    target_kind: str,
    targets: list[dict[str, Any]],
    user_id: str | None = None,
    data: dict[str, Any] | None = None,
    sound: str | None = None,
    icon: str | None = None,
    image: str | None = None,
    route: str | None = None,
    type: str = "general",
    priority: str = "normal",
    queue_priority: int = 1,
    retry_of_id: str | None = None,
    now: datetime | None = None,
) -> Notification:
    # New notifications always start queued with zeroed aggregates.
    now = now or utc_now()
    notification = Notification(
        request_id=request_id,
        title=title,
        body=body,
        target_kind=target_kind,
        targets_json=targets,
        user_id=user_id,
        data_json=data,
        sound=sound,
        icon=icon,
        image=image,
        route=route,
        type=type,
        priority=priority,
        queue_priority=queue_priority,
        status="queued",
        total_sent=0,
        successful=0,
        failed=0,
        success_rate=0,
        retry_of_id=retry_of_id,
        created_at=now,
        updated_at=now,
    )
    session.add(notification)
    return notification


async def get_notification(session: AsyncSession, notification_id: str) -> Notification | None:
    result = await session.execute(
        select(Notification)
        .where(Notification.id == notification_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_notification_by_request_id(session: AsyncSession, request_id: str) -> Notification | None:
    result = await session.execute(
        select(Notification)
        .where(Notification.request_id == request_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def update_notification_status(
    session: AsyncSession,
    notification_id: str,
    *,
    status: str,
    from_statuses: Iterable[str],
    now: datetime | None = None,
    **fields: Any,
) -> bool:
    # Conditional transition so concurrent writers can never move a notification backwards.
    now = now or utc_now()
    result = await session.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.status.in_(tuple(from_statuses)))
        .values(status=status, updated_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def store_aggregates(
    session: AsyncSession,
    notification_id: str,
    *,
    total_sent: int,
    successful: int,
    failed: int,
    success_rate: int,
    now: datetime | None = None,
) -> None:
    # Aggregates are always written together so the count constraints hold after every statement.
    await session.execute(
        update(Notification)
        .where(Notification.id == notification_id)
        .values(
            total_sent=total_sent,
            successful=successful,
            failed=failed,
            success_rate=success_rate,
            updated_at=now or utc_now(),
        )
        .execution_options(synchronize_session=False)
    )


async def record_delivery_response(
    session: AsyncSession,
    *,
    notification_id: str,
    target: str,
    target_kind: str,
    success: bool,
    job_id: str | None = None,
    message_id: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    retryable: bool = False,
    attempt_number: int = 1,
    now: datetime | None = None,
) -> DeliveryResponse:
    response = DeliveryResponse(
        notification_id=notification_id,
        job_id=job_id,
        target=target,
        target_kind=target_kind,
        success=success,
        message_id=message_id,
        error_code=error_code,
        error_message=error_message,
        retryable=retryable,
        attempt_number=attempt_number,
        created_at=now or utc_now(),
    )
    session.add(response)
    return response


async def list_delivery_responses(session: AsyncSession, notification_id: str) -> list[DeliveryResponse]:
    # Insertion order doubles as the tie-breaker between responses for the same attempt.
    result = await session.execute(
        select(DeliveryResponse)
        .where(DeliveryResponse.notification_id == notification_id)
        .order_by(DeliveryResponse.id)
    )
    return list(result.scalars().all())


async def count_retries_of(session: AsyncSession, notification_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Notification).where(Notification.retry_of_id == notification_id)
    )
    return int(result.scalar_one())


def _listing_filters(*, status: str | None, type: str | None, user_id: str | None) -> list[Any]:
    filters: list[Any] = []
    if status:
        filters.append(Notification.status == status)
    if type:
        filters.append(Notification.type == type)
    if user_id:
        filters.append(Notification.user_id == user_id)
    return filters


async def list_notifications(
    session: AsyncSession,
    *,
    status: str | None = None,
    type: str | None = None,
    user_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Notification]:
    # Newest first; id breaks ties between notifications created in the same instant.
    query = (
        select(Notification)
        .where(*_listing_filters(status=status, type=type, user_id=user_id))
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(max(0, offset))
        .limit(max(1, limit))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_notifications(
    session: AsyncSession,
    *,
    status: str | None = None,
    type: str | None = None,
    user_id: str | None = None,
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(*_listing_filters(status=status, type=type, user_id=user_id))
    )
    return int(result.scalar_one())


async def cleanup_notifications(
    session: AsyncSession,
    *,
    older_than_s: float,
    now: datetime | None = None,
    commit: bool = True,
) -> int:
    # Delete settled notifications past retention along with their responses and finished jobs.
    # Queued and processing notifications, and any with an open job, are never touched.
    now = now or utc_now()
    cutoff = now - timedelta(seconds=float(older_than_s))
    open_jobs = select(Job.notification_id).where(
        Job.notification_id.is_not(None), Job.status.not_in(JOB_TERMINAL_STATUSES)
    )
    expired_ids = list(
        (
            await session.execute(
                select(Notification.id).where(
                    Notification.status.in_(NOTIFICATION_TERMINAL_STATUSES),
                    func.coalesce(Notification.completed_at, Notification.cancelled_at, Notification.updated_at)
                    < cutoff,
                    Notification.id.not_in(open_jobs),
                )
            )
        ).scalars()
    )
    if not expired_ids:
        return 0
    # Children go first so the deletes also hold where foreign keys are not enforced.
    await session.execute(
        delete(DeliveryResponse)
        .where(DeliveryResponse.notification_id.in_(expired_ids))
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Job).where(Job.notification_id.in_(expired_ids)).execution_options(synchronize_session=False)
    )
    await session.execute(
        update(Notification)
        .where(Notification.retry_of_id.in_(expired_ids))
        .values(retry_of_id=None, updated_at=Notification.updated_at)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        delete(Notification).where(Notification.id.in_(expired_ids)).execution_options(synchronize_session=False)
    )
    if commit:
        await session.commit()
    return int(result.rowcount or 0)
