from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping, Protocol, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import utc_now
from pushrelay.core.config import get_settings
from pushrelay.core.errors import (
    DuplicateRequestError,
    NoTargetsError,
    NotCancellableError,
    NotificationNotFoundError,
    NotRetryableError,
)
from pushrelay.domain.jobs import BulkTask, DeliveryTarget, NotificationTask, RetryTask
from pushrelay.domain.models import DeliveryResponse, Notification
from pushrelay.persistence.repos.jobs import list_jobs_for_notification
from pushrelay.persistence.repos.notifications import (
    count_notifications,
    count_retries_of,
    create_notification,
    get_notification,
    get_notification_by_request_id,
    list_delivery_responses,
    list_notifications as list_notification_rows,
    update_notification_status,
)
from pushrelay.services.live_updates import LiveUpdateSink, publish_safely
from pushrelay.services.notifications.state import (
    Aggregates,
    can_transition,
    compute_aggregates,
    latest_by_target,
    source_statuses,
    undelivered_targets,
)
from pushrelay.services.queue.job_queue import cancel_pending_jobs, enqueue, estimate_eta_s, pending_count

logger = logging.getLogger(__name__)

NotificationType = Literal["general", "appointment", "result", "emergency", "promotion", "reminder"]
NotificationPriority = Literal["low", "normal", "high"]


class NotificationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1, max_length=4000)
    tokens: list[str] | None = None
    topic: str | None = None
    user_id: str | None = None
    data: dict[str, Any] | None = None
    sound: str | None = None
    icon: str | None = None
    image: str | None = None
    route: str | None = None
    type: NotificationType = "general"
    priority: NotificationPriority = "normal"

    @model_validator(mode="after")
    def _single_addressing_mode(self) -> "NotificationRequest":
        # Tokens and topic are mutually exclusive; user_id alone resolves to that user's tokens.
        if self.tokens is None and self.topic is None and self.user_id is None:
            raise ValueError("one of tokens, topic, or user_id is required")
        if self.tokens is not None and self.topic is not None:
            raise ValueError("tokens and topic are mutually exclusive")
        return self


class TokenResolver(Protocol):
    async def resolve(self, user_id: str) -> list[str]:
        ...


class StaticTokenResolver:
    def __init__(self, tokens_by_user: Mapping[str, Sequence[str]] | None = None) -> None:
        self._tokens = {user: list(tokens) for user, tokens in (tokens_by_user or {}).items()}

    async def resolve(self, user_id: str) -> list[str]:
        return list(self._tokens.get(user_id, []))


@dataclass(frozen=True)
class QueuedNotification:
    notification_id: str
    request_id: str
    job_ids: list[str]
    queue_priority: int
    queue_position: int
    # Advisory only; derived from recent job durations and current depth.
    estimated_processing_time_s: int


@dataclass(frozen=True)
class QueuedBulk:
    request_id: str
    notification_ids: list[str]
    job_ids: list[str]
    queue_position: int
    estimated_processing_time_s: int


@dataclass(frozen=True)
class CancelResult:
    notification_id: str
    status: str
    cancelled_jobs: int
    reason: str | None


@dataclass(frozen=True)
class NotificationPage:
    items: list[Notification]
    total: int
    offset: int
    limit: int
    has_next: bool
    has_prev: bool


@dataclass(frozen=True)
class DeliverySummary:
    aggregates: Aggregates
    # Failure counts per error code, taken from the latest response of each target.
    error_codes: dict[str, int]
    top_error_code: str | None


@dataclass(frozen=True)
class NotificationDetails:
    notification: Notification
    responses: list[DeliveryResponse]
    summary: DeliverySummary
    open_jobs: int


def determine_priority(type: str, priority: str) -> int:
    # Higher numbers are claimed first.
    if type == "emergency":
        return 10
    if priority == "high":
        return 8
    if type == "appointment":
        return 6
    if type == "result":
        return 5
    return 1


async def resolve_targets(
    request: NotificationRequest, token_resolver: TokenResolver | None = None
) -> tuple[str, list[DeliveryTarget]]:
    # Returns the addressing mode and concrete targets; duplicate tokens are dropped.
    if request.topic is not None:
        return "topic", [DeliveryTarget(kind="topic", value=request.topic)]
    if request.tokens is not None:
        tokens = [token for token in dict.fromkeys(request.tokens) if token]
        return "tokens", [DeliveryTarget(kind="token", value=token) for token in tokens]
    if token_resolver is None:
        raise NoTargetsError(f"No token resolver configured for user: {request.user_id}")
    tokens = [token for token in dict.fromkeys(await token_resolver.resolve(str(request.user_id))) if token]
    return "user", [DeliveryTarget(kind="token", value=token) for token in tokens]


async def _create_from_request(
    session: AsyncSession,
    request: NotificationRequest,
    *,
    request_id: str,
    target_kind: str,
    targets: list[DeliveryTarget],
    retry_of_id: str | None = None,
    now: datetime,
) -> Notification:
    notification = await create_notification(
        session,
        request_id=request_id,
        title=request.title,
        body=request.body,
        target_kind=target_kind,
        targets=[target.model_dump() for target in targets],
        user_id=request.user_id,
        data=request.data,
        sound=request.sound,
        icon=request.icon,
        image=request.image,
        route=request.route,
        type=request.type,
        priority=request.priority,
        queue_priority=determine_priority(request.type, request.priority),
        retry_of_id=retry_of_id,
        now=now,
    )
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateRequestError(f"request {request_id} already exists") from exc
    return notification


async def queue_notification(
    session: AsyncSession,
    request: NotificationRequest,
    *,
    request_id: str | None = None,
    delay_s: float = 0.0,
    max_attempts: int | None = None,
    token_resolver: TokenResolver | None = None,
    now: datetime | None = None,
) -> QueuedNotification:
    # Create the notification and one job per resolved target in a single transaction.
    now = now or utc_now()
    request_id = request_id or f"req_{uuid4().hex}"
    if await get_notification_by_request_id(session, request_id) is not None:
        raise DuplicateRequestError(f"request {request_id} already exists")
    target_kind, targets = await resolve_targets(request, token_resolver)
    if not targets:
        if target_kind == "user":
            raise NoTargetsError(f"No active tokens found for user: {request.user_id}")
        raise NoTargetsError("request resolved to no delivery targets")
    notification = await _create_from_request(
        session, request, request_id=request_id, target_kind=target_kind, targets=targets, now=now
    )
    job_ids = [
        await enqueue(
            session,
            task=NotificationTask(notification_id=notification.id, target=target),
            priority=notification.queue_priority,
            delay_s=delay_s,
            max_attempts=max_attempts,
            now=now,
            commit=False,
        )
        for target in targets
    ]
    await session.commit()
    logger.info(
        "notification_queued notification_id=%s jobs=%d priority=%d",
        notification.id,
        len(job_ids),
        notification.queue_priority,
    )
    return QueuedNotification(
        notification_id=notification.id,
        request_id=request_id,
        job_ids=job_ids,
        queue_priority=notification.queue_priority,
        queue_position=await pending_count(session),
        estimated_processing_time_s=await estimate_eta_s(session, job_count=len(job_ids)),
    )


async def queue_bulk_notifications(
    session: AsyncSession,
    requests: Sequence[NotificationRequest],
    *,
    request_id: str | None = None,
    batch_size: int | None = None,
    max_attempts: int | None = None,
    token_resolver: TokenResolver | None = None,
    now: datetime | None = None,
) -> QueuedBulk:
    # One notification per request; notifications are grouped into bulk jobs of batch_size.
    if not requests:
        raise NoTargetsError("bulk request contains no notifications")
    settings = get_settings()
    now = now or utc_now()
    batch_size = max(1, int(batch_size or settings.bulk_batch_size))
    request_id = request_id or f"bulk_{uuid4().hex}"
    if await get_notification_by_request_id(session, f"{request_id}:0") is not None:
        raise DuplicateRequestError(f"request {request_id} already exists")

    created: list[Notification] = []
    for index, request in enumerate(requests):
        target_kind, targets = await resolve_targets(request, token_resolver)
        if not targets:
            await session.rollback()
            raise NoTargetsError(f"notification {index} in bulk request {request_id} has no delivery targets")
        created.append(
            await _create_from_request(
                session,
                request,
                request_id=f"{request_id}:{index}",
                target_kind=target_kind,
                targets=targets,
                now=now,
            )
        )

    job_ids: list[str] = []
    for start in range(0, len(created), batch_size):
        chunk = created[start : start + batch_size]
        job_ids.append(
            await enqueue(
                session,
                task=BulkTask(notification_ids=[notification.id for notification in chunk]),
                priority=max(notification.queue_priority for notification in chunk),
                max_attempts=max_attempts,
                now=now,
                commit=False,
            )
        )
    await session.commit()
    logger.info("bulk_queued request_id=%s notifications=%d jobs=%d", request_id, len(created), len(job_ids))
    return QueuedBulk(
        request_id=request_id,
        notification_ids=[notification.id for notification in created],
        job_ids=job_ids,
        queue_position=await pending_count(session),
        estimated_processing_time_s=await estimate_eta_s(session, job_count=len(created)),
    )


async def cancel_notification(
    session: AsyncSession,
    notification_id: str,
    reason: str | None = None,
    *,
    live_updates: LiveUpdateSink | None = None,
    now: datetime | None = None,
) -> CancelResult:
    # Pending jobs are cancelled; in-flight jobs finish and report but cannot move the status again.
    now = now or utc_now()
    notification = await get_notification(session, notification_id)
    if notification is None:
        raise NotificationNotFoundError(f"notification {notification_id} not found")
    if not can_transition(notification.status, "cancelled"):
        raise NotCancellableError(f"Cannot cancel notification with status: {notification.status}")
    cancelled_jobs = await cancel_pending_jobs(session, notification_id, now=now, commit=False)
    moved = await update_notification_status(
        session,
        notification_id,
        status="cancelled",
        from_statuses=source_statuses("cancelled"),
        now=now,
        cancelled_at=now,
        cancelled_reason=reason,
    )
    if not moved:
        # Settlement won the race between our read and the conditional update.
        await session.rollback()
        current = await get_notification(session, notification_id)
        status = current.status if current is not None else "unknown"
        raise NotCancellableError(f"Cannot cancel notification with status: {status}")
    await session.commit()
    logger.info("notification_cancelled notification_id=%s jobs=%d", notification_id, cancelled_jobs)
    if live_updates is not None:
        await publish_safely(live_updates, notification_id, {"event": "status", "status": "cancelled", "reason": reason})
    return CancelResult(
        notification_id=notification_id, status="cancelled", cancelled_jobs=cancelled_jobs, reason=reason
    )


async def retry_notification(
    session: AsyncSession,
    notification_id: str,
    *,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> QueuedNotification:
    # Retries create a linked notification so the original keeps its terminal status.
    now = now or utc_now()
    original = await get_notification(session, notification_id)
    if original is None:
        raise NotificationNotFoundError(f"notification {notification_id} not found")
    if original.status not in ("completed", "failed"):
        raise NotRetryableError(f"Cannot retry notification with status: {original.status}")
    stored = [DeliveryTarget.model_validate(item) for item in original.targets_json or []]
    responses = await list_delivery_responses(session, notification_id)
    failed_values = set(undelivered_targets([target.value for target in stored], responses))
    targets = [target for target in stored if target.value in failed_values]
    if not targets:
        raise NotRetryableError(f"notification {notification_id} has no failed targets")

    attempt = await count_retries_of(session, notification_id) + 1
    retry_request_id = f"{original.request_id}:retry:{attempt}"
    retry = await create_notification(
        session,
        request_id=retry_request_id,
        title=original.title,
        body=original.body,
        target_kind=original.target_kind,
        targets=[target.model_dump() for target in targets],
        user_id=original.user_id,
        data=original.data_json,
        sound=original.sound,
        icon=original.icon,
        image=original.image,
        route=original.route,
        type=original.type,
        priority=original.priority,
        queue_priority=original.queue_priority,
        retry_of_id=original.id,
        now=now,
    )
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateRequestError(f"request {retry_request_id} already exists") from exc
    job_ids = [
        await enqueue(
            session,
            task=RetryTask(notification_id=retry.id, target=target, retry_of_id=original.id),
            priority=retry.queue_priority,
            max_attempts=max_attempts,
            now=now,
            commit=False,
        )
        for target in targets
    ]
    await session.commit()
    logger.info(
        "notification_retry_queued notification_id=%s retry_of=%s targets=%d", retry.id, original.id, len(targets)
    )
    return QueuedNotification(
        notification_id=retry.id,
        request_id=retry.request_id,
        job_ids=job_ids,
        queue_priority=retry.queue_priority,
        queue_position=await pending_count(session),
        estimated_processing_time_s=await estimate_eta_s(session, job_count=len(job_ids)),
    )


async def get_notification_status(session: AsyncSession, notification_id: str) -> Notification:
    notification = await get_notification(session, notification_id)
    if notification is None:
        raise NotificationNotFoundError(f"notification {notification_id} not found")
    return notification


async def get_delivery_responses(session: AsyncSession, notification_id: str) -> list[DeliveryResponse]:
    await get_notification_status(session, notification_id)
    return await list_delivery_responses(session, notification_id)


async def list_notifications(
    session: AsyncSession,
    *,
    status: str | None = None,
    type: str | None = None,
    user_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> NotificationPage:
    offset = max(0, int(offset))
    limit = min(max(1, int(limit)), 200)
    items = await list_notification_rows(
        session, status=status, type=type, user_id=user_id, offset=offset, limit=limit
    )
    total = await count_notifications(session, status=status, type=type, user_id=user_id)
    return NotificationPage(
        items=items,
        total=total,
        offset=offset,
        limit=limit,
        has_next=offset + len(items) < total,
        has_prev=offset > 0,
    )


def summarize_responses(responses: Sequence[DeliveryResponse]) -> DeliverySummary:
    latest = latest_by_target(responses)
    error_codes: dict[str, int] = {}
    for response in latest.values():
        if response.success:
            continue
        code = response.error_code or "delivery_failed"
        error_codes[code] = error_codes.get(code, 0) + 1
    # Most frequent code wins; ties go to the alphabetically first code so the result is stable.
    top = min(error_codes.items(), key=lambda item: (-item[1], item[0]))[0] if error_codes else None
    return DeliverySummary(aggregates=compute_aggregates(responses), error_codes=error_codes, top_error_code=top)


async def get_notification_details(session: AsyncSession, notification_id: str) -> NotificationDetails:
    notification = await get_notification_status(session, notification_id)
    responses = await list_delivery_responses(session, notification_id)
    jobs = await list_jobs_for_notification(session, notification_id)
    return NotificationDetails(
        notification=notification,
        responses=responses,
        summary=summarize_responses(responses),
        open_jobs=sum(1 for job in jobs if job.status in ("pending", "processing")),
    )
