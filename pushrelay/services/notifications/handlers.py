from __future__ import annotations

import asyncio
import logging
from typing import assert_never

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import PermanentDeliveryError, TransientDeliveryError
from pushrelay.domain.jobs import BulkTask, DeliveryTarget, NotificationTask, RetryTask
from pushrelay.domain.models import Job, Notification
from pushrelay.persistence.repos.notifications import get_notification, list_delivery_responses
from pushrelay.providers.delivery.base import DeliveryAdapter, DeliveryContent, DeliveryResult
from pushrelay.services.notifications.state import ACTIVE_STATUSES, resendable_targets
from pushrelay.services.notifications.tracking import JobOutcome, TargetOutcome

logger = logging.getLogger(__name__)


def stored_targets(notification: Notification) -> list[DeliveryTarget]:
    return [DeliveryTarget.model_validate(item) for item in notification.targets_json or []]


def content_for(notification: Notification) -> DeliveryContent:
    # Every push carries the notification id so client acknowledgements can be correlated.
    data = dict(notification.data_json or {})
    data["notification_id"] = notification.id
    data["type"] = notification.type
    return DeliveryContent(
        title=notification.title,
        body=notification.body,
        data=data,
        sound=notification.sound,
        icon=notification.icon,
        image=notification.image,
        route=notification.route,
        type=notification.type,
        priority=notification.priority,
    )


async def deliver_with_timeout(
    adapter: DeliveryAdapter,
    target: DeliveryTarget,
    content: DeliveryContent,
    *,
    timeout_s: float,
) -> DeliveryResult:
    # A hung or crashing adapter becomes a retryable failure instead of stalling the poller.
    try:
        return await asyncio.wait_for(adapter.send(target, content), timeout=timeout_s)
    except asyncio.TimeoutError:
        return DeliveryResult(
            success=False,
            error_code="timeout",
            error_message=f"delivery timed out after {timeout_s:g}s",
            retryable=True,
        )
    except Exception as exc:  # noqa: BLE001 - adapter failures are recorded as delivery responses.
        logger.warning("delivery_adapter_error target_kind=%s", target.kind, exc_info=True)
        return DeliveryResult(
            success=False,
            error_code="adapter_error",
            error_message=str(exc) or type(exc).__name__,
            retryable=True,
        )


def _error_text(result: DeliveryResult) -> str:
    return f"{result.error_code or 'delivery_failed'}: {result.error_message or 'no details'}"


async def _run_single(
    job: Job,
    *,
    notification_id: str,
    target: DeliveryTarget,
    adapter: DeliveryAdapter,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> JobOutcome:
    async with session_factory() as session:
        notification = await get_notification(session, notification_id)
    if notification is None:
        raise PermanentDeliveryError(
            f"notification {notification_id} not found", outcome=JobOutcome(job_id=job.job_id)
        )
    if notification.status not in ACTIVE_STATUSES:
        # Cancelled notifications keep their in-flight jobs but nothing new is sent.
        return JobOutcome(job_id=job.job_id, skipped=True)
    result = await deliver_with_timeout(
        adapter, target, content_for(notification), timeout_s=settings.delivery_timeout_s
    )
    outcome = JobOutcome(
        job_id=job.job_id,
        responses=[
            TargetOutcome(
                notification_id=notification_id,
                target=target,
                result=result,
                attempt_number=int(job.attempts) + 1,
            )
        ],
        settle_ids=[notification_id],
    )
    if result.success:
        return outcome
    if result.retryable:
        raise TransientDeliveryError(_error_text(result), outcome=outcome)
    raise PermanentDeliveryError(_error_text(result), outcome=outcome)


async def _run_bulk(
    job: Job,
    task: BulkTask,
    *,
    adapter: DeliveryAdapter,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> JobOutcome:
    # Re-runs only touch targets never attempted or last failed retryably.
    batch: list[tuple[Notification, list[DeliveryTarget]]] = []
    async with session_factory() as session:
        for notification_id in task.notification_ids:
            notification = await get_notification(session, notification_id)
            if notification is None or notification.status not in ACTIVE_STATUSES:
                continue
            targets = stored_targets(notification)
            responses = await list_delivery_responses(session, notification_id)
            resend = set(resendable_targets([target.value for target in targets], responses))
            batch.append((notification, [target for target in targets if target.value in resend]))

    outcome = JobOutcome(job_id=job.job_id)
    leftovers = 0
    for notification, targets in batch:
        content = content_for(notification)
        transient = False
        for target in targets:
            result = await deliver_with_timeout(adapter, target, content, timeout_s=settings.delivery_timeout_s)
            outcome.responses.append(
                TargetOutcome(
                    notification_id=notification.id,
                    target=target,
                    result=result,
                    attempt_number=int(job.attempts) + 1,
                )
            )
            transient = transient or (not result.success and result.retryable)
        if transient:
            leftovers += 1
        else:
            outcome.settle_ids.append(notification.id)
    if not batch:
        outcome.skipped = True
    if leftovers:
        raise TransientDeliveryError(
            f"bulk batch has {leftovers} notification(s) with retryable failures", outcome=outcome
        )
    return outcome


async def execute_task(
    job: Job,
    task: NotificationTask | BulkTask | RetryTask,
    *,
    adapter: DeliveryAdapter,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
) -> JobOutcome:
    # Raises TransientDeliveryError or PermanentDeliveryError carrying the recorded outcome.
    settings = settings or get_settings()
    if isinstance(task, NotificationTask):
        return await _run_single(
            job,
            notification_id=task.notification_id,
            target=task.target,
            adapter=adapter,
            session_factory=session_factory,
            settings=settings,
        )
    elif isinstance(task, RetryTask):
        logger.debug("retry_task_start job_id=%s retry_of=%s", job.job_id, task.retry_of_id)
        return await _run_single(
            job,
            notification_id=task.notification_id,
            target=task.target,
            adapter=adapter,
            session_factory=session_factory,
            settings=settings,
        )
    elif isinstance(task, BulkTask):
        return await _run_bulk(job, task, adapter=adapter, session_factory=session_factory, settings=settings)
    else:
        assert_never(task)
