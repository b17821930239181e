from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.domain.jobs import DeliveryTarget, NotificationTask
from pushrelay.domain.models import Job, Notification
from pushrelay.persistence.repos.jobs import get_job
from pushrelay.persistence.repos.notifications import get_notification
from pushrelay.services.notifications.service import NotificationRequest
from pushrelay.workers.pool import Poller


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_request(**overrides) -> NotificationRequest:  # noqa: ANN003
    payload = {"title": "Lab results ready", "body": "Open the app to view them.", "tokens": ["A", "B", "C"]}
    payload.update(overrides)
    return NotificationRequest(**payload)


def token_task(notification_id: str = "n-test", token: str = "tok") -> NotificationTask:
    return NotificationTask(notification_id=notification_id, target=DeliveryTarget(kind="token", value=token))


async def load_job(session_factory: async_sessionmaker[AsyncSession], job_id: str) -> Job:
    # Read through a fresh session so assertions never see stale identity-map state.
    async with session_factory() as session:
        job = await get_job(session, job_id)
    assert job is not None
    return job


async def load_notification(session_factory: async_sessionmaker[AsyncSession], notification_id: str) -> Notification:
    async with session_factory() as session:
        notification = await get_notification(session, notification_id)
    assert notification is not None
    return notification


async def drain(poller: Poller, *, limit: int = 50) -> list[str | None]:
    # Run iterations until the poller finds nothing due; returns reported job statuses.
    statuses: list[str | None] = []
    for _ in range(limit):
        result = await poller.run_once()
        if not result.claimed:
            return statuses
        statuses.append(result.job_status)
    raise AssertionError("queue did not drain")
