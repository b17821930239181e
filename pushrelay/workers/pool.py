from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.clock import utc_now
from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import (
    ClaimContendedError,
    JobPayloadError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from pushrelay.domain.jobs import BulkTask, NotificationTask, RetryTask, parse_task, task_notification_ids
from pushrelay.domain.models import Job
from pushrelay.providers.delivery.base import DeliveryAdapter
from pushrelay.services.live_updates import LiveUpdateSink, NullLiveUpdateSink, publish_safely
from pushrelay.services.notifications.handlers import execute_task
from pushrelay.services.notifications.tracking import JobOutcome, mark_processing, report_job_result
from pushrelay.services.queue.backoff import IdlePollBackoff
from pushrelay.services.queue.job_queue import claim_next
from pushrelay.services.telemetry import WorkerStats, record_job_event, worker_stats
from pushrelay.workers.reaper import OrphanReaper

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]


class PollerState(str, Enum):
    IDLE = "idle"
    CLAIMING = "claiming"
    EXECUTING = "executing"
    REPORTING = "reporting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class IterationResult:
    claimed: bool
    job_id: str | None = None
    # completed, retrying, failed, or ignored when a job was claimed.
    job_status: str | None = None
    # How long the run loop should wait before the next iteration.
    sleep_s: float = 0.0
    # Due work was seen but other pollers won every claim race.
    contended: bool = False


class Poller:
    def __init__(
        self,
        worker_id: str,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        adapter: DeliveryAdapter,
        live_updates: LiveUpdateSink | None = None,
        settings: Settings | None = None,
        stop_event: asyncio.Event | None = None,
        clock: Clock = utc_now,
        sleep: Sleeper | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.state = PollerState.IDLE
        self.idle_count = 0
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._adapter = adapter
        self._live_updates = live_updates or NullLiveUpdateSink()
        self._stop = stop_event or asyncio.Event()
        self._clock = clock
        self._sleep_fn = sleep
        self._backoff = IdlePollBackoff(self._settings.poll_interval_min_s, self._settings.poll_interval_max_s)

    async def _claim(self) -> tuple[Job, NotificationTask | BulkTask | RetryTask | None, JobPayloadError | None, list[str]] | None:
        # Claim and mark the notification processing in one short transaction.
        now = self._clock()
        async with self._session_factory() as session:
            job = await claim_next(session, worker_id=self.worker_id, now=now, commit=False)
            if job is None:
                await session.rollback()
                return None
            task: NotificationTask | BulkTask | RetryTask | None = None
            payload_error: JobPayloadError | None = None
            try:
                task = parse_task(job.payload_json)
                notification_ids = task_notification_ids(task)
            except JobPayloadError as exc:
                payload_error = exc
                notification_ids = [job.notification_id] if job.notification_id else []
            moved = await mark_processing(session, notification_ids, now=now)
            await session.commit()
        for notification_id in moved:
            await publish_safely(
                self._live_updates, notification_id, {"event": "status", "status": "processing", "job_id": job.job_id}
            )
        return job, task, payload_error, notification_ids

    async def run_once(self) -> IterationResult:
        self.state = PollerState.CLAIMING
        try:
            claimed = await self._claim()
        except ClaimContendedError:
            # Contention is not idleness; poll again straight away without growing the backoff.
            logger.debug("poller_claim_contended worker_id=%s", self.worker_id)
            self.state = PollerState.IDLE
            return IterationResult(claimed=False, contended=True)
        if claimed is None:
            sleep_s = self._backoff.interval(self.idle_count)
            self.idle_count += 1
            self.state = PollerState.IDLE
            return IterationResult(claimed=False, sleep_s=sleep_s)
        self.idle_count = 0
        job, task, payload_error, notification_ids = claimed

        self.state = PollerState.EXECUTING
        started = time.monotonic()
        outcome: JobOutcome | None = None
        error: str | None = None
        retryable = True
        if task is None:
            # A payload that cannot be parsed will never succeed.
            error = str(payload_error)
            retryable = False
        else:
            try:
                outcome = await execute_task(
                    job, task, adapter=self._adapter, session_factory=self._session_factory, settings=self._settings
                )
            except TransientDeliveryError as exc:
                outcome, error, retryable = exc.outcome, str(exc), True
            except PermanentDeliveryError as exc:
                outcome, error, retryable = exc.outcome, str(exc), False
            except Exception as exc:  # noqa: BLE001 - handler bugs become retryable job failures.
                logger.exception("job_execution_failed worker_id=%s job_id=%s", self.worker_id, job.job_id)
                error = f"{type(exc).__name__}: {exc}"

        self.state = PollerState.REPORTING
        async with self._session_factory() as session:
            report = await report_job_result(
                session,
                job_id=job.job_id,
                worker_id=self.worker_id,
                outcome=outcome,
                error=error,
                retryable=retryable,
                all_notification_ids=notification_ids,
                now=self._clock(),
            )
        record_job_event(
            worker_id=self.worker_id,
            job_kind=job.type,
            outcome=report.job_status,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        if report.job_status == "ignored":
            logger.warning("job_report_ignored worker_id=%s job_id=%s", self.worker_id, job.job_id)
        elif error is not None:
            logger.info(
                "job_failed worker_id=%s job_id=%s status=%s attempts=%s error=%s",
                self.worker_id,
                job.job_id,
                report.job_status,
                report.attempts,
                error,
            )
        for notification_id, update in report.updates:
            await publish_safely(self._live_updates, notification_id, update)
        self.state = PollerState.IDLE
        return IterationResult(claimed=True, job_id=job.job_id, job_status=report.job_status)

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            return
        # Wake early on stop so shutdown never waits out a full idle interval.
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        logger.info("poller_started worker_id=%s", self.worker_id)
        while not self._stop.is_set():
            try:
                result = await self.run_once()
            except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in worker logs.
                logger.exception("poller_iteration_failed worker_id=%s", self.worker_id)
                self.state = PollerState.IDLE
                await self._sleep(self._settings.worker_error_backoff_s)
                continue
            if not result.claimed:
                await self._sleep(result.sleep_s)
        self.state = PollerState.STOPPED
        logger.info("poller_stopped worker_id=%s", self.worker_id)


class WorkerPool:
    def __init__(
        self,
        size: int | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        adapter: DeliveryAdapter | None = None,
        live_updates: LiveUpdateSink | None = None,
        settings: Settings | None = None,
        worker_id_prefix: str | None = None,
        reap_on_start: bool = True,
        clock: Clock = utc_now,
        sleep: Sleeper | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.size = max(1, int(size if size is not None else self._settings.worker_concurrency))
        if session_factory is None:
            from pushrelay.persistence.db import SessionLocal

            session_factory = SessionLocal
        if adapter is None:
            from pushrelay.providers.delivery.factory import get_delivery_adapter

            adapter = get_delivery_adapter()
        self._session_factory = session_factory
        self._adapter = adapter
        self._live_updates = live_updates
        self._prefix = worker_id_prefix or self._settings.worker_id_prefix
        self._reap_on_start = reap_on_start
        self._clock = clock
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self.pollers: list[Poller] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        if self._reap_on_start:
            # Recover jobs left processing by a previous crash before accepting new work.
            reaper = OrphanReaper(session_factory=self._session_factory, settings=self._settings, clock=self._clock)
            report = await reaper.run_once(cleanup=False)
            if report.reaped:
                logger.warning("startup_reaped_orphans count=%d", report.reaped)
        self._stop = asyncio.Event()
        self.pollers = [
            Poller(
                f"{self._prefix}_{index}",
                session_factory=self._session_factory,
                adapter=self._adapter,
                live_updates=self._live_updates,
                settings=self._settings,
                stop_event=self._stop,
                clock=self._clock,
                sleep=self._sleep,
            )
            for index in range(self.size)
        ]
        self._tasks = [asyncio.create_task(poller.run(), name=poller.worker_id) for poller in self.pollers]
        logger.info("worker_pool_started size=%d", self.size)

    async def stop(self) -> None:
        # Pollers finish the job in hand, then exit at the next loop check.
        self._stop.set()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error("poller_exited_with_error", exc_info=result)
        self._tasks = []
        logger.info("worker_pool_stopped size=%d", self.size)

    def stats(self) -> WorkerStats:
        return worker_stats()
