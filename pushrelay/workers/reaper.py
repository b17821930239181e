from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.clock import utc_now
from pushrelay.core.config import Settings, get_settings
from pushrelay.persistence.repos.notifications import cleanup_notifications
from pushrelay.services.queue.job_queue import cleanup_completed, reap_orphans

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReaperReport:
    reaped: int
    cleaned: int
    notifications_cleaned: int = 0


class OrphanReaper:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if session_factory is None:
            from pushrelay.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._sweeps = 0

    async def run_once(self, *, cleanup: bool | None = None) -> ReaperReport:
        # Reap every sweep; delete expired terminal jobs and notifications every cleanup_every_n_sweeps sweeps.
        if cleanup is None:
            cleanup = self._sweeps % max(1, int(self._settings.cleanup_every_n_sweeps)) == 0
        self._sweeps += 1
        now = self._clock()
        async with self._session_factory() as session:
            reaped = await reap_orphans(session, stale_after_s=self._settings.reaper_stale_after_s, now=now)
            cleaned = 0
            notifications_cleaned = 0
            if cleanup:
                cleaned = await cleanup_completed(
                    session, older_than_s=self._settings.job_retention_hours * 3600.0, now=now
                )
                notifications_cleaned = await cleanup_notifications(
                    session, older_than_s=self._settings.notification_retention_days * 86400.0, now=now
                )
        if reaped:
            logger.warning("orphan_jobs_reaped count=%d", reaped)
        if cleaned:
            logger.info("terminal_jobs_cleaned count=%d", cleaned)
        if notifications_cleaned:
            logger.info("terminal_notifications_cleaned count=%d", notifications_cleaned)
        return ReaperReport(reaped=reaped, cleaned=cleaned, notifications_cleaned=notifications_cleaned)

    async def run(self, stop_event: asyncio.Event) -> None:
        # Runs on its own cadence so recovery never depends on an idle worker.
        interval_s = max(1.0, float(self._settings.reaper_interval_s))
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001 - keep the reaper alive while surfacing failures in worker logs.
                logger.exception("orphan_reaper_sweep_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
