from __future__ import annotations

import asyncio
import logging
import signal

from pushrelay.core.config import get_settings
from pushrelay.persistence.db import SessionLocal, engine
from pushrelay.providers.delivery.factory import get_delivery_adapter
from pushrelay.services.live_updates import get_live_update_sink
from pushrelay.workers.pool import WorkerPool
from pushrelay.workers.reaper import OrphanReaper

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> list[signal.Signals]:
    installed: list[signal.Signals] = []
    for sig in _STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable on some platforms and in non-main threads.
            continue
        installed.append(sig)
    return installed


async def run_push_worker(stop_event: asyncio.Event | None = None) -> None:
    # Run the poller pool and the reaper side by side until a stop signal arrives.
    settings = get_settings()
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, stop_event)

    adapter = get_delivery_adapter()
    live_updates = get_live_update_sink()
    pool = WorkerPool(
        settings.worker_concurrency,
        session_factory=SessionLocal,
        adapter=adapter,
        live_updates=live_updates,
        settings=settings,
    )
    reaper = OrphanReaper(session_factory=SessionLocal, settings=settings)
    reaper_task: asyncio.Task[None] | None = None
    try:
        await pool.start()
        reaper_task = asyncio.create_task(reaper.run(stop_event), name="orphan-reaper")
        await stop_event.wait()
    finally:
        logger.info("push_worker_shutdown_requested")
        stop_event.set()
        await pool.stop()
        if reaper_task is not None:
            await reaper_task
        # Pollers are stopped, so nothing else holds the gateway or pub/sub clients.
        for name, resource in (("delivery_adapter", adapter), ("live_updates", live_updates)):
            try:
                await resource.aclose()
            except Exception:  # noqa: BLE001 - shutdown continues so the engine is still disposed.
                logger.warning("push_worker_close_failed resource=%s", name, exc_info=True)
        for sig in installed:
            loop.remove_signal_handler(sig)
        await engine.dispose()
        logger.info("push_worker_stopped")
