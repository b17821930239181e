from __future__ import annotations

import asyncio
import signal

import pytest

from pushrelay.core.config import get_settings
from pushrelay.providers.delivery.fake import FakeDeliveryAdapter
from pushrelay.workers import push_worker


class _ClosingSink:
    def __init__(self) -> None:
        self.closed = False

    async def publish(self, notification_id: str, update: dict) -> None:
        return None

    async def aclose(self) -> None:
        self.closed = True


class _Engine:
    def __init__(self) -> None:
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


@pytest.mark.asyncio
async def test_worker_shutdown_releases_clients_and_signal_handlers(session_factory, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("WORKER_CONCURRENCY", "2")
    get_settings.cache_clear()
    adapter = FakeDeliveryAdapter()
    sink = _ClosingSink()
    engine = _Engine()
    monkeypatch.setattr(push_worker, "SessionLocal", session_factory)
    monkeypatch.setattr(push_worker, "engine", engine)
    monkeypatch.setattr(push_worker, "get_delivery_adapter", lambda: adapter)
    monkeypatch.setattr(push_worker, "get_live_update_sink", lambda: sink)

    stop = asyncio.Event()
    stop.set()
    await asyncio.wait_for(push_worker.run_push_worker(stop), timeout=5.0)

    assert adapter.closed
    assert sink.closed
    assert engine.disposed
    loop = asyncio.get_running_loop()
    assert not loop.remove_signal_handler(signal.SIGTERM)
    assert not loop.remove_signal_handler(signal.SIGINT)
