from __future__ import annotations

import json

import pytest

from pushrelay.services.live_updates import (
    NullLiveUpdateSink,
    RedisLiveUpdateSink,
    get_live_update_sink,
    publish_safely,
)
from pushrelay.services.telemetry import counters


class _FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class _BrokenSink:
    async def publish(self, notification_id: str, update: dict) -> None:
        raise ConnectionError("redis down")


@pytest.mark.asyncio
async def test_redis_sink_publishes_per_notification_channel() -> None:
    redis = _FakeRedis()
    sink = RedisLiveUpdateSink(redis, channel_prefix="test:notification")
    await sink.publish("n1", {"event": "status", "status": "completed"})
    channel, message = redis.published[0]
    assert channel == "test:notification:n1"
    assert json.loads(message) == {"event": "status", "notification_id": "n1", "status": "completed"}


@pytest.mark.asyncio
async def test_publish_safely_swallows_sink_failures() -> None:
    assert await publish_safely(_BrokenSink(), "n1", {"event": "status"}) is False
    assert counters()["live_updates.publish_failed"] == 1
    assert await publish_safely(NullLiveUpdateSink(), "n1", {"event": "status"}) is True


def test_sink_selection_follows_settings(monkeypatch) -> None:  # noqa: ANN001
    from pushrelay.core.config import get_settings

    monkeypatch.setenv("LIVE_UPDATES_ENABLED", "false")
    get_settings.cache_clear()
    assert isinstance(get_live_update_sink(), NullLiveUpdateSink)
    monkeypatch.setenv("LIVE_UPDATES_ENABLED", "true")
    get_settings.cache_clear()
    assert isinstance(get_live_update_sink(), RedisLiveUpdateSink)


@pytest.mark.asyncio
async def test_closing_sink_releases_only_the_shared_client(monkeypatch) -> None:  # noqa: ANN001
    import asyncio

    from pushrelay.services import live_updates

    injected = _FakeRedis()
    await RedisLiveUpdateSink(injected).aclose()
    assert not injected.closed

    shared = _FakeRedis()
    monkeypatch.setattr(live_updates, "_redis_client", shared)
    monkeypatch.setattr(live_updates, "_redis_loop", asyncio.get_running_loop())
    await RedisLiveUpdateSink().aclose()
    assert shared.closed
    assert live_updates._redis_client is None
    # Closing twice is harmless.
    await RedisLiveUpdateSink().aclose()
