from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from redis.asyncio import Redis

from pushrelay.core.config import get_settings
from pushrelay.services.telemetry import increment_counter

logger = logging.getLogger(__name__)

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


class LiveUpdateSink(Protocol):
    async def publish(self, notification_id: str, update: dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...


class NullLiveUpdateSink:
    async def publish(self, notification_id: str, update: dict[str, Any]) -> None:
        return None

    async def aclose(self) -> None:
        return None


class RedisLiveUpdateSink:
    def __init__(self, redis: Redis | None = None, *, channel_prefix: str | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._channel_prefix = channel_prefix or settings.live_updates_channel_prefix

    def channel_for(self, notification_id: str) -> str:
        return f"{self._channel_prefix}:{notification_id}"

    async def publish(self, notification_id: str, update: dict[str, Any]) -> None:
        redis = self._redis or await _get_redis()
        payload = json.dumps({"notification_id": notification_id, **update}, default=str, sort_keys=True)
        await redis.publish(self.channel_for(notification_id), payload)

    async def aclose(self) -> None:
        # An injected client belongs to the caller; only the shared client is closed here.
        if self._redis is None:
            await close_redis()


async def _get_redis() -> Redis:
    # Reuse one Redis client per event loop for pub/sub fan-out.
    global _redis_client, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop == current_loop:
        return _redis_client
    async with _redis_lock:
        if _redis_client is None or _redis_loop != current_loop:
            _redis_client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_client


async def close_redis() -> None:
    global _redis_client, _redis_loop
    client = _redis_client
    _redis_client = None
    _redis_loop = None
    if client is not None:
        await client.aclose()


def get_live_update_sink() -> LiveUpdateSink:
    if get_settings().live_updates_enabled:
        return RedisLiveUpdateSink()
    return NullLiveUpdateSink()


async def publish_safely(sink: LiveUpdateSink, notification_id: str, update: dict[str, Any]) -> bool:
    # Live updates are best-effort; a broken sink must never fail job reporting.
    try:
        await sink.publish(notification_id, update)
    except Exception:  # noqa: BLE001 - live update fan-out is advisory.
        increment_counter("live_updates.publish_failed")
        logger.warning("live_update_publish_failed notification_id=%s", notification_id, exc_info=True)
        return False
    return True
