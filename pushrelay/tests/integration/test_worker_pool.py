from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pushrelay.core.clock import utc_now
from pushrelay.core.config import Settings
from pushrelay.core.errors import ClaimContendedError
from pushrelay.providers.delivery.fake import FakeDeliveryAdapter
from pushrelay.services.notifications import queue_notification
from pushrelay.services.queue.job_queue import claim_next
from pushrelay.tests.utils.jobs import FrozenClock, load_job, load_notification, make_request
from pushrelay.workers.pool import Poller, PollerState, WorkerPool


def _fast_settings(**overrides) -> Settings:  # noqa: ANN003
    values = {
        "poll_interval_min_s": 0.01,
        "poll_interval_max_s": 0.05,
        "worker_error_backoff_s": 0.01,
        "delivery_provider": "fake",
    }
    values.update(overrides)
    return Settings(**values)


async def _wait_for(predicate, *, timeout_s: float = 5.0) -> None:  # noqa: ANN001
    deadline = asyncio.get_running_loop().time() + timeout_s
    while asyncio.get_running_loop().time() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("condition not met before timeout")


class _FlakySessionFactory:
    def __init__(self, inner, failures: int = 1) -> None:  # noqa: ANN001
        self._inner = inner
        self._failures = failures

    def __call__(self):  # noqa: ANN204
        if self._failures > 0:
            self._failures -= 1
            raise RuntimeError("database restarting")
        return self._inner()


@pytest.mark.asyncio
async def test_idle_backoff_grows_then_resets_on_claim(session_factory) -> None:  # noqa: ANN001
    clock = FrozenClock()
    poller = Poller("w1", session_factory=session_factory, adapter=FakeDeliveryAdapter(), clock=clock)
    intervals = [(await poller.run_once()).sleep_s for _ in range(5)]
    assert intervals == [1, 2, 4, 8, 10]
    assert poller.idle_count == 5

    async with session_factory() as session:
        await queue_notification(session, make_request(tokens=["A"]), now=clock())
    result = await poller.run_once()
    assert result.claimed
    assert result.job_status == "completed"
    assert poller.idle_count == 0
    assert (await poller.run_once()).sleep_s == 1


@pytest.mark.asyncio
async def test_lost_claim_races_do_not_grow_idle_backoff(session_factory, monkeypatch) -> None:  # noqa: ANN001
    async def always_contended(session, **kwargs):  # noqa: ANN001, ANN003, ANN202
        raise ClaimContendedError("lost 3 claim races in a row")

    monkeypatch.setattr("pushrelay.workers.pool.claim_next", always_contended)
    poller = Poller("w1", session_factory=session_factory, adapter=FakeDeliveryAdapter(), clock=FrozenClock())
    for _ in range(3):
        result = await poller.run_once()
        assert not result.claimed
        assert result.contended
        assert result.sleep_s == 0.0
    assert poller.idle_count == 0
    assert poller.state is PollerState.IDLE


@pytest.mark.asyncio
async def test_failing_iteration_does_not_kill_the_loop(session_factory) -> None:  # noqa: ANN001
    clock = FrozenClock()
    async with session_factory() as session:
        queued = await queue_notification(session, make_request(tokens=["A"]), now=clock())

    stop = asyncio.Event()
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) >= 2:
            stop.set()

    poller = Poller(
        "w1",
        session_factory=_FlakySessionFactory(session_factory),
        adapter=FakeDeliveryAdapter(),
        settings=_fast_settings(worker_error_backoff_s=5.0, poll_interval_min_s=1.0, poll_interval_max_s=10.0),
        stop_event=stop,
        clock=clock,
        sleep=record_sleep,
    )
    await poller.run()
    # Error backoff first, then the job runs, then the first idle interval.
    assert sleeps == [5.0, 1.0]
    assert poller.state is PollerState.STOPPED
    assert (await load_notification(session_factory, queued.notification_id)).status == "completed"


@pytest.mark.asyncio
async def test_pool_processes_jobs_and_stops_cleanly(session_factory) -> None:  # noqa: ANN001
    async with session_factory() as session:
        queued = [await queue_notification(session, make_request(tokens=[f"t{i}", f"u{i}"])) for i in range(3)]

    adapter = FakeDeliveryAdapter()
    pool = WorkerPool(3, session_factory=session_factory, adapter=adapter, settings=_fast_settings())
    await pool.start()
    assert [poller.worker_id for poller in pool.pollers] == ["worker_0", "worker_1", "worker_2"]

    async def all_settled() -> bool:
        for item in queued:
            if (await load_notification(session_factory, item.notification_id)).status != "completed":
                return False
        return True

    try:
        await _wait_for(all_settled)
    finally:
        await pool.stop()
    assert not pool.running
    assert all(poller.state is PollerState.STOPPED for poller in pool.pollers)
    assert len(adapter.calls) == 6
    stats = pool.stats()
    assert stats.total_completed == 6
    assert stats.total_failed == 0


@pytest.mark.asyncio
async def test_stop_finishes_the_job_in_hand(session_factory) -> None:  # noqa: ANN001
    async with session_factory() as session:
        queued = await queue_notification(session, make_request(tokens=["slow"]))
    adapter = FakeDeliveryAdapter(delay_s=0.3)
    pool = WorkerPool(1, session_factory=session_factory, adapter=adapter, settings=_fast_settings())
    await pool.start()

    async def delivering() -> bool:
        return bool(adapter.calls)

    await _wait_for(delivering)
    await pool.stop()
    job = await load_job(session_factory, queued.job_ids[0])
    assert job.status == "completed"
    assert (await load_notification(session_factory, queued.notification_id)).status == "completed"


@pytest.mark.asyncio
async def test_pool_start_reaps_orphaned_jobs(session_factory) -> None:  # noqa: ANN001
    long_ago = utc_now() - timedelta(minutes=11)
    async with session_factory() as session:
        queued = await queue_notification(session, make_request(tokens=["A"]), now=long_ago)
        claimed = await claim_next(session, worker_id="crashed_0", now=long_ago + timedelta(minutes=1))
    assert claimed is not None

    pool = WorkerPool(1, session_factory=session_factory, adapter=FakeDeliveryAdapter(), settings=_fast_settings())
    await pool.start()

    async def completed() -> bool:
        return (await load_job(session_factory, queued.job_ids[0])).status == "completed"

    try:
        await _wait_for(completed)
    finally:
        await pool.stop()
    job = await load_job(session_factory, queued.job_ids[0])
    assert job.worker_id is None
