from __future__ import annotations

import random

from pushrelay.services.queue.backoff import IdlePollBackoff, retry_delay_s


def test_retry_delay_doubles_from_base() -> None:
    delays = [retry_delay_s(attempt, base_s=30, max_s=3600) for attempt in range(4)]
    assert delays == [30, 60, 120, 240]


def test_retry_delay_is_capped() -> None:
    assert retry_delay_s(10, base_s=30, max_s=3600) == 3600
    # Very large attempt counts stay at the cap instead of overflowing.
    assert retry_delay_s(10_000, base_s=30, max_s=3600) == 3600


def test_retry_delay_non_decreasing_for_random_configs() -> None:
    rng = random.Random(7)
    for _ in range(200):
        base = rng.uniform(0.1, 60)
        cap = base * rng.uniform(1, 500)
        previous = 0.0
        for attempt in range(40):
            delay = retry_delay_s(attempt, base_s=base, max_s=cap)
            assert previous <= delay <= cap
            previous = delay


def test_idle_poll_backoff_grows_and_caps() -> None:
    backoff = IdlePollBackoff(min_s=1, max_s=10)
    assert [backoff.interval(n) for n in range(6)] == [1, 2, 4, 8, 10, 10]


def test_idle_poll_backoff_reset_returns_minimum() -> None:
    backoff = IdlePollBackoff(min_s=0.5, max_s=4)
    assert backoff.interval(3) == 4
    assert backoff.interval(0) == 0.5


def test_cap_below_base_still_bounds_the_delay() -> None:
    assert retry_delay_s(0, base_s=30, max_s=10) == 10
    assert retry_delay_s(5, base_s=30, max_s=10) == 10
    assert IdlePollBackoff(min_s=5, max_s=2).interval(0) == 2
