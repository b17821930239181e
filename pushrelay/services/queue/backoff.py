from __future__ import annotations

from dataclasses import dataclass


def retry_delay_s(attempt: int, *, base_s: float, max_s: float) -> float:
    # Exponential retry delay with a hard cap; attempt counts from zero.
    attempt = max(0, int(attempt))
    base_s = max(0.0, float(base_s))
    max_s = max(0.0, float(max_s))
    if base_s == 0.0:
        return 0.0
    delay = base_s
    # Stop doubling once past the cap so huge attempt counts cannot overflow floats.
    for _ in range(attempt):
        if delay >= max_s:
            break
        delay *= 2
    return min(delay, max_s)


@dataclass(frozen=True)
class IdlePollBackoff:
    min_s: float
    max_s: float

    def interval(self, idle_count: int) -> float:
        # Idle interval doubles per consecutive empty poll and resets when a claim succeeds.
        return retry_delay_s(idle_count, base_s=self.min_s, max_s=self.max_s)
