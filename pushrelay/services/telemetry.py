from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class JobEvent:
    ts: float
    worker_id: str
    job_kind: str
    # completed, retrying, failed, or ignored as reported by the queue.
    outcome: str
    duration_ms: float


@dataclass(frozen=True)
class WorkerStats:
    total_processed: int
    total_completed: int
    total_failed: int
    total_retried: int
    avg_processing_ms: float | None
    last_processed_at: float | None


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_job_events: Deque[JobEvent] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters() -> dict[str, int]:
    return dict(_counters)


def record_job_event(*, worker_id: str, job_kind: str, outcome: str, duration_ms: float) -> None:
    # Workers publish one event per reported job; stats are derived from the event log only.
    _job_events.append(
        JobEvent(
            ts=time.time(),
            worker_id=worker_id,
            job_kind=job_kind,
            outcome=outcome,
            duration_ms=duration_ms,
        )
    )
    increment_counter(f"jobs.{job_kind}.{outcome}")


def worker_stats() -> WorkerStats:
    # Advisory snapshot; counters are process-local and reset on restart.
    events = list(_job_events)
    completed = [event for event in events if event.outcome == "completed"]
    avg_ms = sum(event.duration_ms for event in completed) / len(completed) if completed else None
    return WorkerStats(
        total_processed=len(events),
        total_completed=len(completed),
        total_failed=sum(1 for event in events if event.outcome == "failed"),
        total_retried=sum(1 for event in events if event.outcome == "retrying"),
        avg_processing_ms=avg_ms,
        last_processed_at=events[-1].ts if events else None,
    )


def external_call_success_rate(integration: str, window_s: int = 300) -> float | None:
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    if not samples:
        return None
    return sum(1 for s in samples if s.success) / len(samples) * 100.0


def reset_telemetry() -> None:
    # Tests reset module state so counters from earlier cases do not leak.
    _external_samples.clear()
    _job_events.clear()
    _counters.clear()
