from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

ACTIVE_STATUSES = ("queued", "processing")

# Forward-only lifecycle; terminal statuses have no outgoing edges.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"processing", "completed", "failed", "cancelled"}),
    "processing": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


class ResponseLike(Protocol):
    target: str
    success: bool
    attempt_number: int


@dataclass(frozen=True)
class Aggregates:
    total_sent: int
    successful: int
    failed: int
    success_rate: int


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def source_statuses(target: str) -> tuple[str, ...]:
    # Statuses a conditional update may move from when writing target.
    return tuple(status for status in _TRANSITIONS if can_transition(status, target))


def percent_half_up(numerator: int, denominator: int) -> int:
    # Integer rounding half-up so 2/3 reports 67 and 1/2 reports 50 on every platform.
    if denominator <= 0:
        return 0
    return (numerator * 200 + denominator) // (denominator * 2)


def latest_by_target(responses: Iterable[ResponseLike]) -> dict[str, ResponseLike]:
    # The latest response per target wins: highest attempt number, then insertion order.
    latest: dict[str, tuple[tuple[int, int], ResponseLike]] = {}
    for position, response in enumerate(responses):
        key = (int(response.attempt_number), position)
        current = latest.get(response.target)
        if current is None or key >= current[0]:
            latest[response.target] = (key, response)
    return {target: entry[1] for target, entry in latest.items()}


def compute_aggregates(responses: Iterable[ResponseLike]) -> Aggregates:
    latest = latest_by_target(responses)
    successful = sum(1 for response in latest.values() if response.success)
    total_sent = len(latest)
    failed = total_sent - successful
    return Aggregates(
        total_sent=total_sent,
        successful=successful,
        failed=failed,
        success_rate=percent_half_up(successful, total_sent),
    )


def resolve_terminal_status(aggregates: Aggregates) -> str:
    # A notification counts as delivered when at least one target accepted it.
    return "completed" if aggregates.successful > 0 else "failed"


def undelivered_targets(targets: Sequence[str], responses: Iterable[ResponseLike]) -> list[str]:
    # Targets without a successful latest response, in their original order.
    latest = latest_by_target(responses)
    return [target for target in targets if not (target in latest and latest[target].success)]


def resendable_targets(targets: Sequence[str], responses: Iterable[ResponseLike]) -> list[str]:
    # Targets still worth re-sending: never attempted, or last attempt failed retryably.
    latest = latest_by_target(responses)
    resend: list[str] = []
    for target in targets:
        response = latest.get(target)
        if response is None or (not response.success and bool(getattr(response, "retryable", False))):
            resend.append(target)
    return resend
