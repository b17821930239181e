from __future__ import annotations

import random
from dataclasses import dataclass

import pytest

from pushrelay.services.notifications.state import (
    Aggregates,
    can_transition,
    compute_aggregates,
    percent_half_up,
    resendable_targets,
    resolve_terminal_status,
    source_statuses,
    undelivered_targets,
)


@dataclass
class _Response:
    target: str
    success: bool
    attempt_number: int = 1
    retryable: bool = False


def test_example_scenario_aggregates() -> None:
    responses = [_Response("A", True), _Response("B", False), _Response("C", True)]
    aggregates = compute_aggregates(responses)
    assert aggregates == Aggregates(total_sent=3, successful=2, failed=1, success_rate=67)
    assert resolve_terminal_status(aggregates) == "completed"


def test_latest_attempt_per_target_wins() -> None:
    responses = [
        _Response("A", False, attempt_number=1, retryable=True),
        _Response("A", True, attempt_number=2),
        _Response("B", True, attempt_number=1),
    ]
    aggregates = compute_aggregates(responses)
    assert aggregates.total_sent == 2
    assert aggregates.successful == 2
    assert aggregates.failed == 0
    assert aggregates.success_rate == 100


def test_same_attempt_ties_use_insertion_order() -> None:
    responses = [_Response("A", True, attempt_number=1), _Response("A", False, attempt_number=1)]
    assert compute_aggregates(responses).successful == 0


def test_no_responses_is_zero_rate_and_fails() -> None:
    aggregates = compute_aggregates([])
    assert aggregates == Aggregates(total_sent=0, successful=0, failed=0, success_rate=0)
    assert resolve_terminal_status(aggregates) == "failed"


@pytest.mark.parametrize(
    ("successful", "total", "expected"),
    [(1, 2, 50), (2, 3, 67), (1, 3, 33), (1, 8, 13), (0, 5, 0), (5, 5, 100)],
)
def test_percent_rounds_half_up(successful: int, total: int, expected: int) -> None:
    assert percent_half_up(successful, total) == expected


def test_aggregates_consistent_for_random_histories() -> None:
    rng = random.Random(42)
    targets = [f"t{i}" for i in range(12)]
    for _ in range(300):
        history = [
            _Response(rng.choice(targets), rng.random() < 0.5, attempt_number=rng.randint(1, 4))
            for _ in range(rng.randint(0, 30))
        ]
        aggregates = compute_aggregates(history)
        assert aggregates.total_sent >= aggregates.successful + aggregates.failed
        assert aggregates.total_sent == len({response.target for response in history})
        assert 0 <= aggregates.success_rate <= 100
        if aggregates.total_sent:
            exact = aggregates.successful * 100 / aggregates.total_sent
            assert abs(aggregates.success_rate - exact) <= 0.5


def test_transitions_are_forward_only() -> None:
    assert can_transition("queued", "processing")
    assert can_transition("processing", "completed")
    assert can_transition("processing", "cancelled")
    assert not can_transition("processing", "queued")
    assert not can_transition("completed", "failed")
    assert not can_transition("cancelled", "processing")
    assert not can_transition("failed", "cancelled")


def test_conditional_updates_only_move_from_allowed_statuses() -> None:
    assert source_statuses("processing") == ("queued",)
    assert source_statuses("cancelled") == ("queued", "processing")
    assert source_statuses("failed") == ("queued", "processing")
    assert source_statuses("queued") == ()


def test_undelivered_and_resendable_targets() -> None:
    responses = [
        _Response("A", True),
        _Response("B", False, retryable=True),
        _Response("C", False, retryable=False),
    ]
    assert undelivered_targets(["A", "B", "C", "D"], responses) == ["B", "C", "D"]
    assert resendable_targets(["A", "B", "C", "D"], responses) == ["B", "D"]
