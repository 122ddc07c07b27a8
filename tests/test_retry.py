from __future__ import annotations

import random

import pytest

from callable_engine import RetryController


@pytest.mark.parametrize(
    ("kind", "budget"),
    [
        ("SERVER_ERROR", 3),
        ("VALIDATION_ERROR", 5),
        ("RATE_LIMIT", 1),
        ("AUTH_ERROR", 0),
        ("TIMEOUT", 2),
        ("UNKNOWN", 2),
        ("EXECUTION_ERROR", 0),
        ("CANCELLED", 0),
    ],
)
def test_default_budgets(kind: str, budget: int) -> None:
    controller = RetryController()

    assert controller.budget_for(kind) == budget
    if budget:
        assert controller.should_retry(kind, budget) is True
    assert controller.should_retry(kind, budget + 1) is False


def test_delay_doubles_from_initial_and_caps_at_max() -> None:
    controller = RetryController(rng=lambda: 0.5)

    assert [controller.delay_for(attempt) for attempt in range(1, 6)] == [1000, 2000, 4000, 8000, 10000]


def test_jitter_stays_within_ratio() -> None:
    low = RetryController(rng=lambda: 0.0)
    high = RetryController(rng=lambda: 1.0)

    assert low.delay_for(1) == 900
    assert high.delay_for(1) == 1100


def test_delay_never_decreases_with_attempt() -> None:
    seeded = random.Random(7)
    controller = RetryController(rng=seeded.random)

    for _ in range(50):
        delays = [controller.delay_for(attempt) for attempt in range(1, 8)]
        assert delays == sorted(delays)


def test_budget_overrides_cannot_make_terminal_kinds_retryable() -> None:
    controller = RetryController({"budgets": {"SERVER_ERROR": 1, "AUTH_ERROR": 3, "EXECUTION_ERROR": 2}})

    assert controller.budget_for("SERVER_ERROR") == 1
    assert controller.should_retry("AUTH_ERROR", 1) is False
    assert controller.should_retry("EXECUTION_ERROR", 1) is False


def test_backoff_factor_is_raised_to_keep_delays_monotonic() -> None:
    controller = RetryController({"backoffFactor": 1, "jitterRatio": 0.1})

    assert controller.config["backoffFactor"] == pytest.approx(1.1 / 0.9)


def test_huge_attempt_numbers_stay_at_max_delay() -> None:
    controller = RetryController(rng=lambda: 0.5)

    assert controller.delay_for(10_000) == 10000
