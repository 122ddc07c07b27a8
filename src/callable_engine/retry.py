"""Retry budgets and exponential backoff with jitter.

The controller is stateless: attempt counts live in the caller's RetryState.
"""

from __future__ import annotations

import random
from typing import Any, Callable

from callable_engine.config import TERMINAL_KINDS, _resolve_retry_config
from callable_engine.types import ErrorKind


class RetryController:
    """Decides whether a failed call may run again and how long to wait first."""

    def __init__(self, config: dict[str, Any] | None = None, rng: Callable[[], float] = random.random) -> None:
        # Accept either a resolved retry config or raw overrides.
        self._config = config if config and "budgets" in config and "backoffFactor" in config else _resolve_retry_config(config)
        self._rng = rng

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    def budget_for(self, kind: ErrorKind) -> int:
        if kind in TERMINAL_KINDS:
            return 0
        return int(self._config["budgets"].get(kind, 0))

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """``attempt`` is the number of attempts already made (1 after the first failure)."""
        return attempt <= self.budget_for(kind)

    def delay_for(self, attempt: int) -> int:
        """Backoff in ms before the attempt following ``attempt``."""
        exponent = min(max(0, attempt - 1), 64)
        base_delay = float(self._config["initialDelayMs"]) * (float(self._config["backoffFactor"]) ** exponent)

        jitter_ratio = float(self._config["jitterRatio"])
        jitter = 1.0 + (self._rng() * 2 - 1) * jitter_ratio if jitter_ratio > 0 else 1.0

        return max(0, int(round(min(float(self._config["maxDelayMs"]), base_delay * jitter))))
