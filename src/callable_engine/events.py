"""Runtime event fan-out and engine metrics."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from callable_engine.logger import get_logger
from callable_engine.types import EngineEvent

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _maybe_await(value: Any) -> Any:
    if asyncio.isfuture(value) or asyncio.iscoroutine(value):
        return await value
    return value


def create_event_emitter(resolved: dict[str, Any]) -> Callable[[EngineEvent], None]:
    """Build an ``emit(event)`` function bound to the configured callbacks.

    ``onEvent`` is called inline (coroutines are scheduled); every sink in
    ``eventSinks`` runs as its own task and a failing sink is reported to
    ``onEventSinkFailure`` without affecting the call that emitted the event.
    """

    async def _run_on_event_sink_failure(params: dict[str, Any]) -> None:
        callback = resolved.get("onEventSinkFailure")
        if not callable(callback):
            logger.warning("Event sink %s failed: %s", params["sinkIndex"], params["failure"])
            return

        try:
            await _maybe_await(callback(params))
        except Exception:
            logger.exception("onEventSinkFailure callback raised")

    async def _fanout(target: Callable[[EngineEvent], Any], idx: int, emitted: EngineEvent) -> None:
        try:
            await _maybe_await(target(emitted))
        except Exception as failure:
            await _run_on_event_sink_failure({"failure": failure, "event": emitted, "sinkIndex": idx})

    def emit_event(event: EngineEvent) -> None:
        emitted: EngineEvent = {**event, "timestamp": _now_ms()}  # type: ignore[typeddict-item]
        logger.debug("event %s: %s", emitted.get("type"), emitted.get("message"))

        on_event = resolved.get("onEvent")
        if callable(on_event):
            try:
                maybe = on_event(emitted)
                if asyncio.iscoroutine(maybe):
                    asyncio.ensure_future(maybe)
            except Exception:
                logger.exception("onEvent callback raised for %s", emitted.get("type"))

        event_sinks = resolved.get("eventSinks", [])
        if not isinstance(event_sinks, list) or not event_sinks:
            return

        for sink_index, sink in enumerate(event_sinks):
            if callable(sink):
                asyncio.ensure_future(_fanout(sink, sink_index, emitted))

    return emit_event


@dataclass
class EngineMetrics:
    """Running counters for one engine instance."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    cancelled_calls: int = 0
    total_retries: int = 0
    total_fallbacks: int = 0
    cache_hits: int = 0
    dedup_waits: int = 0
    avg_execution_ms: float = 0.0

    def record_execution(self, duration_ms: int, success: bool) -> None:
        self.total_calls += 1
        if success:
            self.successful_calls += 1
        else:
            self.failed_calls += 1
        self.avg_execution_ms = (self.avg_execution_ms * (self.total_calls - 1) + duration_ms) / self.total_calls

    @property
    def success_rate(self) -> float:
        if not self.total_calls:
            return 0.0
        return self.successful_calls / self.total_calls * 100

    @property
    def cache_hit_rate(self) -> float:
        served = self.total_calls + self.cache_hits + self.dedup_waits
        if not served:
            return 0.0
        return self.cache_hits / served * 100

    def snapshot(self) -> dict[str, Any]:
        data = asdict(self)
        data["success_rate"] = self.success_rate
        data["cache_hit_rate"] = self.cache_hit_rate
        return data
