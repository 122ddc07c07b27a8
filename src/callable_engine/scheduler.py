"""Call scheduler: dedup, caching, bounded concurrency, timeouts and retries.

``CallEngine.run_batch`` turns a list of CallRequests into exactly one
CallResult per request, in request order. Nothing raises past it: unknown
callables, bad arguments, timeouts, cancellations and remote failures all
become failed results.
"""

from __future__ import annotations

import asyncio
import copy
import json
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Sequence

import httpx
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from callable_engine.abort import acquire_with_abort, create_run_signal, race_with_abort, signal_aborted, sleep_with_abort
from callable_engine.adapter import ExecutionAdapter, build_request_body
from callable_engine.cache import ResultCache
from callable_engine.classifier import classify_error
from callable_engine.config import DEFAULT_PRIORITY, load_env_config, resolve_config
from callable_engine.dotdict import DotDict, FrozenDotDict
from callable_engine.errors import (
    CallableEngineError,
    CallTimeoutError,
    CancelledCallError,
    ExecutionError,
    UnknownError,
    ValidationError,
)
from callable_engine.events import EngineMetrics, create_event_emitter
from callable_engine.logger import get_logger
from callable_engine.normalizer import build_fingerprint, parse_arguments
from callable_engine.registry import CallableRegistry
from callable_engine.retry import RetryController
from callable_engine.store import MemoryCallableStore
from callable_engine.timeout_policy import TimeoutPolicy, is_serial
from callable_engine.types import CallCategory, CallRequest, ErrorKind, RawResponse, RetryState

logger = get_logger(__name__)

_ASYNC_ACCEPTED_MESSAGE = "Execution started asynchronously; call again with wait=true to get the result."


class CallResultDict(DotDict):
    """CallResult with attribute access."""

    def to_tool_message(self) -> dict[str, Any]:
        """Render as an OpenAI-style tool message."""
        return {
            "tool_call_id": self.get("call_id"),
            "name": self.get("name"),
            "content": json.dumps(self.get("content"), default=str),
        }


@dataclass
class _PreparedCall:
    index: int
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    wait: bool = True
    fingerprint: str | None = None
    category: CallCategory = "UNKNOWN"
    timeout_ms: int = 0
    callable_id: str | None = None
    priority: int = DEFAULT_PRIORITY
    error: CallableEngineError | None = None


def _coerce_wait(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return default


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _success_content(response: RawResponse) -> dict[str, Any]:
    if response["kind"] == "async":
        return {"run_id": response.get("run_id"), "status": "accepted", "message": _ASYNC_ACCEPTED_MESSAGE}

    content = {"run_id": response.get("run_id"), "status": response.get("status"), "output": response.get("output")}
    return {key: value for key, value in content.items() if value is not None or key == "output"}


class CallEngine:
    """Runs batches of tool calls against an execution adapter.

    Example:
        engine = CallEngine.from_env({"callableMap": {"search_notes": "c-123"}})
        results = await engine.run_batch([{"id": "call_1", "name": "search_notes", "arguments": '{"q": "x"}'}])
        messages = [result.to_tool_message() for result in results]
        await engine.aclose()
    """

    def __init__(
        self,
        adapter: Any,
        cache: ResultCache | None = None,
        registry: CallableRegistry | None = None,
        config: dict[str, Any] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = resolve_config(config)
        cache_config = self._config["cache"]

        self._adapter = adapter
        self._cache = cache if cache is not None else ResultCache(cache_config["ttlMs"], cache_config["maxEntries"])
        self._registry = registry
        self._owns_registry = False
        self._retry = RetryController(self._config["retry"], rng=rng)
        self._timeouts = TimeoutPolicy(self._config["timeouts"], self._config["overrides"])
        self._semaphore = asyncio.Semaphore(self._config["maxConcurrency"])
        self._serial_lane = asyncio.Lock()
        self._grace_s = self._config["cancelGraceMs"] / 1000.0
        self._emit = create_event_emitter(self._config)
        self._metrics = EngineMetrics()
        self._validators: dict[str, Draft202012Validator | None] = {}

    @classmethod
    def from_env(
        cls,
        config: dict[str, Any] | None = None,
        store: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> CallEngine:
        """Build an engine, adapter and registry from config plus ``CALLABLE_ENGINE_*`` env vars."""
        merged = load_env_config(config)
        resolved = resolve_config(merged)
        adapter = ExecutionAdapter.from_config(resolved, transport=transport)

        engine = cls(adapter, config=merged)
        engine._registry = CallableRegistry(
            adapter,
            store if store is not None else MemoryCallableStore(),
            ttl_ms=resolved["registry"]["ttlMs"],
            emit=engine._emit,
        )
        engine._owns_registry = True
        return engine

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def registry(self) -> CallableRegistry | None:
        return self._registry

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    def metrics(self) -> dict[str, Any]:
        snapshot = self._metrics.snapshot()
        snapshot["cache"] = self._cache.stats()
        return snapshot

    def reset_metrics(self) -> None:
        self._metrics = EngineMetrics()

    async def execute_one(self, request: CallRequest | dict[str, Any], signal: Any = None) -> CallResultDict:
        results = await self.run_batch([request], signal)
        return results[0]

    async def run_batch(self, requests: Sequence[CallRequest | dict[str, Any]], signal: Any = None) -> list[CallResultDict]:
        """Resolve every request to a CallResult, in request order.

        ``signal`` is an abort signal from ``create_abort_controller()``.
        Aborting it cancels in-flight calls and resolves queued ones as
        cancelled.
        """
        if not requests:
            return []

        if self._config["cache"]["enabled"]:
            self._cache.start_sweeper(self._config["cache"]["sweepIntervalMs"])

        prepared = await asyncio.gather(*(self._prepare(request, index) for index, request in enumerate(requests)))

        # Lower priority values dispatch first; ties keep request order.
        by_priority = sorted(prepared, key=lambda call: (call.priority, call.index))
        serial_calls = [call for call in by_priority if call.error is None and is_serial(call.category)]
        parallel_calls = [call for call in by_priority if call.error is not None or not is_serial(call.category)]

        async def run_serial() -> list[CallResultDict]:
            return [await self._run_call(call, signal) for call in serial_calls]

        gathered = await asyncio.gather(run_serial(), *(self._run_call(call, signal) for call in parallel_calls))

        results: list[CallResultDict | None] = [None] * len(prepared)
        for call, result in zip(serial_calls + parallel_calls, [*gathered[0], *gathered[1:]]):
            results[call.index] = result
        return [result for result in results if result is not None]

    async def aclose(self) -> None:
        await self._cache.stop_sweeper()
        if self._owns_registry and self._registry is not None:
            await self._registry.aclose()
        await self._adapter.aclose()

    async def _prepare(self, request: Any, index: int) -> _PreparedCall:
        if not isinstance(request, dict):
            return _PreparedCall(index, f"call_{index}", "", error=ValidationError("Call request must be a mapping", status_code=None))

        # The engine works on its own frozen copy; later mutation by the caller has no effect.
        frozen = FrozenDotDict(request)
        plain = frozen.to_dict()
        call_id = str(plain.get("id") or f"call_{index}")
        name = plain.get("name")
        call = _PreparedCall(index, call_id, name if isinstance(name, str) else "")

        try:
            if not call.name:
                raise ValidationError("Call request is missing a function name", status_code=None)

            arguments = parse_arguments(plain.get("arguments"), call.name)
            call.wait = _coerce_wait(arguments.pop("wait", None), self._config["wait"])
            call.arguments = arguments

            call.callable_id, definition = await self._resolve_callable(call.name)
            if self._config["validateInput"] and definition is not None:
                self._validate_arguments(call, definition)

            # A wait=False run only answers other wait=False calls.
            call.fingerprint = build_fingerprint(call.name, arguments if call.wait else {**arguments, "wait": False})
            call.priority = self._timeouts.priority_for(call.name)
            call.category, call.timeout_ms = self._timeouts.resolve(
                call.name,
                plain.get("category"),
                definition.get("type") if definition is not None else None,
            )
        except CallableEngineError as error:
            call.error = error
        except Exception as error:
            logger.exception("Failed to prepare call %s (%s)", call_id, call.name)
            call.error = UnknownError(f"Failed to prepare call {call.name}: {error}")
        return call

    async def _resolve_callable(self, name: str) -> tuple[str, DotDict | None]:
        definition = await self._registry.resolve(name) if self._registry is not None else None
        mapped = self._config["callableMap"].get(name)
        if mapped:
            return mapped, definition
        if definition is not None:
            return definition["callable_id"], definition
        raise ValidationError(f"Unknown callable: {name}", status_code=None)

    def _validator_for(self, definition: DotDict) -> Draft202012Validator | None:
        # Keyed by sync time so a re-synced schema is recompiled.
        validator_key = f"{definition['callable_id']}@{definition.get('last_synced_at')}"
        if validator_key not in self._validators:
            schema = definition.get("input_schema")
            validator = None
            if isinstance(schema, dict) and schema:
                try:
                    Draft202012Validator.check_schema(schema)
                    validator = Draft202012Validator(schema)
                except SchemaError as error:
                    logger.warning("Ignoring invalid input schema for %s: %s", definition.get("name"), error.message)
            self._validators[validator_key] = validator
        return self._validators[validator_key]

    def _validate_arguments(self, call: _PreparedCall, definition: DotDict) -> None:
        validator = self._validator_for(definition)
        if validator is None:
            return

        payload = build_request_body(call.arguments).get("args", {})
        errors = sorted(validator.iter_errors(payload), key=lambda error: list(error.path))
        if errors:
            messages = [f"{'/'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors]
            raise ValidationError(
                f"Arguments for {call.name} do not match its input schema: {messages[0]}",
                details={"errors": messages},
                status_code=None,
            )

    def _result(self, call: _PreparedCall, started: float, **fields: Any) -> CallResultDict:
        result = CallResultDict(
            {
                "call_id": call.call_id,
                "name": call.name,
                "content": None,
                "success": False,
                "duration_ms": _elapsed_ms(started),
                "attempts": 0,
                "cached": False,
                "deduplicated": False,
            }
        )
        result.update(fields)
        return result

    def _failure(self, call: _PreparedCall, started: float, error: BaseException, kind: ErrorKind, attempts: int) -> CallResultDict:
        message = str(error) or type(error).__name__
        return self._result(
            call,
            started,
            content={"success": False, "error": message},
            error=message,
            error_kind=kind,
            attempts=attempts,
        )

    def _cancelled(self, call: _PreparedCall, started: float, attempts: int) -> CallResultDict:
        self._metrics.cancelled_calls += 1
        self._emit(
            {
                "type": "call_cancelled",
                "message": f"Call {call.name} cancelled",
                "details": {"callId": call.call_id, "name": call.name, "attempts": attempts},
            }
        )
        return self._failure(call, started, CancelledCallError(), "CANCELLED", attempts)

    def _replay(self, call: _PreparedCall, started: float, source: dict[str, Any], **flags: bool) -> CallResultDict:
        result = CallResultDict(copy.deepcopy(source))
        result.update({"call_id": call.call_id, "name": call.name, "duration_ms": _elapsed_ms(started), **flags})
        return result

    async def _run_call(self, call: _PreparedCall, signal: Any) -> CallResultDict:
        started = time.monotonic()

        if call.error is not None:
            kind = call.error.kind
            self._metrics.record_execution(_elapsed_ms(started), False)
            self._emit(
                {
                    "type": "call_failed",
                    "message": f"Call {call.name or call.call_id} rejected: {call.error}",
                    "details": {"callId": call.call_id, "name": call.name, "errorKind": kind, "attempts": 0},
                }
            )
            return self._failure(call, started, call.error, kind, 0)

        use_cache = bool(self._config["cache"]["enabled"])

        while True:
            if signal_aborted(signal):
                return self._cancelled(call, started, 0)

            status, claimed = await self._cache.claim(call.fingerprint, use_cache)

            if status == "hit":
                self._metrics.cache_hits += 1
                self._emit(
                    {
                        "type": "cache_hit",
                        "message": f"Serving {call.name} from cache",
                        "details": {"callId": call.call_id, "name": call.name, "fingerprint": call.fingerprint},
                    }
                )
                return self._replay(call, started, claimed["result"], cached=True, deduplicated=False)

            if status == "wait":
                self._metrics.dedup_waits += 1
                self._emit(
                    {
                        "type": "dedup_wait",
                        "message": f"Waiting on in-flight execution of {call.name}",
                        "details": {"callId": call.call_id, "name": call.name, "fingerprint": call.fingerprint},
                    }
                )
                try:
                    shared = await race_with_abort(signal, lambda: asyncio.shield(claimed), self._grace_s)
                except CancelledCallError:
                    return self._cancelled(call, started, 0)
                if shared.get("error_kind") == "CANCELLED":
                    # The owner's batch was cancelled, not ours. Claim again.
                    continue
                return self._replay(call, started, shared, cached=False, deduplicated=True)

            return await self._own(call, started, signal)

    async def _own(self, call: _PreparedCall, started: float, signal: Any) -> CallResultDict:
        try:
            result, response_kind = await self._execute_with_retries(call, started, signal)
        except asyncio.CancelledError:
            self._cache.abandon(call.fingerprint, self._failure(call, started, CancelledCallError(), "CANCELLED", 0))
            raise
        except Exception as error:
            logger.exception("Unexpected failure while executing %s", call.name)
            result, response_kind = self._failure(call, started, error, "UNKNOWN", 0), None

        if result.get("error_kind") == "CANCELLED":
            self._cache.abandon(call.fingerprint, result)
        else:
            self._cache.complete(call.fingerprint, result, store=self._is_cacheable(result, response_kind))
        return result

    def _is_cacheable(self, result: CallResultDict, response_kind: str | None) -> bool:
        if not self._config["cache"]["enabled"]:
            return False
        if result["success"]:
            return response_kind == "sync"
        return bool(self._config["cache"]["cacheFailures"]) and result.get("error_kind") == "EXECUTION_ERROR"

    async def _execute_with_retries(
        self, call: _PreparedCall, started: float, signal: Any
    ) -> tuple[CallResultDict, str | None]:
        self._emit(
            {
                "type": "call_started",
                "message": f"Executing {call.name}",
                "details": {
                    "callId": call.call_id,
                    "name": call.name,
                    "callableId": call.callable_id,
                    "category": call.category,
                    "timeoutMs": call.timeout_ms,
                },
            }
        )

        result, response_kind = await self._attempt_loop(call, started, signal)
        if result.get("error_kind") == "CANCELLED":
            return result, None

        if not result["success"]:
            fallback = await self._fallback_for(call)
            if fallback is not None:
                self._metrics.total_fallbacks += 1
                self._emit(
                    {
                        "type": "fallback",
                        "message": f"{call.name} failed after {result['attempts']} attempt(s); falling back to {fallback.name}",
                        "details": {
                            "callId": call.call_id,
                            "name": call.name,
                            "fallback": fallback.name,
                            "errorKind": result.get("error_kind"),
                        },
                    }
                )
                logger.warning("Falling back from %s to %s after %s", call.name, fallback.name, result.get("error_kind"))
                result, response_kind = await self._attempt_loop(fallback, started, signal, result["attempts"])
                # The result still answers the original tool call.
                result["name"] = call.name
                result["fallback"] = fallback.name
                if result.get("error_kind") == "CANCELLED":
                    return result, None

        duration_ms = result["duration_ms"]
        self._metrics.record_execution(duration_ms, result["success"])
        if result["success"]:
            self._emit(
                {
                    "type": "call_completed",
                    "message": f"{call.name} completed in {duration_ms}ms",
                    "details": {
                        "callId": call.call_id,
                        "name": call.name,
                        "attempts": result["attempts"],
                        "durationMs": duration_ms,
                        "responseKind": response_kind,
                    },
                }
            )
        else:
            self._emit(
                {
                    "type": "call_failed",
                    "message": f"{call.name} failed: {result['error']}",
                    "details": {
                        "callId": call.call_id,
                        "name": call.name,
                        "errorKind": result.get("error_kind"),
                        "attempts": result["attempts"],
                    },
                }
            )
        return result, response_kind

    async def _fallback_for(self, call: _PreparedCall) -> _PreparedCall | None:
        """Prepare the configured fallback of ``call``, or None when it has none or it cannot run."""
        name = self._config["fallbacks"].get(call.name)
        if not name:
            return None

        try:
            callable_id, definition = await self._resolve_callable(name)
            fallback = replace(call, name=name, callable_id=callable_id)
            if self._config["validateInput"] and definition is not None:
                self._validate_arguments(fallback, definition)
        except ValidationError as error:
            logger.warning("Fallback %s for %s is unusable: %s", name, call.name, error)
            return None

        fallback.category, fallback.timeout_ms = self._timeouts.resolve(
            name, None, definition.get("type") if definition is not None else None
        )
        return fallback

    async def _attempt_loop(
        self, call: _PreparedCall, started: float, signal: Any, attempts_before: int = 0
    ) -> tuple[CallResultDict, str | None]:
        """Attempt ``call`` until it succeeds or its error kind's retry budget runs out."""
        retry_state: RetryState = {"fingerprint": call.fingerprint, "attempt_count": 0}

        attempt = 0
        while True:
            attempt += 1
            retry_state["attempt_count"] = attempt
            failure: Exception

            try:
                response = await self._dispatch(call, signal)
                if response["kind"] == "execution_error":
                    raise ExecutionError(response.get("error") or "Execution failed", response.get("run_id"))

                logger.info("%s completed (%s, %d attempt(s))", call.name, response["kind"], attempt)
                result = self._result(
                    call, started, content=_success_content(response), success=True, attempts=attempts_before + attempt
                )
                return result, response["kind"]

            except CancelledCallError:
                return self._cancelled(call, started, attempts_before + attempt), None
            except Exception as error:
                failure = error

            kind = classify_error(failure)
            retry_state["error_kind"] = kind

            if not self._retry.should_retry(kind, attempt):
                logger.warning("%s failed after %d attempt(s) [%s]: %s", call.name, attempt, kind, failure)
                return self._failure(call, started, failure, kind, attempts_before + attempt), None

            delay_ms = self._retry.delay_for(attempt)
            retry_state["next_allowed_at"] = int(time.time() * 1000) + delay_ms
            self._metrics.total_retries += 1
            self._emit(
                {
                    "type": "retry",
                    "message": f"Retrying {call.name} (attempt {attempt + 1}/{self._retry.budget_for(kind) + 1})",
                    "details": {
                        "callId": call.call_id,
                        "name": call.name,
                        "errorKind": kind,
                        "attempt": attempt,
                        "delayMs": delay_ms,
                        "reason": str(failure),
                    },
                }
            )
            logger.info("Retrying %s in %dms after %s: %s", call.name, delay_ms, kind, failure)

            try:
                await sleep_with_abort(delay_ms, signal)
            except CancelledCallError:
                return self._cancelled(call, started, attempts_before + attempt), None

    async def _dispatch(self, call: _PreparedCall, signal: Any) -> RawResponse:
        """Run one attempt inside the concurrency bounds and the call's timeout."""
        serial = is_serial(call.category)
        if serial:
            await acquire_with_abort(self._serial_lane, signal)
        try:
            await acquire_with_abort(self._semaphore, signal)
            try:
                run_signal_ref = create_run_signal(call.timeout_ms, signal)
                try:
                    return await race_with_abort(
                        run_signal_ref.signal,
                        lambda: self._adapter.execute(call.callable_id, call.arguments, call.wait),
                        self._grace_s,
                    )
                except CancelledCallError:
                    if run_signal_ref.did_timeout():
                        raise CallTimeoutError(f"{call.name} timed out after {call.timeout_ms}ms")
                    raise
                finally:
                    run_signal_ref.cleanup()
            finally:
                self._semaphore.release()
        finally:
            if serial:
                self._serial_lane.release()
