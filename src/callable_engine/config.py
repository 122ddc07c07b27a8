"""Engine configuration resolution.

Configuration is a plain dict with camelCase keys (snake_case aliases are
accepted). ``resolve_config`` fills defaults and clamps every numeric field so
the rest of the engine can trust the values it reads.
"""

from __future__ import annotations

import math
import os
from typing import Any

from dotenv import load_dotenv

from callable_engine.errors import ConfigurationError
from callable_engine.types import EngineConfig

DEFAULT_BASE_URL = "https://origins-server.up.railway.app"
DEFAULT_HTTP_TIMEOUT_S = 600.0
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_CANCEL_GRACE_MS = 250
# Lower runs first.
DEFAULT_PRIORITY = 5

DEFAULT_RETRY_BUDGETS = {
    "SERVER_ERROR": 3,
    "VALIDATION_ERROR": 5,
    "RATE_LIMIT": 1,
    "AUTH_ERROR": 0,
    "TIMEOUT": 2,
    "UNKNOWN": 2,
    "EXECUTION_ERROR": 0,
    "CANCELLED": 0,
}
# Never retried, whatever the configured budget says.
TERMINAL_KINDS = frozenset({"AUTH_ERROR", "EXECUTION_ERROR", "CANCELLED"})

DEFAULT_RETRY = {
    "initialDelayMs": 1000,
    "maxDelayMs": 10_000,
    "backoffFactor": 2.0,
    "jitterRatio": 0.1,
}
DEFAULT_CACHE = {
    "enabled": True,
    "ttlMs": 5 * 60 * 1000,
    "maxEntries": 1000,
    "cacheFailures": False,
    "sweepIntervalMs": 60_000,
}
DEFAULT_REGISTRY = {
    "ttlMs": 5 * 60 * 1000,
}
DEFAULT_TIMEOUTS_MS = {
    "READ": 5_000,
    "SEARCH": 10_000,
    "WRITE": 10_000,
    "DATABASE": 15_000,
    "AGENT": 120_000,
    "INTEGRATION": 120_000,
    "UNKNOWN": 120_000,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(float(value))


def _to_int(value: Any, fallback: int) -> int:
    if not _is_number(value):
        return fallback
    return int(round(float(value)))


def _clamp_number(value: Any, fallback: float, minimum: float | None = None, maximum: float | None = None) -> float:
    if not _is_number(value):
        result = fallback
    else:
        result = float(value)

    if minimum is not None and result < minimum:
        result = minimum
    if maximum is not None and result > maximum:
        result = maximum
    return result


def _dict_get(mapping: dict[str, Any] | None, *keys: str, default: Any = None) -> Any:
    if not mapping:
        return default
    for key in keys:
        if key in mapping:
            return mapping[key]
    return default


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _resolve_retry_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    overrides = overrides or {}

    budgets = dict(DEFAULT_RETRY_BUDGETS)
    for kind, budget in _as_dict(overrides.get("budgets")).items():
        if kind in budgets and kind not in TERMINAL_KINDS and _is_number(budget):
            budgets[kind] = max(0, int(round(float(budget))))

    jitter_ratio = _clamp_number(
        _dict_get(overrides, "jitterRatio", "jitter_ratio"), DEFAULT_RETRY["jitterRatio"], 0, 0.5
    )
    # Keeps delay_for() non-decreasing in the attempt number.
    minimum_factor = (1 + jitter_ratio) / (1 - jitter_ratio)

    return {
        "budgets": budgets,
        "initialDelayMs": _to_int(
            _clamp_number(_dict_get(overrides, "initialDelayMs", "initial_delay_ms"), DEFAULT_RETRY["initialDelayMs"], 0),
            DEFAULT_RETRY["initialDelayMs"],
        ),
        "maxDelayMs": _to_int(
            _clamp_number(_dict_get(overrides, "maxDelayMs", "max_delay_ms"), DEFAULT_RETRY["maxDelayMs"], 0),
            DEFAULT_RETRY["maxDelayMs"],
        ),
        "backoffFactor": _clamp_number(
            _dict_get(overrides, "backoffFactor", "backoff_factor"), DEFAULT_RETRY["backoffFactor"], minimum_factor
        ),
        "jitterRatio": jitter_ratio,
    }


def _resolve_cache_config(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    overrides = overrides or {}
    return {
        "enabled": bool(overrides.get("enabled", DEFAULT_CACHE["enabled"])),
        "ttlMs": _to_int(_clamp_number(_dict_get(overrides, "ttlMs", "ttl_ms"), DEFAULT_CACHE["ttlMs"], 0), DEFAULT_CACHE["ttlMs"]),
        "maxEntries": _to_int(
            _clamp_number(_dict_get(overrides, "maxEntries", "max_entries"), DEFAULT_CACHE["maxEntries"], 1),
            DEFAULT_CACHE["maxEntries"],
        ),
        "cacheFailures": bool(_dict_get(overrides, "cacheFailures", "cache_failures", default=DEFAULT_CACHE["cacheFailures"])),
        "sweepIntervalMs": _to_int(
            _clamp_number(_dict_get(overrides, "sweepIntervalMs", "sweep_interval_ms"), DEFAULT_CACHE["sweepIntervalMs"], 10),
            DEFAULT_CACHE["sweepIntervalMs"],
        ),
    }


def _resolve_timeouts(overrides: dict[str, Any] | None = None) -> dict[str, int]:
    timeouts = dict(DEFAULT_TIMEOUTS_MS)
    for category, value in (overrides or {}).items():
        key = str(category).upper()
        if key in timeouts and _is_number(value) and float(value) > 0:
            timeouts[key] = int(round(float(value)))
    return timeouts


def _resolve_tool_overrides(overrides: dict[str, Any] | None) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []
    for raw_pattern, raw_override in _as_dict(_as_dict(overrides).get("tools")).items():
        pattern = str(raw_pattern).strip()
        if not pattern:
            continue
        override = _as_dict(raw_override)
        results.append(
            {
                "pattern": pattern,
                "override": {
                    "timeoutMs": override.get("timeoutMs", override.get("timeout_ms")),
                    "category": override.get("category"),
                    "priority": _to_int(override.get("priority"), DEFAULT_PRIORITY),
                },
            }
        )
    return results


def resolve_config(config: EngineConfig | dict[str, Any] | None = None) -> dict[str, Any]:
    """Fill defaults and clamp values for an engine config dict."""
    config = config or {}

    callable_map = _as_dict(_dict_get(config, "callableMap", "callable_map"))
    fallbacks = _as_dict(_dict_get(config, "fallbacks", "fallback_tools"))

    return {
        "apiKey": _dict_get(config, "apiKey", "api_key"),
        "baseUrl": str(_dict_get(config, "baseUrl", "base_url", default=DEFAULT_BASE_URL)).rstrip("/"),
        "httpTimeoutS": _clamp_number(_dict_get(config, "httpTimeoutS", "http_timeout_s"), DEFAULT_HTTP_TIMEOUT_S, 1),
        "maxConcurrency": max(
            1, _to_int(_dict_get(config, "maxConcurrency", "max_concurrency"), DEFAULT_MAX_CONCURRENCY)
        ),
        "cancelGraceMs": max(
            0, _to_int(_dict_get(config, "cancelGraceMs", "cancel_grace_ms"), DEFAULT_CANCEL_GRACE_MS)
        ),
        "wait": bool(_dict_get(config, "wait", default=True)),
        "validateInput": bool(_dict_get(config, "validateInput", "validate_input", default=True)),
        "callableMap": {str(name): str(callable_id) for name, callable_id in callable_map.items()},
        "fallbacks": {str(name): str(fallback) for name, fallback in fallbacks.items() if fallback and fallback != name},
        "retry": _resolve_retry_config(_as_dict(_dict_get(config, "retry"))),
        "cache": _resolve_cache_config(_as_dict(_dict_get(config, "cache"))),
        "registry": {
            "ttlMs": _to_int(
                _clamp_number(
                    _dict_get(_as_dict(_dict_get(config, "registry")), "ttlMs", "ttl_ms"), DEFAULT_REGISTRY["ttlMs"], 0
                ),
                DEFAULT_REGISTRY["ttlMs"],
            ),
        },
        "timeouts": _resolve_timeouts(_as_dict(_dict_get(config, "timeouts"))),
        "overrides": _resolve_tool_overrides(_as_dict(_dict_get(config, "overrides"))),
        "onEvent": _dict_get(config, "onEvent", "on_event"),
        "eventSinks": list(_dict_get(config, "eventSinks", "event_sinks", default=[])),
        "onEventSinkFailure": _dict_get(config, "onEventSinkFailure", "on_event_sink_failure"),
    }


def load_env_config(config: EngineConfig | dict[str, Any] | None = None) -> dict[str, Any]:
    """Merge ``CALLABLE_ENGINE_*`` environment variables (and ``.env``) into ``config``.

    Explicit config values win over the environment. Raises ConfigurationError
    when no API key can be found.
    """
    load_dotenv()
    merged: dict[str, Any] = dict(config or {})

    if not _dict_get(merged, "apiKey", "api_key"):
        merged["apiKey"] = os.environ.get("CALLABLE_ENGINE_API_KEY", "")
    if not _dict_get(merged, "baseUrl", "base_url") and os.environ.get("CALLABLE_ENGINE_BASE_URL"):
        merged["baseUrl"] = os.environ["CALLABLE_ENGINE_BASE_URL"]
    if _dict_get(merged, "httpTimeoutS", "http_timeout_s") is None and os.environ.get("CALLABLE_ENGINE_TIMEOUT_S"):
        try:
            merged["httpTimeoutS"] = float(os.environ["CALLABLE_ENGINE_TIMEOUT_S"])
        except ValueError:
            raise ConfigurationError("CALLABLE_ENGINE_TIMEOUT_S must be a number")

    if not merged["apiKey"]:
        raise ConfigurationError("API key is required (set CALLABLE_ENGINE_API_KEY)")

    return merged
