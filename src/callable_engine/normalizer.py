"""Call normalization and fingerprinting.

Two calls that only differ in volatile fields (timestamps, ids, trace ids)
normalize to the same fingerprint, which keys both deduplication and the
result cache.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from callable_engine.errors import ValidationError

VOLATILE_KEYS = frozenset(
    {
        "timestamp",
        "id",
        "_id",
        "created_at",
        "updated_at",
        "created",
        "modified",
        "time",
        "date",
        "session_id",
        "sessionId",
        "trace_id",
        "traceId",
        "request_id",
        "requestId",
        "operation_id",
        "operationId",
    }
)


def strip_volatile(value: Any) -> Any:
    """Recursively drop denylisted keys from mappings, at any depth."""
    if isinstance(value, dict):
        return {key: strip_volatile(item) for key, item in value.items() if key not in VOLATILE_KEYS}
    if isinstance(value, (list, tuple)):
        return [strip_volatile(item) for item in value]
    return value


def stable_stringify(value: Any) -> str:
    if value is None or isinstance(value, (str, int, float, bool)):
        return json.dumps(value)

    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"

    if isinstance(value, dict):
        keys = sorted(value.keys(), key=str)
        return "{" + ",".join(f"{json.dumps(str(key))}:{stable_stringify(value[key])}" for key in keys) + "}"

    raise TypeError(f"Unsupported value for stable stringify: {type(value).__name__}")


def _digest(serialized: str) -> str:
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def build_fingerprint(name: str, arguments: Any) -> str:
    """Return the sha256 fingerprint of ``name`` + volatile-stripped ``arguments``."""
    try:
        serialized = stable_stringify({"name": name, "arguments": strip_volatile(arguments)})
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Arguments for {name} are not serializable: {error}", status_code=None)
    return _digest(serialized)


def parse_arguments(raw: Any, name: str) -> dict[str, Any]:
    """Coerce LLM-supplied arguments into a dict, dropping null values.

    Accepts a mapping, a JSON-encoded object string, or nothing.
    """
    if raw is None or raw == "":
        return {}

    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except ValueError as error:
            raise ValidationError(f"Invalid JSON arguments for {name}: {error}", status_code=None)
    else:
        parsed = raw

    if not isinstance(parsed, dict):
        raise ValidationError(
            f"Arguments for {name} must be a JSON object, got {type(parsed).__name__}",
            status_code=None,
        )

    return {str(key): value for key, value in parsed.items() if value is not None}
