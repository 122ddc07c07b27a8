"""Call categories and per-category timeout budgets.

Categories come from, in order: an explicit category on the request, the
callable type reported by the registry, the `mcp_` prefix, delegation names
(`delegate_*`, `execute_agent`, `call_*_agent`), the verb prefixes in
CATEGORY_PREFIXES, and last an `agent` marker anywhere in the name. Anything
unmatched is UNKNOWN and gets the longest budget.
"""

from __future__ import annotations

import re
from typing import Any

from callable_engine.config import DEFAULT_PRIORITY, DEFAULT_TIMEOUTS_MS, _is_number
from callable_engine.types import CallCategory

CATEGORIES: tuple[CallCategory, ...] = ("READ", "SEARCH", "WRITE", "DATABASE", "AGENT", "INTEGRATION", "UNKNOWN")

CATEGORY_PREFIXES: tuple[tuple[CallCategory, tuple[str, ...]], ...] = (
    ("READ", ("read", "list", "fetch", "get", "find")),
    ("SEARCH", ("search", "query", "lookup")),
    ("WRITE", ("create", "update", "delete", "insert", "modify", "remove", "set", "put", "patch")),
    ("DATABASE", ("execute", "sql", "transaction")),
)

SERIAL_CATEGORIES = frozenset({"WRITE", "DATABASE"})

_INTEGRATION_PREFIXES = ("mcp_", "mcp-", "mcp.")
# delegate_research, execute_agent, call_research_agent, invokeAgent
_DELEGATION = re.compile(r"^(?:delegate|(?:execute|call|run|invoke|ask)_?\w*agent$)")
_AGENT_TYPES = frozenset({"agent"})
_INTEGRATION_TYPES = frozenset({"mcp", "integration"})


def _normalize_explicit(category: Any) -> CallCategory | None:
    if not isinstance(category, str):
        return None
    upper = category.strip().upper()
    if upper in CATEGORIES:
        return upper  # type: ignore[return-value]
    return None


def infer_category(name: str, explicit: Any = None, callable_type: str | None = None) -> CallCategory:
    """Infer the category of a call from its name and any explicit hints."""
    category = _normalize_explicit(explicit)
    if category:
        return category

    if isinstance(callable_type, str):
        lowered_type = callable_type.lower()
        if lowered_type in _AGENT_TYPES:
            return "AGENT"
        if lowered_type in _INTEGRATION_TYPES:
            return "INTEGRATION"

    lowered = name.strip().lower()
    if lowered.startswith(_INTEGRATION_PREFIXES):
        return "INTEGRATION"
    if _DELEGATION.match(lowered):
        return "AGENT"

    # Verb prefixes win over the agent marker: create_agent is still a WRITE.
    for category_name, prefixes in CATEGORY_PREFIXES:
        if lowered.startswith(prefixes):
            return category_name

    if "agent" in lowered:
        return "AGENT"
    return "UNKNOWN"


def is_serial(category: CallCategory) -> bool:
    return category in SERIAL_CATEGORIES


def _match_pattern(value: str, pattern: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return value == pattern


def _get_tool_pattern_specificity(pattern: str) -> int:
    if pattern == "*":
        return 0
    if pattern.endswith("*"):
        return 1
    return 2


def find_tool_override(entries: list[dict[str, Any]], tool_name: str) -> dict[str, Any] | None:
    """Return the override of the most specific pattern matching ``tool_name``."""
    best: dict[str, Any] | None = None

    for entry in entries:
        pattern = str(entry.get("pattern", ""))
        if not _match_pattern(tool_name, pattern):
            continue
        score = _get_tool_pattern_specificity(pattern)
        if best is None or score > int(best["score"]):
            best = {"score": score, "override": entry.get("override", {})}

    if not best:
        return None
    return best["override"]


class TimeoutPolicy:
    """Resolves the category and timeout budget of a call."""

    def __init__(self, timeouts: dict[str, int] | None = None, overrides: list[dict[str, Any]] | None = None) -> None:
        self._timeouts = {**DEFAULT_TIMEOUTS_MS, **(timeouts or {})}
        self._overrides = overrides or []

    def timeout_for(self, category: CallCategory) -> int:
        return int(self._timeouts.get(category, self._timeouts["UNKNOWN"]))

    def resolve(self, name: str, explicit: Any = None, callable_type: str | None = None) -> tuple[CallCategory, int]:
        """Return ``(category, timeout_ms)`` for a call."""
        override = find_tool_override(self._overrides, name) or {}
        category = infer_category(name, explicit if explicit else override.get("category"), callable_type)

        timeout_ms = self.timeout_for(category)
        if _is_number(override.get("timeoutMs")) and float(override["timeoutMs"]) > 0:
            timeout_ms = int(round(float(override["timeoutMs"])))
        return category, timeout_ms

    def priority_for(self, name: str) -> int:
        """Dispatch priority from ``overrides.tools``; lower runs first."""
        override = find_tool_override(self._overrides, name) or {}
        if _is_number(override.get("priority")):
            return int(override["priority"])
        return DEFAULT_PRIORITY
