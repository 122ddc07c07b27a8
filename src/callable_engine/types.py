"""Callable Engine Type Definitions."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal, TypedDict


# Scalar types
ErrorKind = Literal[
    "SERVER_ERROR",
    "VALIDATION_ERROR",
    "RATE_LIMIT",
    "AUTH_ERROR",
    "TIMEOUT",
    "EXECUTION_ERROR",
    "CANCELLED",
    "UNKNOWN",
]
CallCategory = Literal[
    "READ",
    "SEARCH",
    "WRITE",
    "DATABASE",
    "AGENT",
    "INTEGRATION",
    "UNKNOWN",
]
ResponseKind = Literal["sync", "execution_error", "async"]

# Runtime event stream
EngineEventType = Literal[
    "call_started",
    "call_completed",
    "call_failed",
    "call_cancelled",
    "retry",
    "fallback",
    "cache_hit",
    "dedup_wait",
    "registry_synced",
]


class EngineEvent(TypedDict, total=False):
    type: EngineEventType
    message: str
    timestamp: int
    details: dict[str, Any]


class CallRequest(TypedDict, total=False):
    id: str
    name: str
    arguments: dict[str, Any] | str
    category: CallCategory


class CallResult(TypedDict, total=False):
    call_id: str
    name: str
    content: Any
    success: bool
    error: str
    error_kind: ErrorKind
    duration_ms: int
    attempts: int
    cached: bool
    deduplicated: bool
    fallback: str


class RetryState(TypedDict, total=False):
    fingerprint: str
    error_kind: ErrorKind
    attempt_count: int
    next_allowed_at: int


class CacheEntry(TypedDict):
    fingerprint: str
    result: CallResult
    stored_at: float
    expires_at: float
    hits: int


class CallableDefinition(TypedDict, total=False):
    callable_id: str
    name: str
    type: str
    description: str | None
    slug: str | None
    icon: str | None
    group_name: str | None
    input_schema: dict[str, Any] | None
    output_schema: dict[str, Any] | None
    auth_mode: str | None
    is_owner: bool
    oauth_system_id: str | None
    last_synced_at: str


class AgentCallableLink(TypedDict):
    agent_id: str
    callable_id: str


class RawResponse(TypedDict, total=False):
    kind: ResponseKind
    run_id: str | None
    output: Any
    status: str | None
    error: str | None


class RetryConfig(TypedDict, total=False):
    budgets: dict[str, int]
    initialDelayMs: int
    maxDelayMs: int
    backoffFactor: float
    jitterRatio: float


class CacheConfig(TypedDict, total=False):
    enabled: bool
    ttlMs: int
    maxEntries: int
    cacheFailures: bool
    sweepIntervalMs: int


class RegistryConfig(TypedDict, total=False):
    ttlMs: int


class ToolOverride(TypedDict, total=False):
    timeoutMs: int
    category: CallCategory
    priority: int


class EngineConfig(TypedDict, total=False):
    apiKey: str
    baseUrl: str
    httpTimeoutS: float
    maxConcurrency: int
    cancelGraceMs: int
    wait: bool
    validateInput: bool
    callableMap: dict[str, str]
    fallbacks: dict[str, str]
    retry: RetryConfig
    cache: CacheConfig
    registry: RegistryConfig
    timeouts: dict[str, int]
    overrides: dict[str, dict[str, ToolOverride]]
    onEvent: Callable[[EngineEvent], Any | Awaitable[Any]]
    eventSinks: list[Callable[[EngineEvent], Any | Awaitable[Any]]]
    onEventSinkFailure: Callable[[dict[str, Any]], Any | Awaitable[Any]]
