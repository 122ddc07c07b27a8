"""Callable Engine - execution control for LLM tool calls against remote callables.

Example:
    import asyncio
    from callable_engine import CallEngine, create_abort_controller

    async def main():
        # Reads CALLABLE_ENGINE_API_KEY / CALLABLE_ENGINE_BASE_URL (and .env)
        engine = CallEngine.from_env({"callableMap": {"search_notes": "callable-123"}})

        # Mirror the remote catalog so names resolve without a callableMap
        await engine.registry.sync_from_remote_catalog()

        controller = create_abort_controller()
        results = await engine.run_batch(
            [
                {"id": "call_1", "name": "search_notes", "arguments": '{"query": "roadmap"}'},
                {"id": "call_2", "name": "search_notes", "arguments": '{"query": "roadmap"}'},
            ],
            signal=controller.signal,
        )

        # Results support both dot and bracket notation
        for result in results:
            print(result.call_id, result.success, result["deduplicated"])

        # Hand results back to the LLM layer
        messages = [result.to_tool_message() for result in results]

        await engine.aclose()

    asyncio.run(main())
"""

# Engine
from callable_engine.scheduler import CallEngine, CallResultDict

# Building blocks
from callable_engine.adapter import ExecutionAdapter, build_request_body, normalize_response
from callable_engine.cache import ResultCache
from callable_engine.classifier import classify, classify_error
from callable_engine.normalizer import build_fingerprint, parse_arguments, stable_stringify, strip_volatile
from callable_engine.registry import CallableRegistry
from callable_engine.retry import RetryController
from callable_engine.store import MemoryCallableStore, SqliteCallableStore
from callable_engine.timeout_policy import TimeoutPolicy, infer_category

# Runtime helpers
from callable_engine.abort import create_abort_controller
from callable_engine.config import load_env_config, resolve_config
from callable_engine.dotdict import DotDict, FrozenDotDict
from callable_engine.events import EngineMetrics
from callable_engine.logger import get_logger, setup_logging

# Errors
from callable_engine.errors import (
    AuthError,
    CallableEngineError,
    CallTimeoutError,
    CancelledCallError,
    ConfigurationError,
    DuplicateLinkError,
    ExecutionError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TransportError,
    UnknownError,
    ValidationError,
)

# Types
from callable_engine.types import (
    AgentCallableLink,
    CacheEntry,
    CallableDefinition,
    CallCategory,
    CallRequest,
    CallResult,
    EngineConfig,
    EngineEvent,
    EngineEventType,
    ErrorKind,
    RawResponse,
    RetryState,
)

__all__ = [
    # Engine
    "CallEngine",
    "CallResultDict",
    # Building blocks
    "ExecutionAdapter",
    "build_request_body",
    "normalize_response",
    "ResultCache",
    "classify",
    "classify_error",
    "build_fingerprint",
    "parse_arguments",
    "stable_stringify",
    "strip_volatile",
    "CallableRegistry",
    "RetryController",
    "MemoryCallableStore",
    "SqliteCallableStore",
    "TimeoutPolicy",
    "infer_category",
    # Runtime helpers
    "create_abort_controller",
    "load_env_config",
    "resolve_config",
    "DotDict",
    "FrozenDotDict",
    "EngineMetrics",
    "get_logger",
    "setup_logging",
    # Errors
    "CallableEngineError",
    "AuthError",
    "CallTimeoutError",
    "CancelledCallError",
    "ConfigurationError",
    "DuplicateLinkError",
    "ExecutionError",
    "NotFoundError",
    "RateLimitError",
    "ServerError",
    "TransportError",
    "UnknownError",
    "ValidationError",
    # Types
    "AgentCallableLink",
    "CacheEntry",
    "CallableDefinition",
    "CallCategory",
    "CallRequest",
    "CallResult",
    "EngineConfig",
    "EngineEvent",
    "EngineEventType",
    "ErrorKind",
    "RawResponse",
    "RetryState",
]
