"""Callable Engine Error Classes."""

from __future__ import annotations

from typing import Any

from callable_engine.types import ErrorKind


class CallableEngineError(Exception):
    """Base error for all callable engine errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = "UNKNOWN",
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.details = details


class ServerError(CallableEngineError):
    """Raised when the remote endpoint fails with a 5xx status."""

    def __init__(self, message: str = "Remote server error", status_code: int = 500) -> None:
        super().__init__(message, "SERVER_ERROR", status_code)


class ValidationError(CallableEngineError):
    """Raised when a request is rejected as invalid, locally or remotely."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = 400,
    ) -> None:
        super().__init__(message, "VALIDATION_ERROR", status_code, details)


class NotFoundError(ValidationError):
    """Raised when a callable is not found."""

    def __init__(self, resource: str = "Callable") -> None:
        super().__init__(f"{resource} not found", status_code=404)


class RateLimitError(CallableEngineError):
    """Raised when the remote endpoint rate-limits the caller."""

    def __init__(self, message: str = "Rate limit exceeded") -> None:
        super().__init__(message, "RATE_LIMIT", 429)


class AuthError(CallableEngineError):
    """Raised when credentials are rejected."""

    def __init__(self, message: str = "Invalid or missing API key", status_code: int = 401) -> None:
        super().__init__(message, "AUTH_ERROR", status_code)


class CallTimeoutError(CallableEngineError):
    """Raised when a call exceeds its timeout budget."""

    def __init__(self, message: str = "Call timed out") -> None:
        super().__init__(message, "TIMEOUT")


class ExecutionError(CallableEngineError):
    """The remote callable ran and reported failure. Always terminal."""

    def __init__(self, message: str, run_id: str | None = None) -> None:
        super().__init__(message, "EXECUTION_ERROR", details={"run_id": run_id} if run_id else None)
        self.run_id = run_id


class TransportError(CallableEngineError):
    """Raised for connection failures and unreadable responses."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, "UNKNOWN", status_code)


class UnknownError(CallableEngineError):
    """Raised for failures that match no other kind."""

    def __init__(self, message: str = "Call failed") -> None:
        super().__init__(message, "UNKNOWN")


class CancelledCallError(CallableEngineError):
    """Raised when a call is cancelled by its batch."""

    def __init__(self, message: str = "Call cancelled by caller") -> None:
        super().__init__(message, "CANCELLED")


class DuplicateLinkError(CallableEngineError):
    """Raised by stores when an agent/callable link already exists."""

    def __init__(self, agent_id: str, callable_id: str) -> None:
        super().__init__(f"Callable {callable_id} already linked to agent {agent_id}", "VALIDATION_ERROR", 409)


class ConfigurationError(CallableEngineError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "VALIDATION_ERROR")


def _message_from_body(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, str) and body:
        return body
    return fallback


def error_from_response(status_code: int, body: Any) -> CallableEngineError:
    """Create an error from a non-2xx API response."""
    message = _message_from_body(body, f"HTTP {status_code}")

    match status_code:
        case 400:
            return ValidationError(f"Invalid request (400): {message}", status_code=400)
        case 401 | 403:
            return AuthError(f"Invalid credentials ({status_code}): {message}", status_code)
        case 404:
            return NotFoundError(f"Callable ({message})")
        case 429:
            return RateLimitError(f"Rate limited (429): {message}")
        case _ if status_code >= 500:
            return ServerError(f"Remote server error ({status_code}): {message}", status_code)
        case _ if 400 <= status_code < 500:
            return ValidationError(f"Request rejected ({status_code}): {message}", status_code=status_code)
        case _:
            return TransportError(f"Unexpected HTTP status {status_code}: {message}", status_code)
