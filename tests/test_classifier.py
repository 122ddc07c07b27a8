from __future__ import annotations

import asyncio

import httpx
import pytest

from callable_engine import (
    AuthError,
    ExecutionError,
    NotFoundError,
    ServerError,
    TransportError,
    ValidationError,
    classify,
    classify_error,
)
from callable_engine.errors import error_from_response


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (429, "RATE_LIMIT"),
        (401, "AUTH_ERROR"),
        (403, "AUTH_ERROR"),
        (400, "VALIDATION_ERROR"),
        (404, "VALIDATION_ERROR"),
        (422, "VALIDATION_ERROR"),
        (500, "SERVER_ERROR"),
        (503, "SERVER_ERROR"),
    ],
)
def test_classify_by_status_code(status_code: int, expected: str) -> None:
    assert classify(status_code) == expected


def test_timeout_flag_wins_over_status_code() -> None:
    assert classify(500, "server error", timed_out=True) == "TIMEOUT"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Request timed out after 5s", "TIMEOUT"),
        ("Too Many Requests", "RATE_LIMIT"),
        ("rate limit exceeded", "RATE_LIMIT"),
        ("Invalid API key", "AUTH_ERROR"),
        ("Forbidden", "AUTH_ERROR"),
        ("bad request: missing field", "VALIDATION_ERROR"),
        ("Service Unavailable", "SERVER_ERROR"),
        ("connection reset", "UNKNOWN"),
    ],
)
def test_classify_by_message_when_no_status(message: str, expected: str) -> None:
    assert classify(None, message) == expected


def test_classify_error_uses_typed_kinds() -> None:
    assert classify_error(ServerError()) == "SERVER_ERROR"
    assert classify_error(AuthError()) == "AUTH_ERROR"
    assert classify_error(ExecutionError("tool crashed", "run_9")) == "EXECUTION_ERROR"
    assert classify_error(TransportError("Unable to connect to server")) == "UNKNOWN"


def test_classify_error_handles_foreign_exceptions() -> None:
    status_error = Exception("upstream failed")
    setattr(status_error, "status_code", 502)

    assert classify_error(asyncio.TimeoutError()) == "TIMEOUT"
    assert classify_error(httpx.ReadTimeout("slow")) == "TIMEOUT"
    assert classify_error(status_error) == "SERVER_ERROR"
    assert classify_error(RuntimeError("something odd")) == "UNKNOWN"


def test_error_from_response_maps_statuses() -> None:
    assert isinstance(error_from_response(404, {"error": "missing"}), NotFoundError)
    assert isinstance(error_from_response(418, {}), ValidationError)
    assert isinstance(error_from_response(302, "moved"), TransportError)

    server = error_from_response(503, {"message": "down"})
    assert isinstance(server, ServerError)
    assert server.status_code == 503
    assert "down" in str(server)
