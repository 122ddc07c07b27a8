"""Failure classification.

Maps a raw failure signal (status code, message text, timeout flag) to one of
the fixed error kinds that drive the retry controller.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from callable_engine.errors import CallableEngineError
from callable_engine.types import ErrorKind

_TIMEOUT_PATTERN = re.compile(r"timed out|timeout", re.I)
_RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|too many requests", re.I)
_AUTH_PATTERN = re.compile(r"unauthori[sz]ed|forbidden|invalid api key|authentication", re.I)
_VALIDATION_PATTERN = re.compile(r"invalid|validation|bad request|not found", re.I)
_SERVER_PATTERN = re.compile(r"server error|unavailable|bad gateway|internal error", re.I)


def classify(status_code: int | None = None, message: str | None = None, timed_out: bool = False) -> ErrorKind:
    """Classify a failure from its status code and/or message."""
    if timed_out:
        return "TIMEOUT"

    if isinstance(status_code, int):
        if status_code == 429:
            return "RATE_LIMIT"
        if status_code in (401, 403):
            return "AUTH_ERROR"
        if 400 <= status_code < 500:
            return "VALIDATION_ERROR"
        if status_code >= 500:
            return "SERVER_ERROR"

    text = message or ""
    if _TIMEOUT_PATTERN.search(text):
        return "TIMEOUT"
    if _RATE_LIMIT_PATTERN.search(text):
        return "RATE_LIMIT"
    if _AUTH_PATTERN.search(text):
        return "AUTH_ERROR"
    if _VALIDATION_PATTERN.search(text):
        return "VALIDATION_ERROR"
    if _SERVER_PATTERN.search(text):
        return "SERVER_ERROR"
    return "UNKNOWN"


def _extract_status_code(error: Any) -> int | None:
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int):
            return value

    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception raised while executing a call."""
    if isinstance(error, CallableEngineError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "TIMEOUT"
    return classify(_extract_status_code(error), str(error))
