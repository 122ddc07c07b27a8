"""Execution adapter for the remote ``/execution`` endpoint.

Separates the transport-level ``wait`` flag from call arguments and folds the
three response shapes (sync result, execution error, async acceptance) into a
single RawResponse.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from callable_engine.config import DEFAULT_BASE_URL, DEFAULT_HTTP_TIMEOUT_S
from callable_engine.dotdict import DotDict
from callable_engine.errors import TransportError
from callable_engine.http_client import create_http_client
from callable_engine.logger import get_logger
from callable_engine.types import RawResponse

logger = get_logger(__name__)

_TRANSPORT_KEYS = ("wait", "settings")


def build_request_body(args: dict[str, Any]) -> dict[str, Any]:
    """Build ``{args?, settings?}`` from parsed call arguments.

    A nested object under ``args`` is sent as-is; otherwise every argument
    except ``wait`` and ``settings`` becomes ``args``. ``wait`` never reaches
    the body.
    """
    body: dict[str, Any] = {}
    nested = args.get("args")
    if isinstance(nested, dict):
        body["args"] = nested
    else:
        call_args = {key: value for key, value in args.items() if key not in _TRANSPORT_KEYS}
        if call_args:
            body["args"] = call_args

    settings = args.get("settings")
    if isinstance(settings, dict):
        body["settings"] = settings

    return body


def normalize_response(data: Any) -> RawResponse:
    """Fold a 2xx response body into a RawResponse."""
    if not isinstance(data, dict):
        raise TransportError(f"Unexpected response body of type {type(data).__name__}")

    run_id = data.get("run_id")
    result = data.get("result")

    if result is not None:
        if isinstance(result, dict) and "output" in result and "status" in result:
            return {"kind": "sync", "run_id": run_id, "output": result["output"], "status": result["status"], "error": None}
        return {"kind": "sync", "run_id": run_id, "output": result, "status": None, "error": None}

    error = data.get("error")
    if error:
        return {"kind": "execution_error", "run_id": run_id, "output": None, "status": "failed", "error": str(error)}

    if run_id:
        logger.warning("Run %s accepted asynchronously; result will not be polled", run_id)
        return {"kind": "async", "run_id": run_id, "output": None, "status": "accepted", "error": None}

    raise TransportError("Response has neither result, error nor run_id")


class ExecutionAdapter:
    """Talks to ``POST {base_url}/execution/{callable_id}`` and ``GET {base_url}/execution``."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = create_http_client(self.base_url, api_key, timeout, transport=transport)

    @classmethod
    def from_config(cls, resolved: dict[str, Any], transport: httpx.AsyncBaseTransport | None = None) -> ExecutionAdapter:
        return cls(resolved["apiKey"], resolved["baseUrl"], resolved["httpTimeoutS"], transport=transport)

    async def execute(self, callable_id: str, args: dict[str, Any], wait: bool = True) -> RawResponse:
        body = build_request_body(args)
        path = f"/execution/{quote(str(callable_id), safe='')}"
        logger.debug("POST %s wait=%s args=%s", path, wait, sorted(body.get("args", {})))

        data = await self._http["post"](path, body, params={"wait": "true" if wait else "false"})
        return normalize_response(data)

    async def list_catalog(self) -> list[dict[str, Any]]:
        data = await self._http["get"]("/execution")
        if isinstance(data, dict):
            data = data.get("data") or []
        if not isinstance(data, list):
            raise TransportError("Catalog response is not a list")
        return [DotDict(item) for item in data if isinstance(item, dict)]

    async def aclose(self) -> None:
        await self._http["aclose"]()
