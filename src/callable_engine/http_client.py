"""HTTP client for the remote execution API."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx

from callable_engine.dotdict import DotDict
from callable_engine.errors import (
    AuthError,
    CallableEngineError,
    CallTimeoutError,
    TransportError,
    error_from_response,
)
from callable_engine.logger import get_logger

logger = get_logger(__name__)


def create_http_client(
    base_url: str,
    api_key: str,
    timeout: float = 600.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DotDict:
    """Create an HTTP client for the execution API.

    Returns a DotDict with request/get/post/set_api_key/aclose functions. One
    ``httpx.AsyncClient`` is opened lazily and shared by every request until
    ``aclose()``. ``transport`` is handed to httpx (tests pass a MockTransport).
    """
    if not api_key:
        raise AuthError("API key is required")

    resolved_base_url = base_url.rstrip("/")
    state: dict[str, Any] = {"api_key": api_key, "client": None}

    def _build_url(path: str, params: dict[str, str | int] | None = None) -> str:
        url = f"{resolved_base_url}{path}"
        if params:
            query = urlencode({k: str(v) for k, v in params.items()})
            url = f"{url}?{query}"
        return url

    def _client() -> httpx.AsyncClient:
        if state["client"] is None or state["client"].is_closed:
            state["client"] = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)
        return state["client"]

    def _parse_response(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            if not response.is_success:
                return {"message": response.text}
            raise TransportError(
                f"Response from {response.request.url.path} is not valid JSON",
                response.status_code,
            )

    async def request(
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, str | int] | None = None,
    ) -> Any:
        url = _build_url(path, params)
        headers = {
            "Content-Type": "application/json",
            "x-api-key": state["api_key"],
        }

        try:
            response = await _client().request(method=method, url=url, headers=headers, json=body)
            data = _parse_response(response)

            if not response.is_success:
                raise error_from_response(response.status_code, data)

            return data

        except CallableEngineError:
            raise
        except httpx.TimeoutException:
            raise CallTimeoutError(f"{method} {path} timed out")
        except httpx.ConnectError:
            raise TransportError("Unable to connect to server")
        except httpx.HTTPError as error:
            logger.debug("%s %s failed: %r", method, path, error)
            raise TransportError(f"Request failed: {error}")

    async def get(path: str, params: dict[str, str | int] | None = None) -> Any:
        return await request("GET", path, params=params)

    async def post(path: str, body: dict[str, Any] | None = None, params: dict[str, str | int] | None = None) -> Any:
        return await request("POST", path, body=body, params=params)

    def set_api_key(api_key: str) -> None:
        state["api_key"] = api_key

    async def aclose() -> None:
        client = state["client"]
        state["client"] = None
        if client is not None:
            await client.aclose()

    return DotDict(
        {
            "request": request,
            "get": get,
            "post": post,
            "set_api_key": set_api_key,
            "aclose": aclose,
        }
    )
