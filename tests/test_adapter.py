from __future__ import annotations

import httpx
import pytest

from callable_engine import (
    AuthError,
    CallTimeoutError,
    ExecutionAdapter,
    NotFoundError,
    RateLimitError,
    ServerError,
    TransportError,
    build_request_body,
)

from helpers import make_transport, request_json

BASE_URL = "https://exec.example.com"
EXECUTE_PATH = "/execution/c-1"


def _adapter(routes: dict, seen: list | None = None) -> ExecutionAdapter:
    return ExecutionAdapter("test-key", BASE_URL, timeout=5, transport=make_transport(routes, seen))


def test_build_request_body_separates_transport_fields() -> None:
    assert build_request_body({"query": "x", "wait": False, "settings": {"temperature": 0}}) == {
        "args": {"query": "x"},
        "settings": {"temperature": 0},
    }
    assert build_request_body({"args": {"a": 1}, "other": 2}) == {"args": {"a": 1}}
    assert build_request_body({"wait": True}) == {}


@pytest.mark.asyncio
async def test_execute_posts_args_with_wait_in_query_and_api_key_header() -> None:
    seen: list[httpx.Request] = []
    adapter = _adapter({("POST", EXECUTE_PATH): {"run_id": "r1", "result": "hello"}}, seen)

    response = await adapter.execute("c-1", {"query": "x", "wait": True}, wait=False)
    await adapter.aclose()

    assert response == {"kind": "sync", "run_id": "r1", "output": "hello", "status": None, "error": None}
    request = seen[0]
    assert request.url.params["wait"] == "false"
    assert request.headers["x-api-key"] == "test-key"
    assert request_json(request) == {"args": {"query": "x"}}


@pytest.mark.asyncio
async def test_status_output_envelope_is_normalized() -> None:
    adapter = _adapter({("POST", EXECUTE_PATH): {"run_id": "r2", "result": {"status": "completed", "output": {"n": 3}}}})

    response = await adapter.execute("c-1", {})
    await adapter.aclose()

    assert response["kind"] == "sync"
    assert response["output"] == {"n": 3}
    assert response["status"] == "completed"


@pytest.mark.asyncio
async def test_execution_error_and_async_acceptance_shapes() -> None:
    failing = _adapter({("POST", EXECUTE_PATH): {"run_id": "r3", "result": None, "error": "division by zero"}})
    accepted = _adapter({("POST", EXECUTE_PATH): {"run_id": "r4"}})

    error_response = await failing.execute("c-1", {})
    async_response = await accepted.execute("c-1", {}, wait=False)
    await failing.aclose()
    await accepted.aclose()

    assert error_response["kind"] == "execution_error"
    assert error_response["error"] == "division by zero"
    assert async_response["kind"] == "async"
    assert async_response["run_id"] == "r4"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "error_type"),
    [
        (httpx.Response(401, json={"error": "bad key"}), AuthError),
        (httpx.Response(404, json={"error": "no such callable"}), NotFoundError),
        (httpx.Response(429, json={"error": "slow down"}), RateLimitError),
        (httpx.Response(500, json={"error": "boom"}), ServerError),
        (httpx.Response(502, text="Bad gateway"), ServerError),
        (httpx.Response(200, text="<html>oops</html>"), TransportError),
        (httpx.ConnectError("refused"), TransportError),
        (httpx.ReadTimeout("slow"), CallTimeoutError),
    ],
)
async def test_transport_failures_raise_typed_errors(outcome: object, error_type: type) -> None:
    adapter = _adapter({("POST", EXECUTE_PATH): outcome})

    with pytest.raises(error_type):
        await adapter.execute("c-1", {"query": "x"})
    await adapter.aclose()


@pytest.mark.asyncio
async def test_list_catalog_accepts_list_or_data_envelope() -> None:
    wrapped = _adapter({("GET", "/execution"): {"data": [{"id": "c-1", "name": "get_note"}]}})
    bare = _adapter({("GET", "/execution"): [{"id": "c-2", "name": "search_notes"}]})

    wrapped_catalog = await wrapped.list_catalog()
    bare_catalog = await bare.list_catalog()
    await wrapped.aclose()
    await bare.aclose()

    assert wrapped_catalog[0].name == "get_note"
    assert bare_catalog[0]["id"] == "c-2"


def test_missing_api_key_is_rejected() -> None:
    with pytest.raises(AuthError):
        ExecutionAdapter("", BASE_URL)
