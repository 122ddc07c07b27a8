from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import httpx

Handler = Callable[[str, dict[str, Any], bool], Awaitable[dict[str, Any]]]


async def sleep(ms: int) -> None:
    await asyncio.sleep(ms / 1000.0)


def sync_response(output: Any = None, run_id: str = "run_1", status: str | None = "completed") -> dict[str, Any]:
    return {"kind": "sync", "run_id": run_id, "output": output, "status": status, "error": None}


def execution_error_response(message: str, run_id: str = "run_1") -> dict[str, Any]:
    return {"kind": "execution_error", "run_id": run_id, "output": None, "status": "failed", "error": message}


def async_response(run_id: str = "run_1") -> dict[str, Any]:
    return {"kind": "async", "run_id": run_id, "output": None, "status": "accepted", "error": None}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeAdapter:
    """Stands in for ExecutionAdapter; records calls and how many overlap."""

    def __init__(self, handler: Handler | None = None, catalog: list[dict[str, Any]] | None = None) -> None:
        self.handler = handler
        self.catalog = list(catalog or [])
        self.calls: list[tuple[str, dict[str, Any], bool]] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def execute(self, callable_id: str, args: dict[str, Any], wait: bool = True) -> dict[str, Any]:
        self.calls.append((callable_id, dict(args), wait))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.handler is None:
                return sync_response({"callable_id": callable_id, "args": dict(args)}, run_id=f"run_{len(self.calls)}")
            return await self.handler(callable_id, args, wait)
        finally:
            self.active -= 1

    async def list_catalog(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self.catalog]

    async def aclose(self) -> None:
        self.closed = True


def make_transport(routes: dict[tuple[str, str], Any], seen: list[httpx.Request] | None = None) -> httpx.MockTransport:
    """MockTransport answering ``(method, path)`` with an httpx.Response, a JSON body or a raised exception."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        outcome = routes.get((request.method, request.url.path))
        if outcome is None:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json=outcome)

    return httpx.MockTransport(handler)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
