from __future__ import annotations

import asyncio

import pytest

from callable_engine import ResultCache

from helpers import FakeClock


def _result(call_id: str = "call_1", content: object = "ok") -> dict[str, object]:
    return {"call_id": call_id, "name": "get_note", "content": content, "success": True}


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl_ms=1000, clock=clock)
    cache.put("fp", _result())

    clock.advance(999)
    entry = cache.get("fp")
    assert entry is not None
    assert entry["hits"] == 1

    clock.advance(2)
    assert cache.get("fp") is None
    assert len(cache) == 0


def test_put_stores_a_copy_and_honours_custom_ttl() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl_ms=1000, clock=clock)
    result = _result(content={"items": [1]})
    cache.put("fp", result, ttl_ms=5000)
    result["content"]["items"].append(2)

    clock.advance(4000)
    entry = cache.get("fp")
    assert entry is not None
    assert entry["result"]["content"] == {"items": [1]}


def test_sweep_drops_expired_then_evicts_nearest_expiry() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl_ms=10_000, max_entries=2, clock=clock)
    cache.put("short", _result(), ttl_ms=100)
    clock.advance(200)
    assert cache.sweep() == 1

    cache.put("a", _result(), ttl_ms=1000)
    cache.put("b", _result(), ttl_ms=5000)
    cache.put("c", _result(), ttl_ms=3000)

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("b") is not None
    assert cache.get("c") is not None


@pytest.mark.asyncio
async def test_claim_hands_out_one_owner_and_shares_its_result() -> None:
    cache = ResultCache()

    status, owner_future = await cache.claim("fp")
    assert status == "owner"

    status, waiter_future = await cache.claim("fp")
    assert status == "wait"
    assert waiter_future is owner_future

    cache.complete("fp", _result(content="shared"))
    shared = await waiter_future
    assert shared["content"] == "shared"

    status, entry = await cache.claim("fp")
    assert status == "hit"
    assert entry["result"]["content"] == "shared"
    assert cache.inflight_count() == 0
    assert not cache._locks


@pytest.mark.asyncio
async def test_abandon_releases_waiters_without_caching() -> None:
    cache = ResultCache()
    _status, future = await cache.claim("fp")

    cache.abandon("fp", {"call_id": "call_1", "success": False, "error_kind": "CANCELLED"})

    assert (await future)["error_kind"] == "CANCELLED"
    status, _next = await cache.claim("fp")
    assert status == "owner"


@pytest.mark.asyncio
async def test_complete_without_store_and_claim_without_cache() -> None:
    cache = ResultCache()
    await cache.claim("fp")
    cache.complete("fp", _result(), store=False)
    assert len(cache) == 0

    cache.put("fp", _result())
    status, _future = await cache.claim("fp", use_cache=False)
    assert status == "owner"


@pytest.mark.asyncio
async def test_background_sweeper_removes_expired_entries() -> None:
    clock = FakeClock()
    cache = ResultCache(ttl_ms=100, clock=clock)
    cache.put("fp", _result())
    clock.advance(500)

    cache.start_sweeper(interval_ms=10)
    await asyncio.sleep(0.05)
    await cache.stop_sweeper()

    assert len(cache) == 0
    assert cache.stats()["size"] == 0
