"""TTL result cache and in-flight table keyed by call fingerprint.

``claim()`` is the dedup primitive: under a per-fingerprint lock it reports a
live cache entry, an execution already in flight, or hands ownership of a new
execution to the caller. There is no lock spanning unrelated fingerprints.
"""

from __future__ import annotations

import asyncio
import copy
import time
from typing import Any, Callable, Literal

from callable_engine.config import DEFAULT_CACHE
from callable_engine.logger import get_logger
from callable_engine.types import CacheEntry, CallResult

logger = get_logger(__name__)

ClaimStatus = Literal["hit", "wait", "owner"]


class ResultCache:
    """In-process result cache with TTL expiry, a size cap and in-flight dedup."""

    def __init__(
        self,
        ttl_ms: int = DEFAULT_CACHE["ttlMs"],
        max_entries: int = DEFAULT_CACHE["maxEntries"],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_ms = ttl_ms
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[CallResult]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _is_live(self, entry: CacheEntry) -> bool:
        return entry["expires_at"] > self._clock()

    def get(self, fingerprint: str) -> CacheEntry | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            self.misses += 1
            return None
        if not self._is_live(entry):
            del self._entries[fingerprint]
            self.misses += 1
            return None
        entry["hits"] += 1
        self.hits += 1
        return entry

    def put(self, fingerprint: str, result: CallResult, ttl_ms: int | None = None) -> CacheEntry:
        now = self._clock()
        ttl = self.ttl_ms if ttl_ms is None else ttl_ms
        entry: CacheEntry = {
            "fingerprint": fingerprint,
            "result": copy.deepcopy(result),
            "stored_at": now,
            "expires_at": now + ttl / 1000.0,
            "hits": 0,
        }
        self._entries[fingerprint] = entry
        if len(self._entries) > self.max_entries:
            self._evict_overflow()
        return entry

    def delete(self, fingerprint: str) -> None:
        self._entries.pop(fingerprint, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict_overflow(self) -> int:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return 0
        nearest = sorted(self._entries.values(), key=lambda entry: entry["expires_at"])[:overflow]
        for entry in nearest:
            del self._entries[entry["fingerprint"]]
        return len(nearest)

    def sweep(self) -> int:
        """Drop expired entries, then enforce the size cap. Returns the number removed."""
        now = self._clock()
        expired = [fingerprint for fingerprint, entry in self._entries.items() if entry["expires_at"] <= now]
        for fingerprint in expired:
            del self._entries[fingerprint]
        removed = len(expired) + self._evict_overflow()
        if removed:
            logger.debug("Cache sweep removed %d entries (%d remaining)", removed, len(self._entries))
        return removed

    def start_sweeper(self, interval_ms: int = DEFAULT_CACHE["sweepIntervalMs"]) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return

        async def _run() -> None:
            while True:
                await asyncio.sleep(interval_ms / 1000.0)
                self.sweep()

        self._sweeper = asyncio.create_task(_run())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def _acquire_lock(self, fingerprint: str) -> asyncio.Lock:
        lock = self._locks.get(fingerprint)
        if lock is None:
            lock = self._locks[fingerprint] = asyncio.Lock()
        self._lock_users[fingerprint] = self._lock_users.get(fingerprint, 0) + 1
        return lock

    def _release_lock(self, fingerprint: str) -> None:
        users = self._lock_users.get(fingerprint, 1) - 1
        if users <= 0:
            self._lock_users.pop(fingerprint, None)
            self._locks.pop(fingerprint, None)
        else:
            self._lock_users[fingerprint] = users

    async def claim(self, fingerprint: str, use_cache: bool = True) -> tuple[ClaimStatus, Any]:
        """Return ``("hit", entry)``, ``("wait", future)`` or ``("owner", future)``.

        An owner must finish with ``complete()`` or ``abandon()``.
        """
        lock = self._acquire_lock(fingerprint)
        try:
            async with lock:
                if use_cache:
                    entry = self.get(fingerprint)
                    if entry is not None:
                        return "hit", entry

                pending = self._inflight.get(fingerprint)
                if pending is not None and not pending.done():
                    return "wait", pending

                future: asyncio.Future[CallResult] = asyncio.get_running_loop().create_future()
                self._inflight[fingerprint] = future
                return "owner", future
        finally:
            self._release_lock(fingerprint)

    def complete(self, fingerprint: str, result: CallResult, store: bool = True, ttl_ms: int | None = None) -> None:
        """Publish the owner's result to waiters and optionally cache it."""
        if store:
            self.put(fingerprint, result, ttl_ms)
        self._resolve_inflight(fingerprint, result)

    def abandon(self, fingerprint: str, result: CallResult) -> None:
        """Release an in-flight claim without caching (cancellation, internal failure)."""
        self._resolve_inflight(fingerprint, result)

    def _resolve_inflight(self, fingerprint: str, result: CallResult) -> None:
        future = self._inflight.pop(fingerprint, None)
        if future is not None and not future.done():
            future.set_result(copy.deepcopy(result))

    def inflight_count(self) -> int:
        return len(self._inflight)

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "inflight": len(self._inflight),
            "max_entries": self.max_entries,
            "ttl_ms": self.ttl_ms,
        }
