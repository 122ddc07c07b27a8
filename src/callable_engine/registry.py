"""Callable registry: local mirror of the remote catalog plus agent links.

The in-process snapshot is served for ``ttl_ms``. Once stale it keeps being
served while a single background task reloads storage and swaps the snapshot,
so readers only block on the very first load.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable

from callable_engine.config import DEFAULT_REGISTRY
from callable_engine.dotdict import DotDict
from callable_engine.errors import DuplicateLinkError, NotFoundError
from callable_engine.logger import get_logger
from callable_engine.store import MemoryCallableStore
from callable_engine.types import CallableDefinition, EngineEvent

logger = get_logger(__name__)


def definition_from_catalog_item(item: dict[str, Any], synced_at: str) -> CallableDefinition | None:
    """Map one catalog entry to a CallableDefinition, or None when it has no id."""
    callable_id = item.get("id") or item.get("callable_id")
    if not callable_id:
        return None
    return {
        "callable_id": str(callable_id),
        "name": str(item.get("name") or callable_id),
        "type": str(item.get("type") or ""),
        "description": item.get("description") or None,
        "slug": item.get("slug") or None,
        "icon": item.get("icon") or None,
        "group_name": item.get("group_name") or None,
        "input_schema": item.get("input_schema") or None,
        "output_schema": item.get("output_schema") or None,
        "auth_mode": item.get("auth_mode", item.get("auth")) or None,
        "is_owner": bool(item.get("is_owner")),
        "oauth_system_id": item.get("oauth_system_id") or None,
        "last_synced_at": synced_at,
    }


class CallableRegistry:
    """Syncs callable definitions from the remote catalog and links them to agents."""

    def __init__(
        self,
        adapter: Any,
        store: Any = None,
        ttl_ms: int = DEFAULT_REGISTRY["ttlMs"],
        clock: Callable[[], float] = time.monotonic,
        emit: Callable[[EngineEvent], None] | None = None,
    ) -> None:
        self._adapter = adapter
        self._store = store if store is not None else MemoryCallableStore()
        self._ttl_s = ttl_ms / 1000.0
        self._clock = clock
        self._emit = emit
        self._snapshot: list[DotDict] | None = None
        self._by_name: dict[str, DotDict] = {}
        self._loaded_at = 0.0
        # Bumped on every swap; a load that started before a newer swap is dropped.
        self._generation = 0
        self._load_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> Any:
        return self._store

    def _swap(self, definitions: list[DotDict]) -> None:
        self._snapshot = definitions
        self._by_name = {}
        for definition in definitions:
            self._by_name.setdefault(definition["name"], definition)
        self._loaded_at = self._clock()
        self._generation += 1

    def _is_stale(self) -> bool:
        return self._clock() - self._loaded_at >= self._ttl_s

    async def _load(self) -> list[DotDict]:
        generation = self._generation
        definitions = await self._store.list_callables()
        if generation != self._generation:
            logger.debug("Dropping registry load superseded by a newer snapshot")
            return self._snapshot or []
        self._swap(definitions)
        logger.debug("Loaded %d callables from storage", len(definitions))
        return definitions

    async def _refresh(self) -> None:
        try:
            await self._load()
        except Exception:
            logger.exception("Background registry refresh failed; serving stale snapshot")
        finally:
            self._refresh_task = None

    async def sync_from_remote_catalog(self) -> list[DotDict]:
        """Pull the remote catalog, upsert it into storage and return the stored rows ordered by name."""
        items = await self._adapter.list_catalog()
        synced_at = datetime.now(timezone.utc).isoformat()

        definitions: list[CallableDefinition] = []
        for item in items:
            definition = definition_from_catalog_item(item, synced_at)
            if definition is None:
                logger.warning("Skipping catalog entry without id: %r", item.get("name"))
                continue
            definitions.append(definition)

        await self._store.upsert_callables(definitions)
        stored = await self._store.list_callables()
        self._swap(stored)

        logger.info("Synced %d callables from remote catalog (%d stored)", len(definitions), len(stored))
        if self._emit:
            self._emit(
                {
                    "type": "registry_synced",
                    "message": f"Synced {len(definitions)} callables",
                    "details": {"fetched": len(items), "upserted": len(definitions), "stored": len(stored)},
                }
            )
        return stored

    async def list_available(self) -> list[DotDict]:
        if self._snapshot is None:
            async with self._load_lock:
                if self._snapshot is None:
                    return await self._load()

        if self._is_stale() and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())

        return self._snapshot or []

    async def resolve(self, name: str) -> DotDict | None:
        """Look up a callable definition by name."""
        await self.list_available()
        return self._by_name.get(name)

    async def link_to_agent(self, agent_id: str, callable_id: str) -> None:
        if await self._store.get_callable(callable_id) is None:
            raise NotFoundError(f"Callable {callable_id}")

        try:
            await self._store.insert_link(agent_id, callable_id)
        except DuplicateLinkError:
            logger.debug("Callable %s already linked to agent %s", callable_id, agent_id)
            return

        logger.info("Linked callable %s to agent %s", callable_id, agent_id)

    async def unlink(self, agent_id: str, callable_id: str) -> None:
        await self._store.delete_link(agent_id, callable_id)
        logger.info("Unlinked callable %s from agent %s", callable_id, agent_id)

    async def list_for_agent(self, agent_id: str) -> list[DotDict]:
        return await self._store.list_for_agent(agent_id)

    def invalidate(self) -> None:
        self._snapshot = None
        self._by_name = {}
        self._loaded_at = 0.0
        self._generation += 1

    async def aclose(self) -> None:
        task = self._refresh_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._store.close()
