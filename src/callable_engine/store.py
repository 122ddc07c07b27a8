"""Persistence for callable definitions and agent links.

Both stores expose the same async surface so the registry does not care which
one it holds. A second insert of the same (agent_id, callable_id) pair raises
DuplicateLinkError.
"""

from __future__ import annotations

import asyncio
import copy
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Sequence

from callable_engine.dotdict import DotDict
from callable_engine.errors import DuplicateLinkError
from callable_engine.types import CallableDefinition

_COLUMNS = (
    "callable_id",
    "name",
    "type",
    "description",
    "slug",
    "icon",
    "group_name",
    "input_schema",
    "output_schema",
    "auth_mode",
    "is_owner",
    "oauth_system_id",
    "last_synced_at",
)
_JSON_COLUMNS = frozenset({"input_schema", "output_schema"})


def _row_from_definition(definition: CallableDefinition) -> dict[str, Any]:
    return {column: definition.get(column) for column in _COLUMNS}


class MemoryCallableStore:
    """Dict-backed store, used by default and in tests."""

    def __init__(self) -> None:
        self._callables: dict[str, dict[str, Any]] = {}
        self._links: list[tuple[str, str]] = []

    async def upsert_callables(self, definitions: Sequence[CallableDefinition]) -> None:
        for definition in definitions:
            row = _row_from_definition(definition)
            self._callables[row["callable_id"]] = copy.deepcopy(row)

    async def list_callables(self) -> list[DotDict]:
        rows = sorted(self._callables.values(), key=lambda row: str(row.get("name") or ""))
        return [DotDict(copy.deepcopy(row)) for row in rows]

    async def get_callable(self, callable_id: str) -> DotDict | None:
        row = self._callables.get(callable_id)
        return DotDict(copy.deepcopy(row)) if row is not None else None

    async def insert_link(self, agent_id: str, callable_id: str) -> None:
        if (agent_id, callable_id) in self._links:
            raise DuplicateLinkError(agent_id, callable_id)
        self._links.append((agent_id, callable_id))

    async def delete_link(self, agent_id: str, callable_id: str) -> None:
        self._links = [link for link in self._links if link != (agent_id, callable_id)]

    async def list_for_agent(self, agent_id: str) -> list[DotDict]:
        results: list[DotDict] = []
        for linked_agent, callable_id in self._links:
            row = self._callables.get(callable_id)
            if linked_agent == agent_id and row is not None:
                results.append(DotDict(copy.deepcopy(row)))
        return results

    async def close(self) -> None:
        return None


class SqliteCallableStore:
    """SQLite-backed store. Blocking calls run in the default executor."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self._path = str(db_path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = RLock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS callables (
                        callable_id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        type TEXT,
                        description TEXT,
                        slug TEXT,
                        icon TEXT,
                        group_name TEXT,
                        input_schema TEXT,
                        output_schema TEXT,
                        auth_mode TEXT,
                        is_owner INTEGER NOT NULL DEFAULT 0,
                        oauth_system_id TEXT,
                        last_synced_at TEXT
                    )
                    """
                )
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS agent_callables (
                        agent_id TEXT NOT NULL,
                        callable_id TEXT NOT NULL REFERENCES callables(callable_id) ON DELETE CASCADE,
                        UNIQUE (agent_id, callable_id)
                    )
                    """
                )
                self._conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_callables_agent ON agent_callables(agent_id)")

    def _upsert_many(self, definitions: Sequence[CallableDefinition]) -> None:
        if not definitions:
            return
        payloads = [self._definition_to_tuple(definition) for definition in definitions]
        assignments = ", ".join(f"{column}=excluded.{column}" for column in _COLUMNS[1:])
        with self._lock:
            with self._conn:
                self._conn.executemany(
                    f"""
                    INSERT INTO callables ({", ".join(_COLUMNS)})
                    VALUES ({", ".join("?" for _ in _COLUMNS)})
                    ON CONFLICT(callable_id) DO UPDATE SET {assignments}
                    """,
                    payloads,
                )

    def _fetch_all(self) -> list[DotDict]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM callables ORDER BY name").fetchall()
        return [self._row_to_definition(row) for row in rows]

    def _fetch_one(self, callable_id: str) -> DotDict | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM callables WHERE callable_id = ?", (callable_id,)).fetchone()
        return self._row_to_definition(row) if row is not None else None

    def _insert_link(self, agent_id: str, callable_id: str) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO agent_callables (agent_id, callable_id) VALUES (?, ?)",
                        (agent_id, callable_id),
                    )
            except sqlite3.IntegrityError as error:
                if "UNIQUE" in str(error):
                    raise DuplicateLinkError(agent_id, callable_id) from error
                raise

    def _delete_link(self, agent_id: str, callable_id: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM agent_callables WHERE agent_id = ? AND callable_id = ?",
                    (agent_id, callable_id),
                )

    def _fetch_for_agent(self, agent_id: str) -> list[DotDict]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.* FROM agent_callables AS l
                JOIN callables AS c ON c.callable_id = l.callable_id
                WHERE l.agent_id = ?
                ORDER BY l.rowid
                """,
                (agent_id,),
            ).fetchall()
        return [self._row_to_definition(row) for row in rows]

    async def upsert_callables(self, definitions: Sequence[CallableDefinition]) -> None:
        await self._run_blocking(self._upsert_many, list(definitions))

    async def list_callables(self) -> list[DotDict]:
        return await self._run_blocking(self._fetch_all)

    async def get_callable(self, callable_id: str) -> DotDict | None:
        return await self._run_blocking(self._fetch_one, callable_id)

    async def insert_link(self, agent_id: str, callable_id: str) -> None:
        await self._run_blocking(self._insert_link, agent_id, callable_id)

    async def delete_link(self, agent_id: str, callable_id: str) -> None:
        await self._run_blocking(self._delete_link, agent_id, callable_id)

    async def list_for_agent(self, agent_id: str) -> list[DotDict]:
        return await self._run_blocking(self._fetch_for_agent, agent_id)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _definition_to_tuple(self, definition: CallableDefinition) -> tuple[Any, ...]:
        row = _row_from_definition(definition)
        values: list[Any] = []
        for column in _COLUMNS:
            value = row[column]
            if column in _JSON_COLUMNS and value is not None:
                value = json.dumps(value)
            elif column == "is_owner":
                value = 1 if value else 0
            values.append(value)
        return tuple(values)

    def _row_to_definition(self, row: sqlite3.Row) -> DotDict:
        definition = DotDict({column: row[column] for column in _COLUMNS})
        for column in _JSON_COLUMNS:
            if definition[column] is not None:
                definition[column] = json.loads(definition[column])
        definition["is_owner"] = bool(definition["is_owner"])
        return definition

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args))
