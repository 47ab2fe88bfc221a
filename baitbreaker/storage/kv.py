from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable, Protocol

import aiosqlite

from baitbreaker.storage.schema import SCHEMA_SQL


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get_all(self) -> dict[str, Any]: ...

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, keys: Iterable[str]) -> None: ...


class MemoryKeyValueStore:
    """Process-local store, values deep-copied on the way in and out."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class SqliteKeyValueStore:
    def __init__(self, sqlite_path: Path):
        self._path = sqlite_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._path.as_posix())
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("storage not connected")
        return self._db

    async def get_all(self) -> dict[str, Any]:
        async with self._lock:
            conn = self._conn()
            cursor = await conn.execute("SELECT key, value_json FROM kv")
            rows = await cursor.fetchall()

        out: dict[str, Any] = {}
        for r in rows or []:
            try:
                out[r["key"]] = json.loads(r["value_json"])
            except ValueError:
                logger.warning("skipping undecodable value for key=%s", r["key"])
        return out

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            conn = self._conn()
            cursor = await conn.execute("SELECT value_json FROM kv WHERE key=?", (key,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            conn = self._conn()
            await conn.execute(
                "INSERT INTO kv(key, value_json, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_at=excluded.updated_at",
                (key, json.dumps(value, ensure_ascii=False), time.time()),
            )
            await conn.commit()

    async def remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        async with self._lock:
            conn = self._conn()
            await conn.executemany("DELETE FROM kv WHERE key=?", [(k,) for k in keys])
            await conn.commit()
