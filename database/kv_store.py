"""Async key/value backends holding the run state records.

All backends expose the same small surface (`get`, `set`, `delete`,
`push_capped`, `list_range`) and wrap any connectivity or decoding failure in
`StoreError`, so callers only ever handle one error type.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

import config
from database import db
from utils.state_file import StateFileCorruptError, StateFileLockError, read_json_locked, update_json_locked

logger = logging.getLogger(__name__)

E_STORE_UNAVAILABLE = "E_STORE_UNAVAILABLE"


class StoreError(RuntimeError):
    """The run state store could not be read or written."""

    code = E_STORE_UNAVAILABLE


class KVStore:
    backend = "abstract"

    async def get(self, key: str) -> Any | None:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError

    async def push_capped(self, key: str, item: Any, max_len: int) -> int:
        """Prepend `item` to the list at `key` and trim it to `max_len` entries."""
        raise NotImplementedError

    async def list_range(self, key: str, limit: int) -> list[Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryKVStore(KVStore):
    """Process-local store for tests and throwaway runs."""

    backend = "memory"

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def push_capped(self, key: str, item: Any, max_len: int) -> int:
        current = self._data.get(key)
        rows = list(current) if isinstance(current, list) else []
        rows.insert(0, copy.deepcopy(item))
        del rows[max(1, int(max_len)) :]
        self._data[key] = rows
        return len(rows)

    async def list_range(self, key: str, limit: int) -> list[Any]:
        current = self._data.get(key)
        rows = current if isinstance(current, list) else []
        return copy.deepcopy(rows[: max(0, int(limit))])


class FileKVStore(KVStore):
    """One JSON document on disk, locked per operation and replaced atomically."""

    backend = "file"

    def __init__(self, path: str, lock_timeout_seconds: float = 2.0) -> None:
        self._path = str(path)
        self._lock_timeout = float(lock_timeout_seconds)

    async def _read(self) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(read_json_locked, self._path, timeout_seconds=self._lock_timeout)
        except (StateFileLockError, StateFileCorruptError, OSError) as exc:
            raise StoreError(f"{E_STORE_UNAVAILABLE}: file read failed path={self._path} error={exc}") from exc

    async def _update(self, mutate) -> Any:
        try:
            return await asyncio.to_thread(
                update_json_locked,
                self._path,
                mutate,
                timeout_seconds=self._lock_timeout,
            )
        except (StateFileLockError, StateFileCorruptError, OSError, TypeError, ValueError) as exc:
            raise StoreError(f"{E_STORE_UNAVAILABLE}: file write failed path={self._path} error={exc}") from exc

    async def get(self, key: str) -> Any | None:
        return (await self._read()).get(key)

    async def set(self, key: str, value: Any) -> None:
        def _mutate(doc: dict[str, Any]) -> None:
            doc[key] = value

        await self._update(_mutate)

    async def delete(self, *keys: str) -> None:
        def _mutate(doc: dict[str, Any]) -> None:
            for k in keys:
                doc.pop(k, None)

        await self._update(_mutate)

    async def push_capped(self, key: str, item: Any, max_len: int) -> int:
        def _mutate(doc: dict[str, Any]) -> int:
            current = doc.get(key)
            rows = list(current) if isinstance(current, list) else []
            rows.insert(0, item)
            doc[key] = rows[: max(1, int(max_len))]
            return len(doc[key])

        return await self._update(_mutate)

    async def list_range(self, key: str, limit: int) -> list[Any]:
        current = (await self._read()).get(key)
        rows = current if isinstance(current, list) else []
        return rows[: max(0, int(limit))]


class SqlKVStore(KVStore):
    backend = "sql"

    def __init__(self, url: str) -> None:
        self._engine = db.create_db_engine(url)
        self._session_factory = db.make_session_factory(self._engine)
        self._ready = False

    async def _call(self, fn, *args) -> Any:
        try:
            if not self._ready:
                await asyncio.to_thread(db.init_db, self._engine)
                self._ready = True
            return await asyncio.to_thread(fn, self._session_factory, *args)
        except SQLAlchemyError as exc:
            raise StoreError(f"{E_STORE_UNAVAILABLE}: sql error={exc}") from exc

    async def get(self, key: str) -> Any | None:
        return await self._call(db.get_value, key)

    async def set(self, key: str, value: Any) -> None:
        await self._call(db.put_value, key, value)

    async def delete(self, *keys: str) -> None:
        await self._call(db.delete_values, *keys)

    async def push_capped(self, key: str, item: Any, max_len: int) -> int:
        return await self._call(db.prepend_capped, key, item, max_len)

    async def list_range(self, key: str, limit: int) -> list[Any]:
        value = await self._call(db.get_value, key)
        rows = value if isinstance(value, list) else []
        return rows[: max(0, int(limit))]

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)


class RedisKVStore(KVStore):
    """Values are JSON strings; the log list maps onto a native Redis list."""

    backend = "redis"

    def __init__(self, url: str, socket_timeout: float = 5.0, client: Any | None = None) -> None:
        self._url = url
        self._client = client or aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )

    def _error(self, op: str, exc: Exception) -> StoreError:
        return StoreError(f"{E_STORE_UNAVAILABLE}: redis {op} failed error={exc}")

    @staticmethod
    def _decode(raw: Any) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"{E_STORE_UNAVAILABLE}: undecodable redis value error={exc}") from exc

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise self._error("GET", exc) from exc
        return self._decode(raw)

    async def set(self, key: str, value: Any) -> None:
        try:
            await self._client.set(key, json.dumps(value, ensure_ascii=False))
        except (RedisError, OSError) as exc:
            raise self._error("SET", exc) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client.delete(*keys)
        except (RedisError, OSError) as exc:
            raise self._error("DEL", exc) from exc

    async def push_capped(self, key: str, item: Any, max_len: int) -> int:
        try:
            await self._client.lpush(key, json.dumps(item, ensure_ascii=False))
            await self._client.ltrim(key, 0, max(1, int(max_len)) - 1)
            return int(await self._client.llen(key))
        except (RedisError, OSError) as exc:
            raise self._error("LPUSH", exc) from exc

    async def list_range(self, key: str, limit: int) -> list[Any]:
        if limit <= 0:
            return []
        try:
            rows = await self._client.lrange(key, 0, int(limit) - 1)
        except (RedisError, OSError) as exc:
            raise self._error("LRANGE", exc) from exc
        return [self._decode(row) for row in rows or []]

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except AttributeError:
            await self._client.close()


def create_kv_store(backend: str | None = None) -> KVStore:
    """Build the backend named by `KV_BACKEND` (file, sql, redis, memory)."""
    name = str(backend or config.KV_BACKEND or "file").strip().lower()
    if name == "file":
        return FileKVStore(config.KV_FILE_PATH, lock_timeout_seconds=config.KV_LOCK_TIMEOUT_SECONDS)
    if name == "sql":
        return SqlKVStore(config.DATABASE_URL)
    if name == "redis":
        return RedisKVStore(config.REDIS_URL, socket_timeout=config.REDIS_SOCKET_TIMEOUT_SECONDS)
    if name == "memory":
        return MemoryKVStore()
    raise ValueError(f"Unknown KV_BACKEND: {name}")
