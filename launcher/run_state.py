"""Durable run state: the singleton RunConfig record plus the capped log list."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

import config
from database.kv_store import KVStore, StoreError
from launcher.models import LOG_INFO, LOG_KINDS, LogEntry, RunConfig

logger = logging.getLogger(__name__)


def wall_clock() -> str:
    return datetime.now().strftime("%H:%M:%S")


def now_ms() -> int:
    return int(time.time() * 1000)


class RunStateStore:
    def __init__(
        self,
        kv: KVStore,
        *,
        config_key: str | None = None,
        log_key: str | None = None,
        max_logs: int | None = None,
        clock: Callable[[], str] = wall_clock,
    ) -> None:
        self.kv = kv
        self.config_key = config_key or config.RUN_CONFIG_KEY
        self.log_key = log_key or config.RUN_LOG_KEY
        self.max_logs = max(1, int(max_logs or config.MAX_LOGS))
        self._clock = clock

    async def load_config(self) -> RunConfig | None:
        raw = await self.kv.get(self.config_key)
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise StoreError(f"run config record is {type(raw).__name__}, expected object")
        try:
            return RunConfig.from_dict(raw)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"run config record is malformed: {exc}") from exc

    async def save_config(self, run_config: RunConfig) -> None:
        await self.kv.set(self.config_key, run_config.to_dict())

    async def delete_config(self) -> None:
        await self.kv.delete(self.config_key)

    async def append_log(self, message: str, kind: str = LOG_INFO) -> LogEntry:
        entry = LogEntry(time=self._clock(), message=str(message), kind=kind if kind in LOG_KINDS else LOG_INFO)
        await self.kv.push_capped(self.log_key, entry.to_dict(), self.max_logs)
        logger.debug("RUN_LOG kind=%s msg=%s", entry.kind, entry.message)
        return entry

    async def logs(self, limit: int | None = None) -> list[LogEntry]:
        rows = await self.kv.list_range(self.log_key, self.max_logs if limit is None else int(limit))
        return [LogEntry.from_dict(row) for row in rows]

    async def clear_logs(self) -> None:
        await self.kv.delete(self.log_key)

    async def clear(self) -> None:
        await self.kv.delete(self.config_key, self.log_key)

    async def close(self) -> None:
        await self.kv.close()
