"""Wires the shared HTTP client, store, source, protocol and orchestrator together."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import config
from database.kv_store import KVStore, create_kv_store
from launcher.deployed_feed import DeployedTokensFeed, attach_telegram_notifier
from launcher.orchestrator import Orchestrator
from launcher.protocol import DeploymentProtocol
from launcher.run_state import RunStateStore
from monitor.token_source import TokenSource
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    http: ResilientHttpClient
    store: RunStateStore
    source: TokenSource
    protocol: DeploymentProtocol
    orchestrator: Orchestrator
    feed: DeployedTokensFeed

    async def close(self) -> None:
        for source, row in sorted(self.http.snapshot_stats().items()):
            logger.info(
                "HTTP_STATS source=%s ok=%s fail=%s rate_limited=%s retries=%s latency_avg_ms=%s",
                source,
                row["ok"],
                row["fail"],
                row["rate_limited"],
                row["retries"],
                row["latency_avg_ms"],
            )
        await self.http.close()
        await self.store.close()


def build_services(kv: KVStore | None = None, http: ResilientHttpClient | None = None) -> Services:
    http = http or ResilientHttpClient(
        timeout_seconds=config.FETCH_TIMEOUT_SECONDS,
        headers={"Accept": "application/json"},
        source_limits={"geckoterminal": 4, "dexscreener": 6, "moltx": 2, "4claw_org": 2, "moltbook": 2},
    )
    store = RunStateStore(kv or create_kv_store())
    source = TokenSource(http)
    protocol = DeploymentProtocol(http)
    feed = DeployedTokensFeed()
    attach_telegram_notifier(feed)
    orchestrator = Orchestrator(store, source, protocol, feed=feed)
    logger.info("SERVICES_READY backend=%s", store.kv.backend)
    return Services(http=http, store=store, source=source, protocol=protocol, orchestrator=orchestrator, feed=feed)
