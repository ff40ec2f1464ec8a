"""Upstream reachability probe for launchpads, agents, data feeds and chain RPCs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import config
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

STATUS_ONLINE = "online"
STATUS_SLOW = "slow"
STATUS_OFFLINE = "offline"


@dataclass(frozen=True)
class Endpoint:
    id: str
    label: str
    category: str
    url: str
    site_url: str


ENDPOINTS: tuple[Endpoint, ...] = (
    Endpoint("4claw", "4claw", "launchpad", "https://api.4claw.fun/api/launches?limit=1", "https://4claw.fun"),
    Endpoint("kibu", "Kibu", "launchpad", "https://kibu.bot/api/launches?limit=1&chain=bsc", "https://kibu.bot"),
    Endpoint("clawnch", "Clawnch", "launchpad", "https://clawn.ch/api/launches?limit=1", "https://clawn.ch"),
    Endpoint("moltx", "Moltx", "agent", "https://moltx.io/v1/feed/global?limit=1", "https://moltx.io"),
    Endpoint("moltbook", "Moltbook", "agent", "https://www.moltbook.com/api/v1/health", "https://www.moltbook.com"),
    Endpoint("4claw-org", "4claw.org", "agent", "https://www.4claw.org/api/v1/boards", "https://www.4claw.org"),
    Endpoint("clawstr", "Clawstr", "agent", "https://clawstr.com/api/health", "https://clawstr.com"),
    Endpoint(
        "gecko-bsc",
        "GeckoTerminal BSC",
        "data",
        "https://api.geckoterminal.com/api/v2/networks/bsc/new_pools?page=1",
        "https://www.geckoterminal.com",
    ),
    Endpoint(
        "gecko-base",
        "GeckoTerminal Base",
        "data",
        "https://api.geckoterminal.com/api/v2/networks/base/new_pools?page=1",
        "https://www.geckoterminal.com",
    ),
    Endpoint("dexscreener", "DexScreener", "data", "https://api.dexscreener.com/latest/dex/search?q=bsc", "https://dexscreener.com"),
    Endpoint("coingecko", "CoinGecko", "data", "https://api.coingecko.com/api/v3/ping", "https://www.coingecko.com"),
    Endpoint("bsc-rpc", "BSC RPC", "chain", "https://bsc-dataseed.binance.org/", "https://bscscan.com"),
    Endpoint("base-rpc", "Base RPC", "chain", "https://mainnet.base.org/", "https://basescan.org"),
    Endpoint("sol-rpc", "Solana RPC", "chain", "https://api.mainnet-beta.solana.com", "https://solscan.io"),
)


@dataclass
class CheckResult:
    id: str
    label: str
    category: str
    status: str
    latency: int
    message: str
    url: str
    site_url: str

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["siteUrl"] = out.pop("site_url")
        return out


def classify(ok: bool, latency_ms: float, slow_ms: int) -> str:
    if not ok:
        return STATUS_OFFLINE
    return STATUS_SLOW if latency_ms > slow_ms else STATUS_ONLINE


async def check_endpoint(http: ResilientHttpClient, endpoint: Endpoint) -> CheckResult:
    result = await http.get_json(
        endpoint.url,
        source=f"health:{endpoint.id}",
        max_attempts=1,
        timeout_seconds=config.HEALTH_CHECK_TIMEOUT_SECONDS,
    )
    latency = int(round(result.elapsed_ms))
    if result.ok:
        message = f"HTTP {result.status} ({latency}ms)"
    elif result.status:
        message = f"HTTP {result.status}"
    elif result.error.endswith("timeout"):
        message = "Timeout"
    else:
        message = result.error[:80]
    return CheckResult(
        id=endpoint.id,
        label=endpoint.label,
        category=endpoint.category,
        status=classify(result.ok, latency, config.HEALTH_CHECK_SLOW_MS),
        latency=latency,
        message=message,
        url=endpoint.url,
        site_url=endpoint.site_url,
    )


async def run_health_check(
    http: ResilientHttpClient,
    endpoints: tuple[Endpoint, ...] | list[Endpoint] = ENDPOINTS,
) -> dict[str, Any]:
    checks = await asyncio.gather(*(check_endpoint(http, ep) for ep in endpoints))
    online = sum(1 for c in checks if c.status == STATUS_ONLINE)
    total = len(checks)
    logger.info("HEALTH_CHECK online=%s total=%s", online, total)
    return {
        "checks": [c.to_dict() for c in checks],
        "summary": {
            "online": online,
            "total": total,
            "percentage": int(round(online / total * 100)) if total else 0,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
