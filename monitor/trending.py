"""Trending feeds: GeckoTerminal pool rankings plus CoinGecko/DexScreener topics."""

import logging
import re
from typing import Any

from config import COINGECKO_API, DEXSCREENER_API, GECKO_API, TRENDING_MAX_TOKENS, TRENDING_PER_FEED
from launcher.models import Candidate
from monitor.images import ImagePredicate, is_real_image
from utils.http_client import ResilientHttpClient
from utils.keys import normalize_id

logger = logging.getLogger(__name__)

TREND_FILTERS = ("trending", "new", "volume", "gainers")
TOPIC_SOURCES = ("coingecko", "dexscreener")

GECKO_NETWORKS = {"bsc": "bsc", "base": "base", "solana": "solana", "sol": "solana"}
GECKO_ACCEPT = {"Accept": "application/json;version=20230203"}

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9\s]")


def to_symbol(name: str) -> str:
    words = _NON_ALNUM_RE.sub("", str(name or "")).strip().split()
    return (words[0].upper()[:8] if words else "") or "TREND"


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def dedup_by_symbol(items: list[Candidate]) -> list[Candidate]:
    seen: set[str] = set()
    out: list[Candidate] = []
    for item in items:
        key = item.symbol.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


class TrendingFeed:
    def __init__(self, http: ResilientHttpClient) -> None:
        self._http = http

    async def _get(self, url: str, source: str, headers: dict[str, str] | None = None) -> Any:
        result = await self._http.get_json(url, source=source, headers=headers)
        if not result.ok:
            raise LookupError(f"{source} returned {result.status or result.error}")
        return result.data

    async def fetch(self, chain: str = "bsc", category: str = "trending") -> tuple[list[Candidate], str]:
        """GeckoTerminal pools for `chain` ranked by `category`. Raises on upstream failure."""
        category = normalize_id(category) or "trending"
        if category not in TREND_FILTERS:
            raise ValueError(f"unknown trend filter: {category}")
        network = GECKO_NETWORKS.get(normalize_id(chain), "bsc")
        endpoint = "new_pools" if category == "new" else "trending_pools"
        url = f"{GECKO_API}/networks/{network}/{endpoint}?page=1&include=base_token"
        payload = await self._get(url, "geckoterminal", headers=GECKO_ACCEPT)

        # Deferred: token_source imports this module.
        from monitor.token_source import gecko_included_tokens, parse_gecko_pool

        label = f"GeckoTerminal {network} {category}"
        included = gecko_included_tokens(payload if isinstance(payload, dict) else {})
        rows = (payload.get("data") or []) if isinstance(payload, dict) else []
        candidates: list[Candidate] = []
        for pool in rows[:TRENDING_MAX_TOKENS]:
            if not isinstance(pool, dict):
                continue
            candidate = parse_gecko_pool(pool, included, network, label)
            if candidate is not None:
                candidates.append(candidate)

        if category == "volume":
            candidates.sort(key=lambda c: c.volume_24h, reverse=True)
        elif category == "gainers":
            candidates.sort(key=lambda c: c.price_change_24h, reverse=True)
        return candidates, label

    async def fetch_topics(
        self,
        source: str = "all",
        image_predicate: ImagePredicate | None = is_real_image,
    ) -> list[Candidate]:
        """Trending coins from aggregator listings, deduplicated by symbol.

        Items whose image fails `image_predicate` are dropped; pass None to keep
        everything. Each feed is best-effort.
        """
        source = normalize_id(source) or "all"
        if source != "all" and source not in TOPIC_SOURCES:
            raise ValueError(f"unknown topic source: {source}")
        items: list[Candidate] = []
        if source in ("all", "coingecko"):
            items.extend(await self._safe(self._coingecko_trending, "coingecko"))
        if source in ("all", "dexscreener"):
            items.extend(await self._safe(self._dexscreener_boosts, "dexscreener"))
        if image_predicate is not None:
            items = [item for item in items if image_predicate(item.image_url)]
        return dedup_by_symbol(items)[:TRENDING_MAX_TOKENS]

    async def _safe(self, fn, name: str) -> list[Candidate]:
        try:
            return await fn()
        except Exception as exc:
            logger.warning("TREND_SOURCE_FAIL source=%s error=%s", name, exc)
            return []

    async def _coingecko_trending(self) -> list[Candidate]:
        payload = await self._get(f"{COINGECKO_API}/search/trending", "coingecko")
        out: list[Candidate] = []
        for row in (payload or {}).get("coins", [])[:TRENDING_PER_FEED]:
            coin = (row or {}).get("item") or {}
            name = str(coin.get("name", "") or "")
            symbol = str(coin.get("symbol", "") or "")
            if not name or not symbol:
                continue
            rank = coin.get("market_cap_rank") or "N/A"
            data = coin.get("data") or {}
            change = (data.get("price_change_percentage_24h") or {}).get("usd")
            out.append(
                Candidate(
                    name=name,
                    symbol=symbol.upper()[:8],
                    chain="",
                    source_label="coingecko",
                    image_url=str(coin.get("large") or coin.get("small") or coin.get("thumb") or ""),
                    description=f"Trending on CoinGecko | Rank: #{rank}",
                    volume_24h=_as_float(str(data.get("total_volume", "") or "").replace("$", "").replace(",", "")),
                    price_change_24h=_as_float(change),
                )
            )
        return out

    async def _dexscreener_boosts(self) -> list[Candidate]:
        payload = await self._get(f"{DEXSCREENER_API}/token-boosts/top/v1", "dexscreener")
        out: list[Candidate] = []
        for row in (payload or [])[:TRENDING_PER_FEED]:
            if not isinstance(row, dict):
                continue
            name = str(row.get("description") or row.get("tokenAddress") or "")
            if not name:
                continue
            symbol = str(row.get("url") or "").rstrip("/").split("/")[-1] or to_symbol(name)
            out.append(
                Candidate(
                    name=name[:30],
                    symbol=symbol.upper()[:8],
                    chain=normalize_id(row.get("chainId")),
                    source_label="dexscreener",
                    image_url=str(row.get("icon") or row.get("header") or ""),
                    description="Boosted on DexScreener",
                )
            )
        return out
