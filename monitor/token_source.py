"""Candidate token feed rotating across GeckoTerminal and DexScreener listings."""

import logging
from dataclasses import dataclass, field
from typing import Any

from config import (
    DEXSCREENER_API,
    FETCH_RETRIES,
    FETCH_TIMEOUT_SECONDS,
    GECKO_API,
    SOURCE_MAX_POOLS,
)
from launcher.models import Candidate
from monitor.trending import TREND_FILTERS, TrendingFeed
from utils.http_client import ResilientHttpClient
from utils.keys import normalize_id

logger = logging.getLogger(__name__)

SELECTOR_ROTATE = "rotate"
SELECTOR_TRENDING = "trending"


@dataclass(frozen=True)
class Provider:
    id: str
    label: str
    kind: str  # "gecko" | "dex"
    chain: str
    query: str = ""


PROVIDERS: tuple[Provider, ...] = (
    Provider("gecko_bsc", "GeckoTerminal BSC", "gecko", "bsc"),
    Provider("gecko_base", "GeckoTerminal Base", "gecko", "base"),
    Provider("gecko_sol", "GeckoTerminal Solana", "gecko", "solana"),
    Provider("dex_bsc", "DexScreener BSC", "dex", "bsc", "bsc new"),
    Provider("dex_base", "DexScreener Base", "dex", "base", "base new"),
)

CHAIN_ALIASES = {
    "bsc": "gecko_bsc",
    "base": "gecko_base",
    "solana": "gecko_sol",
    "sol": "gecko_sol",
}

GECKO_NETWORKS = {"bsc": "bsc", "base": "base", "solana": "solana"}


@dataclass
class SourceFilters:
    min_volume: float = 0.0
    trend_filter: str = ""
    source_index: int = 0
    chain: str = ""


@dataclass
class FetchResult:
    candidates: list[Candidate] = field(default_factory=list)
    source_label: str = ""
    source_index: int = 0
    next_source_index: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source_label,
            "sourceIndex": self.source_index,
            "nextSourceIndex": self.next_source_index,
            "tokens": [c.to_dict() for c in self.candidates],
        }
        if self.error:
            out["error"] = self.error
        return out


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def parse_gecko_pool(pool: dict[str, Any], included: dict[str, dict[str, Any]], chain: str, label: str) -> Candidate | None:
    attrs = pool.get("attributes")
    if not isinstance(attrs, dict):
        return None
    name_parts = str(attrs.get("name", "") or "").split(" / ")
    base_id = str((((pool.get("relationships") or {}).get("base_token") or {}).get("data") or {}).get("id", "") or "")
    token = (included.get(base_id) or {}).get("attributes") or {}
    websites = token.get("websites") or []
    twitter = str(token.get("twitter_handle", "") or "")
    if twitter and not twitter.startswith("@"):
        twitter = f"@{twitter}"
    first = name_parts[0] if name_parts else ""
    return Candidate(
        name=str(token.get("name", "") or first or "Unknown"),
        symbol=str(token.get("symbol", "") or (first.split(" ")[-1] if first else "") or "???"),
        chain=chain,
        source_label=label,
        image_url=str(token.get("image_url", "") or ""),
        website=str(websites[0]) if websites else "",
        twitter=twitter,
        description=str(token.get("description", "") or ""),
        volume_24h=_as_float((attrs.get("volume_usd") or {}).get("h24")),
        price_change_24h=_as_float((attrs.get("price_change_percentage") or {}).get("h24")),
    )


def gecko_included_tokens(payload: dict[str, Any]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for row in payload.get("included") or []:
        if isinstance(row, dict) and row.get("id"):
            out[str(row["id"])] = row
    return out


def parse_dex_pair(pair: dict[str, Any], label: str) -> Candidate | None:
    base = pair.get("baseToken")
    if not isinstance(base, dict):
        return None
    info = pair.get("info") or {}
    websites = info.get("websites") or []
    socials = info.get("socials") or []
    twitter = next((s.get("url", "") for s in socials if isinstance(s, dict) and s.get("type") == "twitter"), "")
    website = ""
    if websites and isinstance(websites[0], dict):
        website = str(websites[0].get("url", "") or "")
    chain_id = normalize_id(pair.get("chainId"))
    return Candidate(
        name=str(base.get("name", "") or "Unknown"),
        symbol=str(base.get("symbol", "") or "???"),
        chain=chain_id if chain_id in ("bsc", "solana") else "base",
        source_label=label,
        image_url=str(info.get("imageUrl", "") or ""),
        website=website or str(twitter or ""),
        twitter=str(twitter or ""),
        volume_24h=_as_float((pair.get("volume") or {}).get("h24")),
        price_change_24h=_as_float((pair.get("priceChange") or {}).get("h24")),
    )


class TokenSource:
    """Best-effort candidate fetcher; failures come back as empty results."""

    def __init__(self, http: ResilientHttpClient | None = None, trending: TrendingFeed | None = None) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=FETCH_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
            source_limits={"geckoterminal": 4, "dexscreener": 6},
        )
        self._trending = trending or TrendingFeed(self._http)

    @property
    def trending(self) -> TrendingFeed:
        return self._trending

    async def close(self) -> None:
        await self._http.close()

    @staticmethod
    def is_known_selector(selector: str) -> bool:
        key = normalize_id(selector)
        return (
            key in (SELECTOR_ROTATE, SELECTOR_TRENDING)
            or key in CHAIN_ALIASES
            or any(p.id == key for p in PROVIDERS)
        )

    @staticmethod
    def resolve_index(selector: str, source_index: int = 0) -> int:
        key = normalize_id(selector)
        if key == SELECTOR_ROTATE:
            return int(source_index) % len(PROVIDERS)
        key = CHAIN_ALIASES.get(key, key)
        for idx, provider in enumerate(PROVIDERS):
            if provider.id == key:
                return idx
        raise KeyError(selector)

    async def _fetch_json(self, url: str, source: str) -> Any | None:
        result = await self._http.get_json(url, source=source, max_attempts=FETCH_RETRIES)
        if result.ok:
            return result.data
        if result.status == 429:
            logger.warning("RATE_LIMIT source=%s status=429 url=%s", source, url)
        raise LookupError(result.error or f"http_status_{result.status}")

    async def fetch(self, selector: str, filters: SourceFilters | None = None) -> FetchResult:
        filters = filters or SourceFilters()
        key = normalize_id(selector)
        if key == SELECTOR_TRENDING:
            return await self._fetch_trending(filters)
        try:
            index = self.resolve_index(key, filters.source_index)
        except KeyError:
            return FetchResult(source_label=str(selector), error=f"unknown source selector: {selector}")

        provider = PROVIDERS[index]
        result = FetchResult(
            source_label=provider.label,
            source_index=index,
            next_source_index=(index + 1) % len(PROVIDERS),
        )
        try:
            if provider.kind == "gecko":
                candidates = await self._fetch_gecko_new_pools(provider)
            else:
                candidates = await self._fetch_dex_search(provider)
        except Exception as exc:
            logger.warning("SOURCE_FAIL source=%s error=%s", provider.id, exc)
            result.error = f"{provider.label} failed: {exc}"
            return result

        if filters.min_volume > 0:
            candidates = [c for c in candidates if c.volume_24h >= filters.min_volume]
        result.candidates = candidates
        logger.info("SOURCE_OK source=%s candidates=%s", provider.id, len(candidates))
        return result

    async def _fetch_gecko_new_pools(self, provider: Provider) -> list[Candidate]:
        network = GECKO_NETWORKS[provider.chain]
        url = f"{GECKO_API}/networks/{network}/new_pools?page=1&include=base_token"
        payload = await self._fetch_json(url, source="geckoterminal")
        if not isinstance(payload, dict):
            return []
        included = gecko_included_tokens(payload)
        rows = (payload.get("data") or [])[:SOURCE_MAX_POOLS]
        out: list[Candidate] = []
        for pool in rows:
            if not isinstance(pool, dict):
                continue
            candidate = parse_gecko_pool(pool, included, provider.chain, provider.label)
            if candidate is not None:
                out.append(candidate)
        return out

    async def _fetch_dex_search(self, provider: Provider) -> list[Candidate]:
        url = f"{DEXSCREENER_API}/latest/dex/search?q={provider.query.replace(' ', '%20')}"
        payload = await self._fetch_json(url, source="dexscreener")
        if not isinstance(payload, dict):
            return []
        out: list[Candidate] = []
        for pair in (payload.get("pairs") or [])[:SOURCE_MAX_POOLS]:
            if not isinstance(pair, dict):
                continue
            candidate = parse_dex_pair(pair, provider.label)
            if candidate is not None:
                out.append(candidate)
        return out

    async def _fetch_trending(self, filters: SourceFilters) -> FetchResult:
        category = normalize_id(filters.trend_filter) or "trending"
        if category not in TREND_FILTERS:
            return FetchResult(source_label="Trending", error=f"unknown trend filter: {filters.trend_filter}")
        chain = normalize_id(filters.chain) or "bsc"
        try:
            candidates, label = await self._trending.fetch(chain=chain, category=category)
        except Exception as exc:
            logger.warning("SOURCE_FAIL source=trending chain=%s error=%s", chain, exc)
            return FetchResult(source_label="Trending", error=f"Trending failed: {exc}")
        if filters.min_volume > 0:
            candidates = [c for c in candidates if c.volume_24h >= filters.min_volume]
        return FetchResult(candidates=candidates, source_label=label)
