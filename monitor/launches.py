"""Recent launches proxy for the launchpads that publish a public list."""

import logging
from typing import Any

from config import CLAWNCH_API, KIBU_API
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

LAUNCH_SOURCES = {
    "kibu-bsc": f"{KIBU_API}/launches?limit=12&chain=bsc",
    "kibu-base": f"{KIBU_API}/launches?limit=12&chain=base",
    "clawnch": f"{CLAWNCH_API}/launches?limit=12",
}


class UnknownLaunchSource(KeyError):
    pass


async def fetch_recent_launches(http: ResilientHttpClient, source: str = "kibu-bsc") -> list[Any]:
    """Raises UnknownLaunchSource for an unlisted source and LookupError on upstream failure."""
    url = LAUNCH_SOURCES.get(str(source or ""))
    if not url:
        raise UnknownLaunchSource(source)
    result = await http.get_json(url, source="launchpad")
    if not result.ok:
        logger.warning("LAUNCHES_FAIL source=%s status=%s error=%s", source, result.status, result.error)
        raise LookupError(f"{source} API returned {result.status or result.error}")
    data = result.data if isinstance(result.data, dict) else {}
    launches = data.get("launches") or data.get("tokens") or data.get("data") or []
    return launches if isinstance(launches, list) else []
