"""Launchpad indexer triggers. Every failure here degrades to a message."""

from __future__ import annotations

import logging

from config import CLAWNCH_API, FOURCLAW_FUN_API, TRIGGER_TIMEOUT_SECONDS
from launcher.agents import UNKNOWN_POST_ID
from launcher.content import LAUNCHPADS
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

NO_POST_ID_MESSAGE = "No post ID, launchpad will auto-scan within 1 minute."


def auto_scan_message(launchpad: str) -> str:
    pad = LAUNCHPADS.get(launchpad)
    name = pad.label if pad is not None else "4claw"
    return f"{name} auto-scans posts every minute. Token will deploy automatically."


async def trigger_fourclaw(http: ResilientHttpClient, source: str, post_id: str, api_key: str) -> str:
    payload = (
        {"url": f"https://www.moltbook.com/post/{post_id}"}
        if source == "moltbook"
        else {"platform": "moltx", "post_id": post_id}
    )
    result = await http.post_json(
        f"{FOURCLAW_FUN_API}/launch",
        payload,
        source="4claw_fun",
        timeout_seconds=TRIGGER_TIMEOUT_SECONDS,
    )
    if result.ok:
        return "4claw indexer triggered."
    return f"4claw trigger: {result.error_message(str(result.status or result.error))}"


async def trigger_clawnch(http: ResilientHttpClient, source: str, post_id: str, api_key: str) -> str:
    result = await http.post_json(
        f"{CLAWNCH_API}/launch",
        {"moltbook_key": api_key, "post_id": post_id},
        source="clawnch",
        timeout_seconds=TRIGGER_TIMEOUT_SECONDS,
    )
    data = result.data if isinstance(result.data, dict) else {}
    if data.get("success"):
        return f"Clawnch deployed! Contract: {data.get('token_address') or 'pending'}"
    return f"Clawnch: {result.error_message(str(result.status or result.error))}"


# (launchpad, agent trigger source) -> trigger call; anything else is auto-scanned.
TRIGGERS = {
    ("4claw", "moltx"): trigger_fourclaw,
    ("4claw", "4claw_org"): trigger_fourclaw,
    ("4claw", "moltbook"): trigger_fourclaw,
    ("clawnch", "moltbook"): trigger_clawnch,
}


async def trigger_launchpad(
    http: ResilientHttpClient,
    launchpad: str,
    source: str,
    post_id: str,
    api_key: str,
) -> str:
    if not post_id or post_id == UNKNOWN_POST_ID:
        return NO_POST_ID_MESSAGE
    trigger = TRIGGERS.get((launchpad, source))
    if trigger is None:
        return auto_scan_message(launchpad)
    try:
        return await trigger(http, source, post_id, api_key)
    except Exception as exc:
        logger.warning("TRIGGER_FAIL launchpad=%s source=%s error=%s", launchpad, source, exc)
        return f"{auto_scan_message(launchpad)} (trigger failed: {exc})"
