"""Posting agent variants: registration and publish calls per platform."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from config import (
    AGENT_AVATAR_EMOJI,
    FOURCLAW_ORG_API,
    MOLTBOOK_API,
    MOLTX_API,
    POST_TIMEOUT_SECONDS,
    REGISTER_TIMEOUT_SECONDS,
)
from launcher.content import FORMAT_JSON_BLOCK, FORMAT_TEXT
from launcher.models import Candidate, PreconditionError, StepError
from utils.http_client import HttpResult, ResilientHttpClient
from utils.keys import normalize_id

logger = logging.getLogger(__name__)

UNKNOWN_POST_ID = "unknown"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    value = int(value)
    if value <= 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def moltx_handle(name: str, now_ms: int | None = None) -> str:
    stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    return f"{re.sub(r'[^a-z0-9]', '', str(name).lower())}_{stamp}"


def fourclaw_org_handle(name: str, now_ms: int | None = None) -> str:
    stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    return f"{re.sub(r'[^A-Za-z0-9_]', '', str(name))}_{stamp}"


def _dig(data: Any, *path: str) -> Any:
    node = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _first(data: Any, *paths: tuple[str, ...]) -> str:
    for path in paths:
        value = _dig(data, *path)
        if value not in (None, ""):
            return str(value)
    return ""


def _fail(result: HttpResult, default: str) -> StepError:
    return StepError(result.error_message(default))


def _auth(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


@dataclass
class Registration:
    api_key: str
    handle: str


async def register_moltx(http: ResilientHttpClient, token: Candidate, now_ms: int | None = None) -> Registration:
    handle = moltx_handle(token.name, now_ms)
    result = await http.post_json(
        f"{MOLTX_API}/agents/register",
        {
            "name": handle,
            "display_name": token.name,
            "description": f"Token launcher for ${token.symbol}",
            "avatar_emoji": AGENT_AVATAR_EMOJI,
        },
        source="moltx",
        timeout_seconds=REGISTER_TIMEOUT_SECONDS,
    )
    if not result.ok:
        raise _fail(result, f"Moltx register failed ({result.status or result.error})")
    api_key = _first(result.data, ("data", "api_key"), ("api_key",), ("data", "data", "api_key"))
    if not api_key:
        raise StepError("Moltx registered but no API key returned")
    return Registration(api_key=api_key, handle=handle)


async def register_fourclaw_org(http: ResilientHttpClient, token: Candidate, now_ms: int | None = None) -> Registration:
    handle = fourclaw_org_handle(token.name, now_ms)
    result = await http.post_json(
        f"{FOURCLAW_ORG_API}/agents/register",
        {"name": handle, "description": f"Token launcher for ${token.symbol} ({token.name})"},
        source="4claw_org",
        timeout_seconds=REGISTER_TIMEOUT_SECONDS,
    )
    if not result.ok:
        raise _fail(result, f"4claw.org register failed ({result.status or result.error})")
    api_key = _first(result.data, ("agent", "api_key"))
    if not api_key:
        raise StepError("4claw.org registered but no API key returned")
    return Registration(api_key=api_key, handle=_first(result.data, ("agent", "name")) or handle)


async def publish_moltx(http: ResilientHttpClient, api_key: str, content: str, token: Candidate, submolt: str) -> str:
    result = await http.post_json(
        f"{MOLTX_API}/posts",
        {"content": content},
        source="moltx",
        headers=_auth(api_key),
        timeout_seconds=POST_TIMEOUT_SECONDS,
    )
    if not result.ok:
        raise _fail(result, f"Moltx post failed ({result.status or result.error})")
    return _first(result.data, ("data", "id"), ("id",), ("data", "post", "id")) or UNKNOWN_POST_ID


async def publish_fourclaw_org(
    http: ResilientHttpClient, api_key: str, content: str, token: Candidate, submolt: str
) -> str:
    result = await http.post_json(
        f"{FOURCLAW_ORG_API}/boards/crypto/threads",
        {"title": f"Launching ${token.name}", "content": content, "anon": False},
        source="4claw_org",
        headers=_auth(api_key),
        timeout_seconds=POST_TIMEOUT_SECONDS,
    )
    if not result.ok:
        raise _fail(result, f"4claw.org post failed ({result.status or result.error})")
    return _first(result.data, ("thread", "id"), ("id",), ("data", "id")) or UNKNOWN_POST_ID


async def publish_moltbook(http: ResilientHttpClient, api_key: str, content: str, token: Candidate, submolt: str) -> str:
    result = await http.post_json(
        f"{MOLTBOOK_API}/posts",
        {"submolt": submolt, "title": f"Launching {token.symbol} token!", "content": content},
        source="moltbook",
        headers=_auth(api_key),
        timeout_seconds=POST_TIMEOUT_SECONDS,
    )
    if not result.ok:
        raise _fail(result, f"Moltbook returned {result.status or result.error}")
    return _first(result.data, ("post", "id"), ("data", "id"), ("id",))


Registrar = Callable[[ResilientHttpClient, Candidate], Awaitable[Registration]]
Publisher = Callable[[ResilientHttpClient, str, str, Candidate, str], Awaitable[str]]


@dataclass(frozen=True)
class AgentVariant:
    id: str
    label: str
    publish_label: str
    content_format: str
    publisher: Publisher
    post_url: str
    trigger_source: str
    registrar: Registrar | None = None
    register_label: str = ""
    links_wallet: bool = False
    auto_scanned: bool = True

    @property
    def requires_user_key(self) -> bool:
        return self.registrar is None

    def url_for(self, post_id: str) -> str:
        return self.post_url.format(post_id=post_id) if post_id else ""


AGENTS: dict[str, AgentVariant] = {
    "moltx": AgentVariant(
        id="moltx",
        label="Moltx",
        publish_label="Moltx",
        content_format=FORMAT_TEXT,
        publisher=publish_moltx,
        post_url="https://moltx.io/post/{post_id}",
        trigger_source="moltx",
        registrar=register_moltx,
        register_label="Moltx",
        links_wallet=True,
    ),
    "clawstr": AgentVariant(
        id="clawstr",
        label="Clawstr (Moltx)",
        publish_label="Moltx (Clawstr auto-scans)",
        content_format=FORMAT_TEXT,
        publisher=publish_moltx,
        post_url="https://moltx.io/post/{post_id}",
        trigger_source="moltx",
        registrar=register_moltx,
        register_label="Moltx (for Clawstr relay)",
        links_wallet=True,
    ),
    "4claw_org": AgentVariant(
        id="4claw_org",
        label="4claw.org",
        publish_label="4claw.org /crypto/ board",
        content_format=FORMAT_TEXT,
        publisher=publish_fourclaw_org,
        post_url="https://www.4claw.org/crypto/thread/{post_id}",
        trigger_source="4claw_org",
        registrar=register_fourclaw_org,
        register_label="4claw.org",
    ),
    "moltbook": AgentVariant(
        id="moltbook",
        label="Moltbook",
        publish_label="Moltbook",
        content_format=FORMAT_JSON_BLOCK,
        publisher=publish_moltbook,
        post_url="https://www.moltbook.com/post/{post_id}",
        trigger_source="moltbook",
        auto_scanned=False,
    ),
}


def get_agent(agent_id: str) -> AgentVariant:
    variant = AGENTS.get(normalize_id(agent_id))
    if variant is None:
        raise PreconditionError(f"Unknown agent: {agent_id}")
    return variant
