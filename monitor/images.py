"""Heuristics deciding whether an image URL is a real per-token image.

Both rule sets are kept verbatim from the launch tooling they came from. Callers
pick one and pass it around as a plain `Callable[[str], bool]`.
"""

from __future__ import annotations

import re
from typing import Callable

ImagePredicate = Callable[[str], bool]

GENERATED_IMAGE_HOSTS = ("pollinations.ai", "dicebear.com")

_DEPLOYABLE_EXT_RE = re.compile(r"\.(png|jpg|jpeg|webp)(\?|$)", re.IGNORECASE)
_DEPLOYABLE_HOSTS = ("coingecko.com", "geckoterminal.com", "wsrv.nl")

_REAL_EXT_RE = re.compile(r"\.(png|jpg|jpeg|webp|gif|svg)(\?|$)")
_REAL_HOSTS = ("coingecko.com", "dexscreener.com", "pbs.twimg.com", "abs.twimg.com")
_REAL_PATH_HINTS = ("assets.", "/images/", "/logo")


def is_generated_image(url: str) -> bool:
    return any(host in url for host in GENERATED_IMAGE_HOSTS)


def is_deployable_image(url: str | None) -> bool:
    """Rule used by the unattended orchestrator before spending a deployment."""
    img = str(url or "")
    if not img or is_generated_image(img):
        return False
    if _DEPLOYABLE_EXT_RE.search(img):
        return True
    return any(host in img for host in _DEPLOYABLE_HOSTS)


def is_real_image(url: str | None) -> bool:
    """Looser rule used when picking images for trending topics."""
    img = str(url or "")
    if not img.startswith("http") or is_generated_image(img):
        return False
    lowered = img.lower()
    if _REAL_EXT_RE.search(lowered):
        return True
    if any(host in lowered for host in _REAL_HOSTS):
        return True
    return any(hint in lowered for hint in _REAL_PATH_HINTS)
