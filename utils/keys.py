"""Key normalization helpers."""

from __future__ import annotations


def dedup_key(symbol: str | None, name: str | None) -> str:
    """Uniqueness identity for "already deployed": lowercase(symbol + "_" + name)."""
    return f"{symbol or ''}_{name or ''}".lower()


def normalize_id(value: str | None) -> str:
    """Normalize launchpad/agent/chain identifiers for table lookups."""
    return str(value or "").strip().lower()
