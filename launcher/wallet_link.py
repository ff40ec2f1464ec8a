"""EVM wallet proof-of-custody handshake for Moltx agents (EIP-712 challenge/verify)."""

from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from config import MOLTX_API, WALLET_LINK_TIMEOUT_SECONDS
from launcher.models import LinkedWallet, StepError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

CHAIN_ID_BASE = 8453
CHAIN_ID_BSC = 56


def chain_id_for(chain: str) -> int:
    return CHAIN_ID_BASE if str(chain or "").strip().lower() == "base" else CHAIN_ID_BSC


def _normalize_domain(domain: dict[str, Any]) -> dict[str, Any]:
    out = dict(domain or {})
    chain_id = out.get("chainId")
    if isinstance(chain_id, str):
        raw = chain_id.strip()
        out["chainId"] = int(raw, 16) if raw.lower().startswith("0x") else int(raw)
    return out


def sign_typed_data(private_key: str, typed_data: dict[str, Any]) -> str:
    """Sign a challenge's typed data; the `EIP712Domain` entry is dropped from types."""
    types = {k: v for k, v in (typed_data.get("types") or {}).items() if k != "EIP712Domain"}
    signable = encode_typed_data(
        domain_data=_normalize_domain(typed_data.get("domain") or {}),
        message_types=types,
        message_data=typed_data.get("message") or {},
    )
    signed = Account.sign_message(signable, private_key=private_key)
    signature = signed.signature.hex()
    return signature if signature.startswith("0x") else f"0x{signature}"


async def link_evm_wallet(
    http: ResilientHttpClient,
    api_key: str,
    chain_id: int,
    log: list[str],
) -> LinkedWallet:
    acct = Account.create()
    private_key = acct.key.hex()
    if not private_key.startswith("0x"):
        private_key = f"0x{private_key}"
    log.append(f"Generated wallet: {acct.address}")
    headers = {"Authorization": f"Bearer {api_key}"}

    log.append(f"Requesting EIP-712 challenge (chain_id: {chain_id})...")
    challenge = await http.post_json(
        f"{MOLTX_API}/agents/me/evm/challenge",
        {"address": acct.address, "chain_id": chain_id},
        source="moltx",
        headers=headers,
        timeout_seconds=WALLET_LINK_TIMEOUT_SECONDS,
    )
    if not challenge.ok:
        raise StepError(
            f"EVM challenge failed ({challenge.status}): {challenge.error_message(challenge.error or 'no response')}"
        )
    data = challenge.data.get("data") if isinstance(challenge.data, dict) else None
    if not isinstance(data, dict):
        raise StepError(f"Challenge missing fields. Got {type(data).__name__} instead of an object")
    nonce = str(data.get("nonce") or "")
    typed_data = data.get("typed_data")
    if not nonce or not isinstance(typed_data, dict):
        raise StepError(f"Challenge missing fields. Keys: {sorted(data.keys())}")
    log.append(f"Challenge received (nonce: {nonce[:8]}...)")

    log.append("Signing EIP-712 typed data...")
    try:
        signature = sign_typed_data(private_key, typed_data)
    except Exception as exc:
        raise StepError(f"EIP-712 signing failed: {exc}") from exc
    log.append(f"Signature: {signature[:16]}...")

    log.append("Verifying signature with Moltx...")
    verify = await http.post_json(
        f"{MOLTX_API}/agents/me/evm/verify",
        {"nonce": nonce, "signature": signature},
        source="moltx",
        headers=headers,
        timeout_seconds=WALLET_LINK_TIMEOUT_SECONDS,
    )
    if not verify.ok:
        raise StepError(f"EVM verify failed ({verify.status}): {verify.error_message(verify.error or 'no response')}")

    log.append(f"Wallet {acct.address} verified and linked!")
    logger.info("WALLET_LINKED address=%s chain_id=%s", acct.address, chain_id)
    return LinkedWallet(address=acct.address, private_key=private_key)
