"""Launch command bodies in each launchpad's field vocabulary."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from launcher.models import Candidate, DeployTarget, PreconditionError, TaxSplit
from utils.keys import normalize_id

FORMAT_TEXT = "text"
FORMAT_JSON_BLOCK = "json_block"


@dataclass(frozen=True)
class Launchpad:
    id: str
    label: str
    command: str
    telegram_field: bool = False
    chain_field: bool = False
    tax_block: bool = False
    submolt: str = "crypto"


LAUNCHPADS: dict[str, Launchpad] = {
    "4claw": Launchpad("4claw", "4claw", "!4clawd", telegram_field=True, tax_block=True),
    "kibu": Launchpad("kibu", "Kibu", "!kibu", chain_field=True, submolt="kibu"),
    "clawnch": Launchpad("clawnch", "Clawnch", "!clawnch", chain_field=True, submolt="clawnch"),
}


def get_launchpad(launchpad_id: str) -> Launchpad:
    pad = LAUNCHPADS.get(normalize_id(launchpad_id))
    if pad is None:
        raise PreconditionError(f"Unknown launchpad: {launchpad_id}")
    return pad


def validate_tax(tax: TaxSplit | None) -> None:
    if tax is None or not tax.tax:
        return
    if tax.share_total != 100:
        raise PreconditionError(
            f"Tax split must sum to 100 (funds {tax.funds} + burn {tax.burn} + holders {tax.holders} + lp {tax.lp} = {tax.share_total})"
        )


def _fields(pad: Launchpad, token: Candidate, target: DeployTarget) -> list[tuple[str, Any]]:
    chain = target.chain or token.chain
    rows: list[tuple[str, Any]] = [
        ("name", token.name),
        ("symbol", token.symbol),
        ("wallet", target.wallet),
    ]
    for key, value in (
        ("description", token.description),
        ("image", token.image_url),
        ("website", token.website),
        ("twitter", token.twitter),
    ):
        if value:
            rows.append((key, value))
    if pad.telegram_field and token.telegram:
        rows.append(("telegram", token.telegram))
    if pad.chain_field and chain:
        rows.append(("chain", chain))
    return rows


def build_text_content(launchpad_id: str, token: Candidate, target: DeployTarget) -> str:
    """Plain `key: value` lines under the launchpad command."""
    pad = get_launchpad(launchpad_id)
    lines = [pad.command] + [f"{key}: {value}" for key, value in _fields(pad, token, target)]
    body = "\n".join(lines)
    tax = target.tax
    if pad.tax_block and tax is not None and tax.tax:
        validate_tax(tax)
        body += (
            f"\n\ntax: {tax.tax}\nfunds: {tax.funds}\nburn: {tax.burn}"
            f"\nholders: {tax.holders}\nlp: {tax.lp}"
        )
    return body


def build_json_block_content(launchpad_id: str, token: Candidate, target: DeployTarget) -> str:
    """Command plus a fenced json block, for renderers that mangle plain lines."""
    pad = get_launchpad(launchpad_id)
    payload = {key: value for key, value in _fields(pad, token, target) if key != "telegram"}
    return f"{pad.command}\n```json\n{json.dumps(payload, indent=2, ensure_ascii=False)}\n```"


CONTENT_BUILDERS = {
    FORMAT_TEXT: build_text_content,
    FORMAT_JSON_BLOCK: build_json_block_content,
}


def build_content(content_format: str, launchpad_id: str, token: Candidate, target: DeployTarget) -> str:
    builder = CONTENT_BUILDERS.get(content_format)
    if builder is None:
        raise PreconditionError(f"Unknown content format: {content_format}")
    return builder(launchpad_id, token, target)
