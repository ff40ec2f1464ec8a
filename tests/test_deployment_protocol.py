from __future__ import annotations

import json
import unittest
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from launcher.agents import moltx_handle, to_base36
from launcher.content import build_json_block_content, build_text_content, validate_tax
from launcher.launchpads import NO_POST_ID_MESSAGE, trigger_launchpad
from launcher.models import Candidate, DeployTarget, PreconditionError, TaxSplit
from launcher.protocol import DeploymentProtocol
from launcher.wallet_link import chain_id_for, sign_typed_data
from utils.http_client import HttpResult

TOKEN = Candidate(
    name="Moon Cat",
    symbol="MCAT",
    chain="bsc",
    source_label="test",
    image_url="https://assets.geckoterminal.com/mcat.png",
    website="https://mooncat.io",
    twitter="@mooncat",
    telegram="https://t.me/mooncat",
    description="Cats on the moon",
)

TYPED_DATA = {
    "types": {
        "EIP712Domain": [
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
        ],
        "WalletLink": [
            {"name": "wallet", "type": "address"},
            {"name": "nonce", "type": "string"},
        ],
    },
    "primaryType": "WalletLink",
    "domain": {"name": "Moltx", "version": "1", "chainId": "0x38"},
    "message": {"wallet": "0x0000000000000000000000000000000000000001", "nonce": "abc123"},
}


def _ok(data: Any) -> HttpResult:
    return HttpResult(ok=True, status=200, data=data)


def _fail(status: int, data: Any = None) -> HttpResult:
    return HttpResult(ok=False, status=status, data=data, error=f"http_status_{status}")


class FakeHttp:
    """POST router keyed by URL suffix; unknown URLs return 404."""

    def __init__(self, routes: dict[str, HttpResult]) -> None:
        self.routes = routes
        self.posts: list[tuple[str, Any]] = []

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        self.posts.append((url, payload))
        for suffix, result in self.routes.items():
            if url.endswith(suffix):
                return result
        return _fail(404)

    def urls(self) -> list[str]:
        return [url for url, _ in self.posts]


class ContentTests(unittest.TestCase):
    def test_fourclaw_text_includes_telegram_and_tax_block(self) -> None:
        target = DeployTarget(launchpad="4claw", agent="moltx", wallet="0xW", tax=TaxSplit(tax=5))
        body = build_text_content("4claw", TOKEN, target)
        lines = body.splitlines()
        self.assertEqual(lines[:4], ["!4clawd", "name: Moon Cat", "symbol: MCAT", "wallet: 0xW"])
        self.assertIn("telegram: https://t.me/mooncat", lines)
        self.assertNotIn("chain: bsc", lines)
        self.assertTrue(body.endswith("tax: 5\nfunds: 97\nburn: 1\nholders: 1\nlp: 1"))

    def test_kibu_text_carries_chain_not_telegram(self) -> None:
        target = DeployTarget(launchpad="kibu", agent="moltx", wallet="0xW", chain="base")
        lines = build_text_content("kibu", TOKEN, target).splitlines()
        self.assertEqual(lines[0], "!kibu")
        self.assertIn("chain: base", lines)
        self.assertFalse(any(line.startswith("telegram:") for line in lines))

    def test_json_block_content(self) -> None:
        target = DeployTarget(launchpad="clawnch", agent="moltbook", wallet="0xW")
        body = build_json_block_content("clawnch", TOKEN, target)
        self.assertTrue(body.startswith("!clawnch\n```json\n"))
        payload = json.loads(body.split("```json\n", 1)[1].rsplit("\n```", 1)[0])
        self.assertEqual(payload["symbol"], "MCAT")
        self.assertEqual(payload["chain"], "bsc")
        self.assertNotIn("telegram", payload)

    def test_tax_split_must_sum_to_100(self) -> None:
        validate_tax(None)
        validate_tax(TaxSplit(tax=0, funds=1))
        with self.assertRaises(PreconditionError):
            validate_tax(TaxSplit(tax=5, funds=90))

    def test_handles_and_chain_ids(self) -> None:
        self.assertEqual(to_base36(35), "z")
        self.assertEqual(moltx_handle("Moon Cat!", now_ms=36), "mooncat_10")
        self.assertEqual(chain_id_for("base"), 8453)
        self.assertEqual(chain_id_for("solana"), 56)


class WalletSigningTests(unittest.TestCase):
    def test_signature_recovers_signer(self) -> None:
        acct = Account.create()
        signature = sign_typed_data(acct.key.hex(), TYPED_DATA)
        self.assertTrue(signature.startswith("0x"))
        signable = encode_typed_data(
            domain_data={"name": "Moltx", "version": "1", "chainId": 56},
            message_types={"WalletLink": TYPED_DATA["types"]["WalletLink"]},
            message_data=TYPED_DATA["message"],
        )
        self.assertEqual(Account.recover_message(signable, signature=signature), acct.address)


class DeploymentProtocolTests(unittest.IsolatedAsyncioTestCase):
    async def test_moltbook_without_key_fails_before_network(self) -> None:
        http = FakeHttp({})
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN, DeployTarget(launchpad="clawnch", agent="moltbook", wallet="0xW")
        )
        self.assertFalse(outcome.success)
        self.assertIn("requires an API key", outcome.message)
        self.assertEqual(http.posts, [])

    async def test_unknown_launchpad_is_a_precondition(self) -> None:
        with self.assertRaises(PreconditionError):
            DeploymentProtocol.check_preconditions(TOKEN, DeployTarget(launchpad="pump", agent="moltx", wallet="0xW"))

    async def test_moltx_flow_survives_wallet_link_failure(self) -> None:
        http = FakeHttp(
            {
                "/agents/register": _ok({"data": {"api_key": "moltx_key"}}),
                "/agents/me/evm/challenge": _fail(500, {"error": "challenge service down"}),
                "/posts": _ok({"data": {"id": "post42"}}),
            }
        )
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN, DeployTarget(launchpad="kibu", agent="moltx", wallet="0xW", chain="bsc")
        )
        self.assertTrue(outcome.success, outcome.log)
        self.assertEqual(outcome.post_id, "post42")
        self.assertEqual(outcome.post_url, "https://moltx.io/post/post42")
        self.assertTrue(any("Wallet link failed" in line for line in outcome.log))
        self.assertIn("Kibu auto-scans", outcome.message)
        self.assertEqual(outcome.credentials.api_key, "moltx_key")
        self.assertIsNone(outcome.credentials.linked_wallet)
        self.assertEqual(outcome.to_dict(include_credentials=True)["credentials"]["apiKey"], "moltx_key")
        self.assertNotIn("credentials", outcome.to_dict())

    async def test_malformed_challenge_still_posts(self) -> None:
        http = FakeHttp(
            {
                "/agents/register": _ok({"data": {"api_key": "moltx_key"}}),
                "/agents/me/evm/challenge": _ok({"data": "not-an-object"}),
                "/posts": _ok({"data": {"id": "post7"}}),
            }
        )
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN, DeployTarget(launchpad="kibu", agent="moltx", wallet="0xW", chain="bsc")
        )
        self.assertTrue(outcome.success, outcome.log)
        self.assertEqual(outcome.post_id, "post7")
        self.assertTrue(any("Wallet link failed" in line and "Challenge missing fields" in line for line in outcome.log))
        self.assertFalse(any(url.endswith("/evm/verify") for url in http.urls()))

    async def test_moltx_flow_links_wallet(self) -> None:
        http = FakeHttp(
            {
                "/agents/register": _ok({"data": {"api_key": "moltx_key"}}),
                "/agents/me/evm/challenge": _ok({"data": {"nonce": "abc123", "typed_data": TYPED_DATA}}),
                "/agents/me/evm/verify": _ok({"success": True}),
                "/posts": _ok({"data": {"id": "post42"}}),
            }
        )
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN, DeployTarget(launchpad="kibu", agent="clawstr", wallet="0xW", chain="base")
        )
        self.assertTrue(outcome.success, outcome.log)
        wallet = outcome.credentials.linked_wallet
        self.assertIsNotNone(wallet)
        challenge = next(payload for url, payload in http.posts if url.endswith("/evm/challenge"))
        self.assertEqual(challenge, {"address": wallet.address, "chain_id": 8453})
        verify = next(payload for url, payload in http.posts if url.endswith("/evm/verify"))
        self.assertEqual(verify["nonce"], "abc123")

    async def test_existing_key_skips_registration_and_triggers_4claw(self) -> None:
        http = FakeHttp(
            {
                "/boards/crypto/threads": _ok({"thread": {"id": "t9"}}),
                "/launch": _ok({"success": True}),
            }
        )
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN,
            DeployTarget(launchpad="4claw", agent="4claw_org", wallet="0xW", existing_api_key="clawchan_key"),
        )
        self.assertTrue(outcome.success, outcome.log)
        self.assertIsNone(outcome.credentials)
        self.assertFalse(any(url.endswith("/agents/register") for url in http.urls()))
        self.assertEqual(outcome.post_url, "https://www.4claw.org/crypto/thread/t9")
        self.assertIn("4claw indexer triggered.", outcome.message)
        trigger = next(payload for url, payload in http.posts if url.endswith("/launch"))
        self.assertEqual(trigger, {"platform": "moltx", "post_id": "t9"})
        self.assertTrue(outcome.to_dict()["autoScanned"])

    async def test_moltbook_post_is_not_auto_scanned(self) -> None:
        http = FakeHttp(
            {
                "/posts": _ok({"post": {"id": "mb1"}}),
                "/launch": _ok({"success": True, "token_address": "0xT"}),
            }
        )
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN,
            DeployTarget(launchpad="clawnch", agent="moltbook", wallet="0xW", existing_api_key="mb_key"),
        )
        self.assertTrue(outcome.success, outcome.log)
        self.assertIn("Clawnch deployed! Contract: 0xT", outcome.message)
        self.assertFalse(outcome.to_dict()["autoScanned"])

    async def test_registration_failure_ends_attempt(self) -> None:
        http = FakeHttp({"/agents/register": _fail(429, {"error": "Too many registrations"})})
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN, DeployTarget(launchpad="kibu", agent="4claw_org", wallet="0xW")
        )
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.message, "Too many registrations")
        self.assertEqual(outcome.log[-1], "Error: Too many registrations")
        self.assertEqual(outcome.to_dict()["error"], "Too many registrations")

    async def test_publish_failure_ends_attempt(self) -> None:
        http = FakeHttp({"/posts": _fail(500)})
        outcome = await DeploymentProtocol(http).deploy(  # type: ignore[arg-type]
            TOKEN,
            DeployTarget(launchpad="clawnch", agent="moltbook", wallet="0xW", existing_api_key="mb_key"),
        )
        self.assertFalse(outcome.success)
        self.assertIn("Moltbook returned 500", outcome.message)

    async def test_trigger_without_post_id_degrades(self) -> None:
        http = FakeHttp({})
        self.assertEqual(await trigger_launchpad(http, "4claw", "moltx", "", "k"), NO_POST_ID_MESSAGE)  # type: ignore[arg-type]
        clawnch = await trigger_launchpad(http, "clawnch", "moltbook", "p1", "k")  # type: ignore[arg-type]
        self.assertTrue(clawnch.startswith("Clawnch:"))


if __name__ == "__main__":
    unittest.main()
