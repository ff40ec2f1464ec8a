from __future__ import annotations

import asyncio
import unittest
from typing import Any, Awaitable, Callable

from database.kv_store import MemoryKVStore, StoreError
from launcher.deployed_feed import DeployedTokensFeed
from launcher.models import (
    SKIP_MAX_REACHED,
    SKIP_NO_CANDIDATES,
    SKIP_NO_ELIGIBLE,
    SKIP_NOT_RUNNING,
    Candidate,
    ConfigError,
    DeploymentOutcome,
    DeployTarget,
)
from launcher.orchestrator import Orchestrator, build_run_config
from launcher.protocol import DeploymentProtocol
from launcher.run_state import RunStateStore
from monitor.token_source import FetchResult
from utils.http_client import HttpResult

IMG = "https://assets.geckoterminal.com/images/token.png"


def _token(symbol: str, name: str | None = None, image: str = IMG, chain: str = "bsc") -> Candidate:
    return Candidate(name=name or f"{symbol} Coin", symbol=symbol, chain=chain, source_label="test", image_url=image)


class FakeSource:
    def __init__(self, *batches: list[Candidate], error: str = "") -> None:
        self.batches = list(batches)
        self.error = error
        self.calls: list[tuple[str, Any]] = []

    async def fetch(self, selector: str, filters: Any = None) -> FetchResult:
        self.calls.append((selector, filters))
        batch = self.batches.pop(0) if self.batches else []
        index = getattr(filters, "source_index", 0)
        return FetchResult(
            candidates=list(batch),
            source_label="Fake",
            source_index=index,
            next_source_index=index + 1,
            error=self.error,
        )


class FakeProtocol:
    def __init__(self, *results: bool, hook: Callable[[], Awaitable[None]] | None = None) -> None:
        self.results = list(results)
        self.hook = hook
        self.calls: list[tuple[Candidate, DeployTarget]] = []

    async def deploy(self, token: Candidate, target: DeployTarget) -> DeploymentOutcome:
        self.calls.append((token, target))
        if self.hook is not None:
            await self.hook()
        ok = self.results.pop(0) if self.results else True
        if ok:
            return DeploymentOutcome(success=True, message="Posted", post_id="p1", post_url="https://x/p1")
        return DeploymentOutcome(success=False, message="Moltx post failed (500)")


class BrokenKV(MemoryKVStore):
    async def get(self, key: str) -> Any:
        raise StoreError("E_STORE_UNAVAILABLE: redis GET failed")


def _clock() -> Callable[[], int]:
    ticks = iter(range(1_000, 10_000_000, 1_000))
    return lambda: next(ticks)


SETTINGS = {"mode": "cron", "launchpad": "kibu", "agent": "moltx", "chain": "bsc", "source": "bsc", "max_deployments": 5}


class OrchestratorStepTests(unittest.IsolatedAsyncioTestCase):
    def _build(self, source: FakeSource, protocol: FakeProtocol, kv: MemoryKVStore | None = None, feed=None):
        store = RunStateStore(kv or MemoryKVStore(), max_logs=50, clock=lambda: "12:00:00")
        return Orchestrator(store, source, protocol, feed=feed, clock=_clock()), store

    async def test_step_without_run_is_not_running(self) -> None:
        orch, _ = self._build(FakeSource(), FakeProtocol())
        outcome = await orch.step()
        self.assertEqual(outcome.skipped, SKIP_NOT_RUNNING)
        self.assertFalse(outcome.deployed)

    async def test_step_deploys_one_and_records_key(self) -> None:
        source = FakeSource([_token("AAA"), _token("BBB")])
        protocol = FakeProtocol(True)
        orch, store = self._build(source, protocol)
        await orch.start(SETTINGS)

        outcome = await orch.step()

        self.assertTrue(outcome.deployed)
        self.assertEqual(outcome.symbol, "AAA")
        self.assertEqual(len(protocol.calls), 1)
        run_config = await store.load_config()
        self.assertEqual(run_config.total_deployed, 1)
        self.assertEqual(run_config.launched_keys, ["aaa_aaa coin"])
        self.assertIsNotNone(run_config.last_run_at)
        logs = await store.logs()
        self.assertEqual(logs[0].kind, "success")
        self.assertIn("Deployed $AAA!", logs[0].message)

    async def test_deploy_target_and_description_fallback(self) -> None:
        protocol = FakeProtocol(True)
        orch, _ = self._build(FakeSource([_token("AAA")]), protocol)
        await orch.start({**SETTINGS, "wallet": "0xabc"})
        await orch.step()
        token, target = protocol.calls[0]
        self.assertEqual(token.description, "$AAA token")
        self.assertEqual((target.launchpad, target.agent, target.wallet, target.chain), ("kibu", "moltx", "0xabc", "bsc"))
        self.assertEqual(target.existing_api_key, "")

    async def test_already_launched_candidate_is_skipped(self) -> None:
        source = FakeSource([_token("AAA")], [_token("AAA"), _token("BBB")])
        protocol = FakeProtocol(True, True)
        orch, store = self._build(source, protocol)
        await orch.start(SETTINGS)

        await orch.step()
        outcome = await orch.step()

        self.assertEqual(outcome.symbol, "BBB")
        self.assertEqual([t.symbol for t, _ in protocol.calls], ["AAA", "BBB"])
        self.assertEqual((await store.load_config()).total_deployed, 2)

    async def test_only_duplicates_is_no_eligible_candidate(self) -> None:
        source = FakeSource([_token("AAA")], [_token("AAA")])
        orch, _ = self._build(source, FakeProtocol(True))
        await orch.start(SETTINGS)
        await orch.step()
        outcome = await orch.step()
        self.assertEqual(outcome.skipped, SKIP_NO_ELIGIBLE)

    async def test_ceiling_halts_on_following_step(self) -> None:
        source = FakeSource([_token("AAA")], [_token("BBB")])
        protocol = FakeProtocol(True)
        orch, store = self._build(source, protocol)
        await orch.start({**SETTINGS, "max_deployments": 1})

        first = await orch.step()
        second = await orch.step()

        self.assertTrue(first.deployed)
        self.assertEqual(second.skipped, SKIP_MAX_REACHED)
        self.assertEqual(len(protocol.calls), 1)
        run_config = await store.load_config()
        self.assertFalse(run_config.running)
        self.assertIsNotNone(run_config.stopped_at)
        self.assertEqual((await orch.step()).skipped, SKIP_NOT_RUNNING)

    async def test_failed_deploy_is_retried_next_step(self) -> None:
        source = FakeSource([_token("AAA")], [_token("AAA")])
        protocol = FakeProtocol(False, True)
        orch, store = self._build(source, protocol)
        await orch.start(SETTINGS)

        failed = await orch.step()
        after_fail = await store.load_config()
        retried = await orch.step()

        self.assertFalse(failed.deployed)
        self.assertEqual(after_fail.total_deployed, 0)
        self.assertEqual(after_fail.launched_keys, [])
        self.assertIsNotNone(after_fail.last_run_at)
        self.assertTrue(retried.deployed)
        self.assertEqual([t.symbol for t, _ in protocol.calls], ["AAA", "AAA"])
        kinds = [entry.kind for entry in await store.logs()]
        self.assertIn("error", kinds)

    async def test_candidate_without_real_image_is_skipped(self) -> None:
        source = FakeSource([_token("GEN", image="https://image.pollinations.ai/prompt/x"), _token("NOIMG", image="")])
        protocol = FakeProtocol()
        orch, store = self._build(source, protocol)
        await orch.start(SETTINGS)

        outcome = await orch.step()

        self.assertEqual(outcome.skipped, SKIP_NO_ELIGIBLE)
        self.assertEqual(protocol.calls, [])
        messages = [entry.message for entry in await store.logs()]
        self.assertTrue(any("Skipped 2 candidate(s)" in m for m in messages))

    async def test_chain_filter_allows_wildcard_chain(self) -> None:
        source = FakeSource([_token("BASE", chain="base"), _token("SOL", chain="solana")])
        protocol = FakeProtocol(True)
        orch, _ = self._build(source, protocol)
        await orch.start({**SETTINGS, "chain_filter": True})
        outcome = await orch.step()
        self.assertEqual(outcome.symbol, "SOL")

    async def test_empty_batch_reports_no_candidates_and_source_error(self) -> None:
        source = FakeSource([], error="GeckoTerminal BSC failed: timeout")
        orch, store = self._build(source, FakeProtocol())
        await orch.start(SETTINGS)
        outcome = await orch.step()
        self.assertEqual(outcome.skipped, SKIP_NO_CANDIDATES)
        messages = [entry.message for entry in await store.logs()]
        self.assertTrue(any(m.startswith("Source error:") for m in messages))

    async def test_rotation_index_advances_only_for_rotate(self) -> None:
        source = FakeSource([], [])
        orch, store = self._build(source, FakeProtocol())
        await orch.start({**SETTINGS, "source": "rotate"})
        await orch.step()
        await orch.step()
        self.assertEqual((await store.load_config()).source_index, 2)

        fixed = FakeSource([])
        orch, store = self._build(fixed, FakeProtocol())
        await orch.start(SETTINGS)
        await orch.step()
        self.assertEqual((await store.load_config()).source_index, 0)

    async def test_stop_is_idempotent(self) -> None:
        orch, store = self._build(FakeSource(), FakeProtocol())
        self.assertFalse(await orch.stop())
        await orch.start(SETTINGS)
        self.assertTrue(await orch.stop())
        self.assertFalse(await orch.stop())
        self.assertFalse((await store.load_config()).running)

    async def test_start_replaces_previous_run(self) -> None:
        orch, store = self._build(FakeSource([_token("AAA")]), FakeProtocol(True))
        await orch.start(SETTINGS)
        await orch.step()
        await orch.start({**SETTINGS, "launchpad": "clawnch"})

        run_config = await store.load_config()
        self.assertEqual(run_config.total_deployed, 0)
        self.assertEqual(run_config.launched_keys, [])
        self.assertEqual(run_config.launchpad, "clawnch")
        logs = await store.logs()
        self.assertEqual(len(logs), 1)

    async def test_clear_removes_config_and_logs(self) -> None:
        orch, store = self._build(FakeSource(), FakeProtocol())
        await orch.start(SETTINGS)
        await orch.clear()
        status = await orch.status()
        self.assertIsNone(status["config"])
        self.assertEqual(status["logs"], [])

    async def test_result_dropped_when_run_cleared_mid_deploy(self) -> None:
        kv = MemoryKVStore()
        store_holder: list[RunStateStore] = []

        async def _clear() -> None:
            await store_holder[0].clear()

        orch, store = self._build(FakeSource([_token("AAA")]), FakeProtocol(True, hook=_clear), kv=kv)
        store_holder.append(store)
        await orch.start(SETTINGS)

        outcome = await orch.step()

        self.assertTrue(outcome.deployed)
        self.assertIsNone(await store.load_config())

    async def test_store_error_propagates(self) -> None:
        orch, _ = self._build(FakeSource(), FakeProtocol(), kv=BrokenKV())
        with self.assertRaises(StoreError) as ctx:
            await orch.step()
        self.assertEqual(ctx.exception.code, "E_STORE_UNAVAILABLE")

    async def test_success_is_published_to_feed(self) -> None:
        feed = DeployedTokensFeed(max_items=5)
        orch, _ = self._build(FakeSource([_token("AAA")]), FakeProtocol(True), feed=feed)
        await orch.start(SETTINGS)
        await orch.step()
        items = feed.items()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].post_url, "https://x/p1")


class SlowTriggerHttp:
    """Agent endpoints answer at once; the launchpad indexer call is slow."""

    def __init__(self, trigger_delay: float) -> None:
        self.trigger_delay = trigger_delay
        self.posts: list[str] = []

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        self.posts.append(url)
        if url.endswith("/agents/register"):
            return HttpResult(ok=True, status=200, data={"agent": {"api_key": "clawchan_key", "name": "aaa_bot"}})
        if url.endswith("/boards/crypto/threads"):
            return HttpResult(ok=True, status=200, data={"thread": {"id": "t1"}})
        await asyncio.sleep(self.trigger_delay)
        return HttpResult(ok=False, status=0, data=None, error="timeout")


class SlowTriggerTests(unittest.IsolatedAsyncioTestCase):
    async def test_published_post_is_recorded_despite_slow_trigger(self) -> None:
        http = SlowTriggerHttp(trigger_delay=0.2)
        token = _token("AAA")
        store = RunStateStore(MemoryKVStore(), max_logs=50, clock=lambda: "12:00:00")
        orch = Orchestrator(store, FakeSource([token], [token]), DeploymentProtocol(http), clock=_clock())  # type: ignore[arg-type]
        await orch.start({**SETTINGS, "launchpad": "4claw", "agent": "4claw_org"})

        first = await orch.step()
        second = await orch.step()

        self.assertTrue(first.deployed, first.message)
        self.assertIn("4claw trigger:", first.message)
        self.assertEqual(second.skipped, SKIP_NO_ELIGIBLE)
        self.assertEqual(sum(url.endswith("/boards/crypto/threads") for url in http.posts), 1)
        run_config = await store.load_config()
        self.assertEqual(run_config.launched_keys, [token.key])
        self.assertEqual(run_config.total_deployed, 1)


class BuildRunConfigTests(unittest.TestCase):
    def test_camel_case_settings_are_accepted(self) -> None:
        run_config = build_run_config(
            {"launchpad": "4claw", "agent": "4claw_org", "source": "rotate", "maxLaunches": 3, "delaySeconds": 45},
            started_at=42,
        )
        self.assertEqual(run_config.max_deployments, 3)
        self.assertEqual(run_config.delay_seconds, 45)
        self.assertEqual(run_config.started_at, 42)
        self.assertTrue(run_config.running)

    def test_agent_needing_user_key_is_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            build_run_config({**SETTINGS, "agent": "moltbook"}, started_at=1)

    def test_chain_filter_parses_string_flags(self) -> None:
        for raw, expected in (("false", False), ("0", False), ("", False), ("true", True), ("On", True), (True, True)):
            with self.subTest(raw=raw):
                run_config = build_run_config({**SETTINGS, "chainFilter": raw}, started_at=1)
                self.assertIs(run_config.chain_filter, expected)

    def test_invalid_values_are_rejected(self) -> None:
        for bad in ({"mode": "hourly"}, {"launchpad": "pump"}, {"source": "eth"}, {"max_deployments": 0}, {"delay_seconds": "x"}):
            with self.subTest(bad=bad), self.assertRaises(ConfigError):
                build_run_config({**SETTINGS, **bad}, started_at=1)


if __name__ == "__main__":
    unittest.main()
