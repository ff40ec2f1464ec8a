from __future__ import annotations

import unittest
from typing import Any

from database.kv_store import MemoryKVStore
from launcher.deployed_feed import DeployedTokensFeed
from launcher.drivers import ClientLoop, ClientLoopSettings, SessionDriver, run_timer_tick
from launcher.models import Candidate, DeploymentOutcome, DeployTarget
from launcher.orchestrator import Orchestrator
from launcher.run_state import RunStateStore
from monitor.token_source import FetchResult

IMG = "https://assets.geckoterminal.com/images/token.png"


def _token(symbol: str, chain: str = "bsc") -> Candidate:
    return Candidate(name=f"{symbol} Coin", symbol=symbol, chain=chain, source_label="test", image_url=IMG)


class FakeSource:
    def __init__(self, *batches: list[Candidate] | str) -> None:
        # A string entry stands for an upstream error on that fetch.
        self.batches = list(batches)
        self.calls = 0

    async def fetch(self, selector: str, filters: Any = None) -> FetchResult:
        self.calls += 1
        batch = self.batches.pop(0) if self.batches else []
        index = getattr(filters, "source_index", 0)
        if isinstance(batch, str):
            return FetchResult(source_label="Fake", source_index=index, next_source_index=index + 1, error=batch)
        return FetchResult(candidates=list(batch), source_label="Fake", source_index=index, next_source_index=index + 1)


class FakeProtocol:
    def __init__(self, fail_symbols: tuple[str, ...] = ()) -> None:
        self.fail_symbols = fail_symbols
        self.calls: list[tuple[Candidate, DeployTarget]] = []

    async def deploy(self, token: Candidate, target: DeployTarget) -> DeploymentOutcome:
        self.calls.append((token, target))
        if token.symbol in self.fail_symbols:
            return DeploymentOutcome(success=False, message="Moltx post failed (500)")
        return DeploymentOutcome(success=True, message="Posted", post_id=f"id-{token.symbol}")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


EDGE = {"mode": "edge", "launchpad": "kibu", "agent": "moltx", "source": "bsc", "delay_seconds": 0, "max_deployments": 5}


class SessionDriverTests(unittest.IsolatedAsyncioTestCase):
    def _driver(self, source: FakeSource, clock: FakeClock) -> tuple[SessionDriver, Orchestrator]:
        store = RunStateStore(MemoryKVStore(), clock=lambda: "00:00:00")
        orch = Orchestrator(store, source, FakeProtocol())  # type: ignore[arg-type]
        driver = SessionDriver(
            orch,
            max_runtime_seconds=55,
            min_delay_seconds=10,
            clock=clock,
            sleep=clock.sleep,
        )
        return driver, orch

    async def test_session_runs_until_budget_with_min_delay(self) -> None:
        clock = FakeClock()
        driver, orch = self._driver(FakeSource(), clock)
        await orch.start(EDGE)

        result = await driver.run_session()

        self.assertEqual(result.cycles, 6)
        self.assertEqual(clock.sleeps, [10, 10, 10, 10, 10, 5])
        self.assertEqual(result.to_dict()["runtime"], 55_000)
        self.assertTrue(result.to_dict()["success"])

    async def test_session_exits_when_run_is_not_edge(self) -> None:
        clock = FakeClock()
        driver, orch = self._driver(FakeSource(), clock)
        await orch.start({**EDGE, "mode": "cron"})

        result = await driver.run_session()

        self.assertEqual(result.cycles, 0)
        logs = await orch.store.logs()
        self.assertIn("run state says stop", logs[0].message)

    async def test_session_halts_run_at_ceiling(self) -> None:
        clock = FakeClock()
        driver, orch = self._driver(FakeSource([_token("AAA")], [_token("BBB")]), clock)
        await orch.start({**EDGE, "max_deployments": 1})

        result = await driver.run_session()

        self.assertEqual(result.cycles, 1)
        run_config = await orch.store.load_config()
        self.assertFalse(run_config.running)
        self.assertEqual(run_config.total_deployed, 1)

    async def test_timer_tick_runs_one_step(self) -> None:
        clock = FakeClock()
        _, orch = self._driver(FakeSource([_token("AAA"), _token("BBB")]), clock)
        await orch.start({**EDGE, "mode": "cron"})
        outcome = await run_timer_tick(orch)
        self.assertEqual(outcome.to_dict(), {"deployed": True, "totalDeployed": 1, "maxDeployments": 5, "symbol": "AAA", "message": "Posted"})


class ClientLoopTests(unittest.IsolatedAsyncioTestCase):
    def _settings(self, **overrides: Any) -> ClientLoopSettings:
        base = dict(launchpad="kibu", agent="moltx", chain="bsc", wallet="0xW", max_deployments=2, delay_seconds=0)
        base.update(overrides)
        return ClientLoopSettings(**base)

    async def test_loop_stops_at_max_and_skips_known_keys(self) -> None:
        source = FakeSource([_token("OLD"), _token("ETH", chain="base"), _token("AAA"), _token("BBB"), _token("CCC")])
        protocol = FakeProtocol()
        feed = DeployedTokensFeed()
        loop = ClientLoop(source, protocol, self._settings(), feed=feed, launched={"old_old coin"})  # type: ignore[arg-type]

        stats = await loop.run()

        self.assertEqual([t.symbol for t, _ in protocol.calls], ["AAA", "BBB"])
        self.assertEqual(stats.to_dict(), {"launched": 2, "skipped": 1, "errors": 0})
        self.assertEqual([item.symbol for item in feed.items()], ["BBB", "AAA"])
        self.assertIn("Auto-launch finished. Launched: 2/2", loop.logs[-1].message)
        self.assertEqual(protocol.calls[0][0].description, "$AAA - AAA Coin token. Community-driven memecoin.")

    async def test_failed_deploy_counts_error_and_continues(self) -> None:
        source = FakeSource([_token("AAA"), _token("BBB")])
        protocol = FakeProtocol(fail_symbols=("AAA",))
        loop = ClientLoop(source, protocol, self._settings(max_deployments=1), max_batches=1)  # type: ignore[arg-type]
        stats = await loop.run()
        self.assertEqual(stats.launched, 1)
        self.assertEqual(stats.errors, 1)
        self.assertNotIn("aaa_aaa coin", loop.launched)

    async def test_error_and_empty_batches_rotate_source(self) -> None:
        source = FakeSource("GeckoTerminal BSC failed: timeout", [], [_token("AAA")])
        loop = ClientLoop(
            source,
            FakeProtocol(),
            self._settings(max_deployments=1),
            empty_backoff_seconds=0,
            error_backoff_seconds=0,
        )  # type: ignore[arg-type]
        stats = await loop.run()
        self.assertEqual(stats.launched, 1)
        self.assertEqual(source.calls, 3)
        self.assertEqual(loop.source_index, 3)
        kinds = [entry.kind for entry in loop.logs]
        self.assertIn("error", kinds)
        self.assertIn("skip", kinds)

    async def test_stop_interrupts_backoff_wait(self) -> None:
        source = FakeSource("upstream down")
        loop_holder: list[ClientLoop] = []

        def _on_log(entry) -> None:
            if entry.message.startswith("Fetch error"):
                loop_holder[0].stop()

        loop = ClientLoop(
            source,
            FakeProtocol(),
            self._settings(),
            error_backoff_seconds=3600,
            on_log=_on_log,
        )  # type: ignore[arg-type]
        loop_holder.append(loop)

        stats = await loop.run()

        self.assertEqual(source.calls, 1)
        self.assertEqual(stats.launched, 0)
        self.assertEqual(loop.logs[-1].message, "Stopped by user. Launched: 0")

    async def test_cancel_before_start_does_nothing(self) -> None:
        source = FakeSource([_token("AAA")])
        loop = ClientLoop(source, FakeProtocol(), self._settings())  # type: ignore[arg-type]
        loop.stop()
        await loop.run()
        self.assertEqual(source.calls, 0)


if __name__ == "__main__":
    unittest.main()
