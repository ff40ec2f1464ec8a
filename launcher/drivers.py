"""Execution contexts for the orchestrator step.

- `run_timer_tick`: one step per external scheduler call.
- `SessionDriver`: a bounded session that repeats steps until its budget runs out
  or the store says stop. Re-triggering is the caller's job.
- `ClientLoop`: a foreground loop that drives the source and protocol directly
  and keeps its own in-memory launched set and log.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

import config
from database.kv_store import StoreError
from launcher.deployed_feed import DeployedTokensFeed
from launcher.models import (
    LOG_ERROR,
    LOG_INFO,
    LOG_SKIP,
    LOG_SUCCESS,
    MODE_EDGE,
    Candidate,
    DeployTarget,
    LogEntry,
    StepOutcome,
)
from launcher.orchestrator import Orchestrator
from launcher.protocol import DeploymentProtocol
from launcher.run_state import wall_clock
from monitor.token_source import SELECTOR_ROTATE, SourceFilters, TokenSource

logger = logging.getLogger(__name__)


async def run_timer_tick(orchestrator: Orchestrator) -> StepOutcome:
    outcome = await orchestrator.step()
    logger.info(
        "TIMER_TICK deployed=%s skipped=%s total=%s/%s",
        outcome.deployed,
        outcome.skipped or "-",
        outcome.total_deployed,
        outcome.max_deployments,
    )
    return outcome


@dataclass
class SessionResult:
    cycles: int
    runtime_ms: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, "cycles": self.cycles, "runtime": self.runtime_ms, "message": self.message}


class SessionDriver:
    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        max_runtime_seconds: float | None = None,
        min_delay_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.max_runtime = float(
            config.SESSION_MAX_RUNTIME_SECONDS if max_runtime_seconds is None else max_runtime_seconds
        )
        self.min_delay = float(config.SESSION_MIN_DELAY_SECONDS if min_delay_seconds is None else min_delay_seconds)
        self._clock = clock
        self._sleep = sleep

    async def run_session(self) -> SessionResult:
        store = self.orchestrator.store
        started = self._clock()
        cycles = 0

        def _elapsed() -> float:
            return self._clock() - started

        while _elapsed() < self.max_runtime:
            run_config = await store.load_config()
            if run_config is None or not run_config.running or run_config.mode != MODE_EDGE:
                await store.append_log("Session: run state says stop. Exiting.", LOG_INFO)
                break
            if run_config.total_deployed >= run_config.max_deployments:
                await store.append_log("Session: max deployments reached. Stopping.", LOG_SUCCESS)
                # Let the orchestrator perform the auto-halt itself.
                await self.orchestrator.step()
                break

            # A step is bounded by its own HTTP timeouts and may overrun the budget once.
            try:
                await self.orchestrator.step()
                cycles += 1
            except StoreError:
                raise
            except Exception as exc:
                logger.exception("SESSION_CYCLE_ERROR")
                await store.append_log(f"Session cycle error: {str(exc)[:60]}", LOG_ERROR)

            delay = max(float(run_config.delay_seconds), self.min_delay)
            wait_for = min(delay, self.max_runtime - _elapsed())
            if wait_for <= 0:
                break
            await self._sleep(wait_for)

        runtime_ms = int(round(_elapsed() * 1000))
        logger.info("SESSION_DONE cycles=%s runtime_ms=%s", cycles, runtime_ms)
        return SessionResult(
            cycles=cycles,
            runtime_ms=runtime_ms,
            message="Session complete. Re-trigger while the run state says running.",
        )


@dataclass
class ClientLoopSettings:
    launchpad: str
    agent: str
    chain: str
    wallet: str
    max_deployments: int = 10
    delay_seconds: float = 30.0
    min_volume: float = 0.0
    existing_api_key: str = field(default="", repr=False)


@dataclass
class ClientStats:
    launched: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class ClientLoop:
    """Foreground launch loop with cooperative cancellation.

    `stop()` only sets the cancel event. It is checked between candidates and
    ends any pending sleep, but never interrupts a deploy already in flight.
    """

    def __init__(
        self,
        source: TokenSource,
        protocol: DeploymentProtocol,
        settings: ClientLoopSettings,
        *,
        feed: DeployedTokensFeed | None = None,
        cancel: asyncio.Event | None = None,
        launched: set[str] | None = None,
        source_index: int = 0,
        empty_backoff_seconds: float | None = None,
        error_backoff_seconds: float | None = None,
        max_logs: int | None = None,
        max_batches: int | None = None,
        on_log: Callable[[LogEntry], None] | None = None,
    ) -> None:
        self.source = source
        self.protocol = protocol
        self.settings = settings
        self.feed = feed
        self.cancel = cancel or asyncio.Event()
        self.launched: set[str] = set(launched or ())
        self.source_index = int(source_index)
        self.empty_backoff = float(
            config.CLIENT_EMPTY_BATCH_BACKOFF_SECONDS if empty_backoff_seconds is None else empty_backoff_seconds
        )
        self.error_backoff = float(
            config.CLIENT_ERROR_BACKOFF_SECONDS if error_backoff_seconds is None else error_backoff_seconds
        )
        self.logs: deque[LogEntry] = deque(maxlen=max(1, int(max_logs or config.CLIENT_MAX_LOGS)))
        self.max_batches = max_batches
        self.stats = ClientStats()
        self._on_log = on_log

    def stop(self) -> None:
        self.cancel.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def _log(self, message: str, kind: str = LOG_INFO) -> None:
        entry = LogEntry(time=wall_clock(), message=message, kind=kind)
        self.logs.append(entry)
        if self._on_log is not None:
            self._on_log(entry)

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0 or self.cancelled:
            return
        try:
            await asyncio.wait_for(self.cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _deploy(self, candidate: Candidate) -> bool:
        symbol = candidate.symbol.upper()
        token = dataclasses.replace(
            candidate,
            symbol=symbol,
            description=candidate.description or f"${symbol} - {candidate.name} token. Community-driven memecoin.",
        )
        target = DeployTarget(
            launchpad=self.settings.launchpad,
            agent=self.settings.agent,
            wallet=self.settings.wallet,
            chain=self.settings.chain,
            existing_api_key=self.settings.existing_api_key,
        )
        outcome = await self.protocol.deploy(token, target)
        if outcome.success:
            self._log(f"Deployed {symbol}! Post: {outcome.post_url or outcome.post_id}", LOG_SUCCESS)
            if self.feed is not None:
                await self.feed.publish(token, outcome, launchpad=target.launchpad, agent=target.agent)
            return True
        self._log(f"Deploy failed for {symbol}: {outcome.message}", LOG_ERROR)
        return False

    async def run(self) -> ClientStats:
        s = self.settings
        total = 0
        batches = 0
        self._log(
            f"Auto-launch started: {s.launchpad} via {s.agent} | Chain: {s.chain} | "
            f"Max: {s.max_deployments} | Wallet: {s.wallet[:8]}..."
        )
        while not self.cancelled and total < s.max_deployments:
            if self.max_batches is not None and batches >= self.max_batches:
                break
            batches += 1
            self._log(f"Fetching tokens (source #{self.source_index + 1})...")
            result = await self.source.fetch(
                SELECTOR_ROTATE,
                SourceFilters(min_volume=s.min_volume, source_index=self.source_index, chain=s.chain),
            )
            self.source_index = result.next_source_index
            if result.error:
                self._log(f"Fetch error: {result.error}, retrying in {self.error_backoff:.0f}s", LOG_ERROR)
                await self._pause(self.error_backoff)
                continue
            self._log(f"Source: {result.source_label} | Found {len(result.candidates)} tokens")
            if not result.candidates:
                self._log("No tokens found from this source, rotating...", LOG_SKIP)
                await self._pause(self.empty_backoff)
                continue

            for candidate in result.candidates:
                if self.cancelled or total >= s.max_deployments:
                    break
                key = candidate.key
                if key in self.launched:
                    self._log(f"Skip {candidate.symbol} (already launched)", LOG_SKIP)
                    self.stats.skipped += 1
                    continue
                if candidate.chain != s.chain and candidate.chain != config.WILDCARD_CHAIN:
                    continue

                has_image = candidate.image_url.startswith("http")
                self._log(
                    f"Launching: {candidate.name} (${candidate.symbol}) | Vol: ${candidate.volume_24h:,.0f}"
                    f" | {'Has image' if has_image else 'No image'}"
                )
                try:
                    ok = await self._deploy(candidate)
                except Exception as exc:
                    logger.exception("CLIENT_DEPLOY_ERROR symbol=%s", candidate.symbol)
                    self._log(f"Error on {candidate.symbol}: {exc}", LOG_ERROR)
                    ok = False
                if ok:
                    total += 1
                    self.launched.add(key)
                    self.stats.launched += 1
                else:
                    self.stats.errors += 1

                if not self.cancelled and total < s.max_deployments:
                    self._log(f"Waiting {s.delay_seconds:.0f}s before next...")
                    await self._pause(s.delay_seconds)

        self._log(
            f"Stopped by user. Launched: {total}"
            if self.cancelled
            else f"Auto-launch finished. Launched: {total}/{s.max_deployments}",
            LOG_SUCCESS,
        )
        return self.stats
