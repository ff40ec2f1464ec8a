"""Unattended auto-launch state machine.

`step()` is the only unit of progress: it deploys at most one candidate per
call and re-reads the stored RunConfig before writing anything back. Nothing
here locks the store, so two overlapping steps can both deploy from the same
snapshot. That window is narrow because of the inter-deployment delay and is
left open on purpose; see DESIGN.md.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable

import config
from launcher.agents import AGENTS, get_agent
from launcher.content import LAUNCHPADS
from launcher.deployed_feed import DeployedTokensFeed
from launcher.models import (
    LOG_ERROR,
    LOG_INFO,
    LOG_SKIP,
    LOG_SUCCESS,
    RUN_MODES,
    SKIP_MAX_REACHED,
    SKIP_NO_CANDIDATES,
    SKIP_NO_ELIGIBLE,
    SKIP_NOT_RUNNING,
    Candidate,
    ConfigError,
    DeploymentOutcome,
    DeployTarget,
    RunConfig,
    StepOutcome,
)
from launcher.protocol import DeploymentProtocol
from launcher.run_state import RunStateStore, now_ms
from monitor.images import ImagePredicate, is_deployable_image
from monitor.token_source import SELECTOR_ROTATE, SourceFilters, TokenSource
from monitor.trending import TREND_FILTERS
from utils.keys import normalize_id

logger = logging.getLogger(__name__)


def _pick(settings: dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = settings.get(name)
        if value not in (None, ""):
            return value
    return default


def _as_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field} must be an integer, got {value!r}") from exc


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def build_run_config(settings: dict[str, Any], started_at: int) -> RunConfig:
    """Validate operator start settings (snake_case or camelCase) into a fresh RunConfig."""
    mode = normalize_id(_pick(settings, "mode", default=config.DEFAULT_MODE))
    if mode not in RUN_MODES:
        raise ConfigError(f"mode must be one of {', '.join(RUN_MODES)}, got {mode!r}")
    launchpad = normalize_id(_pick(settings, "launchpad", default=config.DEFAULT_LAUNCHPAD))
    if launchpad not in LAUNCHPADS:
        raise ConfigError(f"Unknown launchpad: {launchpad}")
    agent = normalize_id(_pick(settings, "agent", default=config.DEFAULT_AGENT))
    if agent not in AGENTS:
        raise ConfigError(f"Unknown agent: {agent}")
    if get_agent(agent).requires_user_key:
        raise ConfigError(f"Agent {agent} needs a user-supplied API key and cannot run unattended")
    source = normalize_id(_pick(settings, "source", default=config.DEFAULT_SOURCE))
    if not TokenSource.is_known_selector(source):
        raise ConfigError(f"Unknown source selector: {source}")
    trend_filter = normalize_id(_pick(settings, "trend_filter", "trendFilter", default=""))
    if trend_filter and trend_filter not in TREND_FILTERS:
        raise ConfigError(f"Unknown trend filter: {trend_filter}")
    delay = _as_int(_pick(settings, "delay_seconds", "delaySeconds", default=config.DEFAULT_DELAY_SECONDS), "delay_seconds")
    ceiling = _as_int(
        _pick(settings, "max_deployments", "maxDeployments", "maxLaunches", default=config.DEFAULT_MAX_DEPLOYMENTS),
        "max_deployments",
    )
    if delay < 0:
        raise ConfigError("delay_seconds must be >= 0")
    if ceiling < 1:
        raise ConfigError("max_deployments must be >= 1")
    return RunConfig(
        running=True,
        mode=mode,
        launchpad=launchpad,
        agent=agent,
        chain=normalize_id(_pick(settings, "chain", default=config.DEFAULT_CHAIN)),
        wallet=str(_pick(settings, "wallet", default=config.DEFAULT_WALLET)),
        source=source,
        delay_seconds=delay,
        max_deployments=ceiling,
        started_at=int(started_at),
        trend_filter=trend_filter,
        chain_filter=_as_flag(_pick(settings, "chain_filter", "chainFilter", default=False)),
    )


class Orchestrator:
    def __init__(
        self,
        store: RunStateStore,
        source: TokenSource,
        protocol: DeploymentProtocol,
        *,
        image_predicate: ImagePredicate = is_deployable_image,
        feed: DeployedTokensFeed | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.source = source
        self.protocol = protocol
        self.image_predicate = image_predicate
        self.feed = feed
        self._clock = clock

    # Control surface

    async def start(self, settings: dict[str, Any]) -> RunConfig:
        run_config = build_run_config(settings, self._clock())
        await self.store.save_config(run_config)
        await self.store.clear_logs()
        await self.store.append_log(f"Auto-launch started ({run_config.mode} mode)", LOG_SUCCESS)
        logger.info(
            "RUN_START mode=%s launchpad=%s agent=%s source=%s max=%s",
            run_config.mode,
            run_config.launchpad,
            run_config.agent,
            run_config.source,
            run_config.max_deployments,
        )
        return run_config

    async def stop(self) -> bool:
        """Flip `running` off. Returns False when there was nothing running."""
        run_config = await self.store.load_config()
        if run_config is None or not run_config.running:
            return False
        run_config.running = False
        run_config.stopped_at = self._clock()
        await self.store.save_config(run_config)
        await self.store.append_log("Auto-launch stopped by user", LOG_INFO)
        logger.info("RUN_STOP total=%s", run_config.total_deployed)
        return True

    async def clear(self) -> None:
        await self.store.clear()
        logger.info("RUN_CLEAR")

    async def status(self) -> dict[str, Any]:
        run_config = await self.store.load_config()
        logs = await self.store.logs()
        return {
            "config": run_config.to_dict() if run_config is not None else None,
            "logs": [entry.to_dict() for entry in logs],
        }

    # Tick surface

    async def _apply(self, started_at: int, mutate: Callable[[RunConfig], None]) -> RunConfig | None:
        """Re-read the record and apply `mutate` only if it is still the same run."""
        fresh = await self.store.load_config()
        if fresh is None or fresh.started_at != started_at:
            return None
        mutate(fresh)
        await self.store.save_config(fresh)
        return fresh

    def _eligible(self, run_config: RunConfig, candidates: list[Candidate]) -> tuple[Candidate | None, int]:
        no_image = 0
        for candidate in candidates:
            if run_config.has_key(candidate.key):
                continue
            if not self.image_predicate(candidate.image_url):
                no_image += 1
                continue
            if run_config.chain_filter and candidate.chain not in (run_config.chain, config.WILDCARD_CHAIN):
                continue
            return candidate, no_image
        return None, no_image

    async def step(self) -> StepOutcome:
        run_config = await self.store.load_config()
        if run_config is None or not run_config.running:
            return StepOutcome(
                skipped=SKIP_NOT_RUNNING,
                total_deployed=run_config.total_deployed if run_config else 0,
                max_deployments=run_config.max_deployments if run_config else 0,
            )

        if run_config.total_deployed >= run_config.max_deployments:
            run_config.running = False
            run_config.stopped_at = self._clock()
            await self.store.save_config(run_config)
            await self.store.append_log(
                f"Max deployments reached ({run_config.total_deployed}/{run_config.max_deployments}). Auto-stopped.",
                LOG_SUCCESS,
            )
            logger.info("RUN_MAX_REACHED total=%s", run_config.total_deployed)
            return StepOutcome(
                skipped=SKIP_MAX_REACHED,
                total_deployed=run_config.total_deployed,
                max_deployments=run_config.max_deployments,
            )

        started_at = run_config.started_at
        await self.store.append_log(f"Tick: fetching candidates from {run_config.source}...", LOG_INFO)
        result = await self.source.fetch(
            run_config.source,
            SourceFilters(
                trend_filter=run_config.trend_filter,
                source_index=run_config.source_index,
                chain=run_config.chain,
            ),
        )
        rotated = run_config.source == SELECTOR_ROTATE
        next_index = result.next_source_index if rotated else run_config.source_index
        if result.error:
            await self.store.append_log(f"Source error: {result.error}", LOG_ERROR)

        def _touch(fresh: RunConfig) -> None:
            fresh.last_run_at = self._clock()
            fresh.source_index = next_index

        if not result.candidates:
            await self.store.append_log("No candidates this cycle", LOG_SKIP)
            fresh = await self._apply(started_at, _touch)
            return self._outcome(fresh or run_config, skipped=SKIP_NO_CANDIDATES)

        candidate, no_image = self._eligible(run_config, result.candidates)
        if no_image:
            await self.store.append_log(f"Skipped {no_image} candidate(s) without a real image", LOG_SKIP)
        if candidate is None:
            await self.store.append_log("No eligible candidate this cycle", LOG_SKIP)
            fresh = await self._apply(started_at, _touch)
            return self._outcome(fresh or run_config, skipped=SKIP_NO_ELIGIBLE)

        outcome = await self._deploy(run_config, candidate)
        key = candidate.key

        def _record(fresh: RunConfig) -> None:
            _touch(fresh)
            if outcome.success and not fresh.has_key(key):
                fresh.total_deployed += 1
                fresh.launched_keys.append(key)

        fresh = await self._apply(started_at, _record)
        if fresh is None:
            logger.warning(
                "DEPLOY_RESULT_DROPPED symbol=%s success=%s reason=run_replaced_or_cleared",
                candidate.symbol,
                outcome.success,
            )
            return self._outcome(run_config, deployed=outcome.success, symbol=candidate.symbol, message=outcome.message)

        if outcome.success:
            await self.store.append_log(
                f"Deployed ${candidate.symbol}! Post: {outcome.post_url or outcome.post_id}",
                LOG_SUCCESS,
            )
            if self.feed is not None:
                await self.feed.publish(candidate, outcome, launchpad=run_config.launchpad, agent=run_config.agent)
        else:
            await self.store.append_log(f"Deploy failed: {outcome.message}", LOG_ERROR)
        return self._outcome(fresh, deployed=outcome.success, symbol=candidate.symbol, message=outcome.message)

    async def _deploy(self, run_config: RunConfig, candidate: Candidate) -> DeploymentOutcome:
        if not candidate.description:
            candidate = dataclasses.replace(candidate, description=f"${candidate.symbol} token")
        target = DeployTarget(
            launchpad=run_config.launchpad,
            agent=run_config.agent,
            wallet=run_config.wallet,
            chain=run_config.chain,
        )
        await self.store.append_log(f'Deploying ${candidate.symbol} "{candidate.name}"...', LOG_INFO)
        # Bounded by the per-call timeouts inside deploy(); never cancelled once a post is out.
        try:
            return await self.protocol.deploy(candidate, target)
        except Exception as exc:
            logger.exception("DEPLOY_ERROR symbol=%s", candidate.symbol)
            return DeploymentOutcome(success=False, message=f"Deploy error: {str(exc)[:80]}")

    @staticmethod
    def _outcome(run_config: RunConfig, **fields: Any) -> StepOutcome:
        return StepOutcome(
            total_deployed=run_config.total_deployed,
            max_deployments=run_config.max_deployments,
            **fields,
        )
