"""Operator HTTP surface: run control, tick endpoints, feeds and direct deploy."""

from __future__ import annotations

import hmac
import logging
from typing import Any

from aiohttp import web

import config
from database.kv_store import StoreError
from launcher.drivers import SessionDriver, run_timer_tick
from launcher.models import Candidate, ConfigError, DeployTarget, PreconditionError, TaxSplit
from launcher.protocol import DeploymentProtocol
from launcher.services import Services
from monitor.health_check import run_health_check
from monitor.launches import UnknownLaunchSource, fetch_recent_launches
from monitor.token_source import SELECTOR_ROTATE, SourceFilters
from monitor.trending import TREND_FILTERS

logger = logging.getLogger(__name__)


def _store_error(exc: StoreError) -> web.Response:
    logger.error("STORE_ERROR code=%s error=%s", exc.code, exc)
    return web.json_response({"error": str(exc), "code": exc.code}, status=500)


def _int_param(raw: str | None, default: int = 0) -> int:
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _float_param(raw: str | None, default: float = 0.0) -> float:
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def parse_deploy_request(body: dict[str, Any]) -> tuple[Candidate, DeployTarget]:
    token = body.get("token") or {}
    if not isinstance(token, dict):
        raise PreconditionError("token must be an object")
    launchpad = str(body.get("launchpad") or "")
    agent = str(body.get("agent") or "")
    if not launchpad or not agent or not token.get("name") or not token.get("symbol"):
        raise PreconditionError("Missing required fields")
    chain = str(token.get("chain") or "")
    tax = None
    if token.get("tax"):
        tax = TaxSplit(
            tax=int(token["tax"]),
            funds=int(token.get("funds") or config.DEFAULT_TAX_FUNDS),
            burn=int(token.get("burn") or config.DEFAULT_TAX_BURN),
            holders=int(token.get("holders") or config.DEFAULT_TAX_HOLDERS),
            lp=int(token.get("lp") or config.DEFAULT_TAX_LP),
        )
    candidate = Candidate(
        name=str(token["name"]),
        symbol=str(token["symbol"]),
        chain=chain,
        source_label="manual",
        image_url=str(token.get("image") or ""),
        website=str(token.get("website") or ""),
        twitter=str(token.get("twitter") or ""),
        telegram=str(token.get("telegram") or ""),
        description=str(token.get("description") or ""),
    )
    target = DeployTarget(
        launchpad=launchpad,
        agent=agent,
        wallet=str(token.get("wallet") or ""),
        chain=chain,
        existing_api_key=str(body.get("existingApiKey") or ""),
        submolt=str(body.get("submolt") or ""),
        tax=tax,
    )
    return candidate, target


class ControlServer:
    def __init__(self, services: Services, host: str | None = None, port: int | None = None) -> None:
        self.services = services
        self.host = host or config.CONTROL_HOST
        self.port = int(port or config.CONTROL_PORT)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/cloud-launch", self._handle_status)
        app.router.add_post("/api/cloud-launch", self._handle_control)
        app.router.add_get("/api/cloud-launch/cron", self._handle_cron)
        app.router.add_get("/api/cloud-launch/edge-poll", self._handle_edge_poll)
        app.router.add_get("/api/auto-launch/fetch-tokens", self._handle_fetch_tokens)
        app.router.add_get("/api/auto-launch/fetch-trending", self._handle_fetch_trending)
        app.router.add_post("/api/deploy-token", self._handle_deploy)
        app.router.add_get("/api/deployed-tokens", self._handle_deployed)
        app.router.add_get("/api/health-check", self._handle_health)
        app.router.add_get("/api/launches", self._handle_launches)
        return app

    async def start(self) -> None:
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("Control server listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()

    def _authorized(self, request: web.Request) -> bool:
        secret = config.CRON_SECRET
        if not secret:
            return True
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header, f"Bearer {secret}")

    async def _handle_status(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(await self.services.orchestrator.status())
        except StoreError as exc:
            return _store_error(exc)

    async def _handle_control(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except Exception:
            return web.json_response({"error": "invalid_json"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "invalid_json"}, status=400)

        orchestrator = self.services.orchestrator
        action = str(body.get("action") or "")
        try:
            if action == "start":
                run_config = await orchestrator.start(body)
                return web.json_response({"success": True, "config": run_config.to_dict()})
            if action == "stop":
                stopped = await orchestrator.stop()
                return web.json_response({"success": True, "stopped": stopped, "message": "Stopped"})
            if action == "clear":
                await orchestrator.clear()
                return web.json_response({"success": True, "message": "Cleared"})
        except ConfigError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except StoreError as exc:
            return _store_error(exc)
        return web.json_response({"error": "Invalid action"}, status=400)

    async def _handle_cron(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        try:
            outcome = await run_timer_tick(self.services.orchestrator)
        except StoreError as exc:
            return _store_error(exc)
        return web.json_response(outcome.to_dict())

    async def _handle_edge_poll(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        try:
            result = await SessionDriver(self.services.orchestrator).run_session()
        except StoreError as exc:
            return _store_error(exc)
        return web.json_response(result.to_dict())

    async def _handle_fetch_tokens(self, request: web.Request) -> web.Response:
        q = request.query
        filters = SourceFilters(
            min_volume=_float_param(q.get("minVolume")),
            trend_filter=q.get("trendFilter", ""),
            source_index=_int_param(q.get("sourceIndex")),
            chain=q.get("chain", ""),
        )
        result = await self.services.source.fetch(q.get("source") or SELECTOR_ROTATE, filters)
        # 200 even on upstream failure so client loops keep rotating.
        return web.json_response(result.to_dict())

    async def _handle_fetch_trending(self, request: web.Request) -> web.Response:
        chain = request.query.get("chain", "bsc")
        kind = request.query.get("type", "trending")
        trending = self.services.source.trending
        try:
            if kind == "topics":
                items = await trending.fetch_topics(request.query.get("source", "all"))
                label = "topics"
            elif kind in TREND_FILTERS:
                items, label = await trending.fetch(chain=chain, category=kind)
            else:
                return web.json_response({"error": f"Unknown type: {kind}", "tokens": []}, status=400)
        except ValueError as exc:
            return web.json_response({"error": str(exc), "tokens": []}, status=400)
        except Exception as exc:
            logger.warning("TRENDING_FAIL chain=%s type=%s error=%s", chain, kind, exc)
            return web.json_response({"error": "Failed to fetch trending tokens", "tokens": []}, status=500)
        return web.json_response(
            {"tokens": [c.to_dict() for c in items], "count": len(items), "chain": chain, "type": kind, "source": label}
        )

    async def _handle_deploy(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except Exception:
            return web.json_response({"error": "invalid_json"}, status=400)
        try:
            candidate, target = parse_deploy_request(body if isinstance(body, dict) else {})
            DeploymentProtocol.check_preconditions(candidate, target)
        except (PreconditionError, TypeError, ValueError) as exc:
            return web.json_response({"error": str(exc)}, status=400)

        outcome = await self.services.protocol.deploy(candidate, target)
        if outcome.success:
            await self.services.feed.publish(candidate, outcome, launchpad=target.launchpad, agent=target.agent)
            return web.json_response(outcome.to_dict(include_credentials=True))
        return web.json_response(outcome.to_dict(), status=500)

    async def _handle_deployed(self, request: web.Request) -> web.Response:
        return web.json_response({"tokens": [item.to_dict() for item in self.services.feed.items()]})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(await run_health_check(self.services.http))

    async def _handle_launches(self, request: web.Request) -> web.Response:
        source = request.query.get("source", "kibu-bsc")
        try:
            launches = await fetch_recent_launches(self.services.http, source)
        except UnknownLaunchSource:
            return web.json_response({"error": "Invalid source", "launches": []}, status=400)
        except LookupError:
            return web.json_response({"error": f"Failed to fetch {source} launches", "launches": []}, status=500)
        return web.json_response({"launches": launches, "source": source})
