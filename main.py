"""Entry point for the auto-launch service and operator CLI."""

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.kv_store import StoreError, create_kv_store
from launcher.drivers import ClientLoop, ClientLoopSettings, SessionDriver, run_timer_tick
from launcher.models import MODE_EDGE, ConfigError
from launcher.services import Services, build_services
from monitor.token_source import SELECTOR_ROTATE, SourceFilters
from web.control_server import ControlServer

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_STORE_ERROR = 3


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token and agent keys in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)


logger = logging.getLogger(__name__)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _cmd_serve(services: Services, args: argparse.Namespace) -> int:
    server = ControlServer(services, host=args.host, port=args.port)
    await server.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await server.stop()


async def _cmd_tick(services: Services, args: argparse.Namespace) -> int:
    outcome = await run_timer_tick(services.orchestrator)
    _emit(outcome.to_dict())
    return EXIT_OK


async def _cmd_scheduler(services: Services, args: argparse.Namespace) -> int:
    interval = max(1, int(args.interval))
    logger.info("SCHEDULER_START interval=%ss", interval)
    while True:
        try:
            await run_timer_tick(services.orchestrator)
        except StoreError as exc:
            # Report and keep ticking; the store may come back.
            logger.error("SCHEDULER_TICK_FAIL code=%s error=%s", exc.code, exc)
        await asyncio.sleep(interval)


async def _cmd_session(services: Services, args: argparse.Namespace) -> int:
    driver = SessionDriver(services.orchestrator)
    while True:
        result = await driver.run_session()
        _emit(result.to_dict())
        if not args.follow:
            return EXIT_OK
        run_config = await services.store.load_config()
        if run_config is None or not run_config.running or run_config.mode != MODE_EDGE:
            return EXIT_OK


async def _cmd_loop(services: Services, args: argparse.Namespace) -> int:
    settings = ClientLoopSettings(
        launchpad=args.launchpad,
        agent=args.agent,
        chain=args.chain,
        wallet=args.wallet,
        max_deployments=args.max,
        delay_seconds=args.delay,
        min_volume=args.min_volume,
        existing_api_key=args.api_key or "",
    )
    loop = ClientLoop(
        services.source,
        services.protocol,
        settings,
        feed=services.feed,
        max_batches=args.batches,
        on_log=lambda entry: print(f"[{entry.time}] {entry.kind.upper():7} {entry.message}"),
    )
    try:
        stats = await loop.run()
    except asyncio.CancelledError:
        loop.stop()
        raise
    _emit(stats.to_dict())
    return EXIT_OK


async def _cmd_start(services: Services, args: argparse.Namespace) -> int:
    settings = {
        key: value
        for key, value in {
            "mode": args.mode,
            "launchpad": args.launchpad,
            "agent": args.agent,
            "chain": args.chain,
            "wallet": args.wallet,
            "source": args.source,
            "trend_filter": args.trend_filter,
            "delay_seconds": args.delay,
            "max_deployments": args.max,
            "chain_filter": args.chain_filter,
        }.items()
        if value is not None
    }
    run_config = await services.orchestrator.start(settings)
    _emit({"success": True, "config": run_config.to_dict()})
    return EXIT_OK


async def _cmd_stop(services: Services, args: argparse.Namespace) -> int:
    stopped = await services.orchestrator.stop()
    _emit({"success": True, "stopped": stopped})
    return EXIT_OK


async def _cmd_clear(services: Services, args: argparse.Namespace) -> int:
    await services.orchestrator.clear()
    _emit({"success": True, "message": "Cleared"})
    return EXIT_OK


async def _cmd_status(services: Services, args: argparse.Namespace) -> int:
    _emit(await services.orchestrator.status())
    return EXIT_OK


async def _cmd_fetch(services: Services, args: argparse.Namespace) -> int:
    result = await services.source.fetch(
        args.source,
        SourceFilters(
            min_volume=args.min_volume,
            trend_filter=args.trend_filter or "",
            source_index=args.source_index,
            chain=args.chain or "",
        ),
    )
    _emit(result.to_dict())
    return EXIT_OK


COMMANDS = {
    "serve": _cmd_serve,
    "tick": _cmd_tick,
    "scheduler": _cmd_scheduler,
    "session": _cmd_session,
    "loop": _cmd_loop,
    "start": _cmd_start,
    "stop": _cmd_stop,
    "clear": _cmd_clear,
    "status": _cmd_status,
    "fetch": _cmd_fetch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="launchpad", description="Meme-token auto-launch orchestrator")
    parser.add_argument("--backend", default=None, help="KV backend override: file, sql, redis, memory")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the HTTP control server")
    serve.add_argument("--host", default=config.CONTROL_HOST)
    serve.add_argument("--port", type=int, default=config.CONTROL_PORT)

    sub.add_parser("tick", help="run one orchestrator step")

    scheduler = sub.add_parser("scheduler", help="tick on a fixed interval in-process")
    scheduler.add_argument("--interval", type=int, default=config.SCHEDULER_INTERVAL_SECONDS)

    session = sub.add_parser("session", help="run one bounded session (edge mode)")
    session.add_argument("--follow", action="store_true", help="re-trigger sessions while the run is active")

    loop = sub.add_parser("loop", help="foreground launch loop")
    loop.add_argument("--launchpad", default=config.DEFAULT_LAUNCHPAD)
    loop.add_argument("--agent", default=config.DEFAULT_AGENT)
    loop.add_argument("--chain", default=config.DEFAULT_CHAIN)
    loop.add_argument("--wallet", default=config.DEFAULT_WALLET)
    loop.add_argument("--max", type=int, default=10)
    loop.add_argument("--delay", type=float, default=float(config.DEFAULT_DELAY_SECONDS))
    loop.add_argument("--min-volume", dest="min_volume", type=float, default=0.0)
    loop.add_argument("--api-key", dest="api_key", default=None)
    loop.add_argument("--batches", type=int, default=None, help="stop after this many source fetches")

    start = sub.add_parser("start", help="start an unattended run (replaces any previous run)")
    start.add_argument("--mode", default=None)
    start.add_argument("--launchpad", default=None)
    start.add_argument("--agent", default=None)
    start.add_argument("--chain", default=None)
    start.add_argument("--wallet", default=None)
    start.add_argument("--source", default=None)
    start.add_argument("--trend-filter", dest="trend_filter", default=None)
    start.add_argument("--delay", type=int, default=None)
    start.add_argument("--max", type=int, default=None)
    start.add_argument("--chain-filter", dest="chain_filter", action="store_true", default=None)

    sub.add_parser("stop", help="stop the unattended run")
    sub.add_parser("clear", help="delete run config and logs")
    sub.add_parser("status", help="print run config and logs")

    fetch = sub.add_parser("fetch", help="fetch one candidate batch")
    fetch.add_argument("--source", default=SELECTOR_ROTATE)
    fetch.add_argument("--source-index", dest="source_index", type=int, default=0)
    fetch.add_argument("--min-volume", dest="min_volume", type=float, default=0.0)
    fetch.add_argument("--trend-filter", dest="trend_filter", default=None)
    fetch.add_argument("--chain", default=None)
    return parser


async def run(args: argparse.Namespace) -> int:
    try:
        kv = create_kv_store(args.backend)
    except ValueError as exc:
        logger.error("CONFIG_ERROR %s", exc)
        return EXIT_CONFIG_ERROR
    services = build_services(kv)
    try:
        return await COMMANDS[args.command](services, args)
    except ConfigError as exc:
        logger.error("CONFIG_ERROR %s", exc)
        return EXIT_CONFIG_ERROR
    except StoreError as exc:
        logger.error("STORE_ERROR code=%s error=%s", exc.code, exc)
        return EXIT_STORE_ERROR
    finally:
        await services.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
