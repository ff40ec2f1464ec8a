"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_LAUNCHPAD_ENV_FILE = os.getenv("LAUNCHPAD_ENV_FILE", "").strip()
if _LAUNCHPAD_ENV_FILE:
    _env_path = Path(_LAUNCHPAD_ENV_FILE).expanduser()
    if not _env_path.is_absolute():
        _env_path = (Path.cwd() / _env_path).resolve()
    if not _env_path.exists():
        raise FileNotFoundError(f"LAUNCHPAD_ENV_FILE does not exist: {_env_path}")
    if not _env_path.is_file():
        raise IsADirectoryError(f"LAUNCHPAD_ENV_FILE is not a file: {_env_path}")
    try:
        _load_dotenv_safe(str(_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load LAUNCHPAD_ENV_FILE '{_env_path}': {exc}") from exc


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


# Upstream market-data APIs
GECKO_API = os.getenv("GECKO_API", "https://api.geckoterminal.com/api/v2")
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com")
COINGECKO_API = os.getenv("COINGECKO_API", "https://api.coingecko.com/api/v3")
SOURCE_MAX_POOLS = max(1, int(os.getenv("SOURCE_MAX_POOLS", "25")))
TRENDING_MAX_TOKENS = max(1, int(os.getenv("TRENDING_MAX_TOKENS", "30")))
TRENDING_PER_FEED = max(1, int(os.getenv("TRENDING_PER_FEED", "10")))
FETCH_TIMEOUT_SECONDS = max(1.0, float(os.getenv("FETCH_TIMEOUT_SECONDS", "15")))
FETCH_RETRIES = max(1, int(os.getenv("FETCH_RETRIES", "2")))

# Posting agents and launchpads
MOLTX_API = os.getenv("MOLTX_API", "https://moltx.io/v1")
FOURCLAW_ORG_API = os.getenv("FOURCLAW_ORG_API", "https://www.4claw.org/api/v1")
MOLTBOOK_API = os.getenv("MOLTBOOK_API", "https://www.moltbook.com/api/v1")
FOURCLAW_FUN_API = os.getenv("FOURCLAW_FUN_API", "https://api.4claw.fun/api")
CLAWNCH_API = os.getenv("CLAWNCH_API", "https://clawn.ch/api")
KIBU_API = os.getenv("KIBU_API", "https://kibu.bot/api")
AGENT_AVATAR_EMOJI = os.getenv("AGENT_AVATAR_EMOJI", "\U0001F99E")
REGISTER_TIMEOUT_SECONDS = max(1.0, float(os.getenv("REGISTER_TIMEOUT_SECONDS", "20")))
WALLET_LINK_TIMEOUT_SECONDS = max(1.0, float(os.getenv("WALLET_LINK_TIMEOUT_SECONDS", "15")))
POST_TIMEOUT_SECONDS = max(1.0, float(os.getenv("POST_TIMEOUT_SECONDS", "20")))
TRIGGER_TIMEOUT_SECONDS = max(1.0, float(os.getenv("TRIGGER_TIMEOUT_SECONDS", "10")))
DEFAULT_TAX_FUNDS = int(os.getenv("DEFAULT_TAX_FUNDS", "97"))
DEFAULT_TAX_BURN = int(os.getenv("DEFAULT_TAX_BURN", "1"))
DEFAULT_TAX_HOLDERS = int(os.getenv("DEFAULT_TAX_HOLDERS", "1"))
DEFAULT_TAX_LP = int(os.getenv("DEFAULT_TAX_LP", "1"))

# Shared HTTP client
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "geckoterminal:25/60,dexscreener:250/60,coingecko:20/60,moltx:30/60",
    )
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv("HTTP_SOURCE_429_COOLDOWNS", "geckoterminal:60,coingecko:60")
)

# Run state store
KV_BACKEND = os.getenv("KV_BACKEND", "file").strip().lower()
KV_FILE_PATH = os.getenv("KV_FILE_PATH", os.path.join("data", "run_state.json"))
KV_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("KV_LOCK_TIMEOUT_SECONDS", "2.0")))
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///launchpad.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_SOCKET_TIMEOUT_SECONDS = max(0.1, float(os.getenv("REDIS_SOCKET_TIMEOUT_SECONDS", "5")))
RUN_CONFIG_KEY = os.getenv("RUN_CONFIG_KEY", "cloud-auto-launch")
RUN_LOG_KEY = os.getenv("RUN_LOG_KEY", "cloud-auto-launch-logs")
MAX_LOGS = max(1, int(os.getenv("MAX_LOGS", "100")))

# Orchestrator defaults for `start`
DEFAULT_MODE = os.getenv("DEFAULT_MODE", "cron").strip().lower()
DEFAULT_LAUNCHPAD = os.getenv("DEFAULT_LAUNCHPAD", "kibu").strip().lower()
DEFAULT_AGENT = os.getenv("DEFAULT_AGENT", "4claw_org").strip().lower()
DEFAULT_CHAIN = os.getenv("DEFAULT_CHAIN", "bsc").strip().lower()
DEFAULT_SOURCE = os.getenv("DEFAULT_SOURCE", "bsc").strip().lower()
DEFAULT_WALLET = os.getenv("DEFAULT_WALLET", "0x9c6111C77CBE545B9703243F895EB593f2721C7a").strip()
DEFAULT_DELAY_SECONDS = max(0, int(os.getenv("DEFAULT_DELAY_SECONDS", "30")))
DEFAULT_MAX_DEPLOYMENTS = max(1, int(os.getenv("DEFAULT_MAX_DEPLOYMENTS", "50")))
WILDCARD_CHAIN = os.getenv("WILDCARD_CHAIN", "solana").strip().lower()

# Drivers
SCHEDULER_INTERVAL_SECONDS = max(5, int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60")))
SESSION_MAX_RUNTIME_SECONDS = max(1.0, float(os.getenv("SESSION_MAX_RUNTIME_SECONDS", "55")))
SESSION_MIN_DELAY_SECONDS = max(0.0, float(os.getenv("SESSION_MIN_DELAY_SECONDS", "10")))
CLIENT_EMPTY_BATCH_BACKOFF_SECONDS = max(0.0, float(os.getenv("CLIENT_EMPTY_BATCH_BACKOFF_SECONDS", "5")))
CLIENT_ERROR_BACKOFF_SECONDS = max(0.0, float(os.getenv("CLIENT_ERROR_BACKOFF_SECONDS", "10")))
CLIENT_MAX_LOGS = max(1, int(os.getenv("CLIENT_MAX_LOGS", "200")))

# Control server
CONTROL_HOST = os.getenv("CONTROL_HOST", "127.0.0.1")
CONTROL_PORT = int(os.getenv("CONTROL_PORT", "8080"))
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Health check
HEALTH_CHECK_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HEALTH_CHECK_TIMEOUT_SECONDS", "8")))
HEALTH_CHECK_SLOW_MS = max(1, int(os.getenv("HEALTH_CHECK_SLOW_MS", "5000")))

# Deployed tokens feed / Telegram notices
DEPLOYED_FEED_MAX = max(1, int(os.getenv("DEPLOYED_FEED_MAX", "50")))
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_NOTIFY_CHAT_ID = os.getenv("TELEGRAM_NOTIFY_CHAT_ID", "").strip()
TELEGRAM_NOTIFY_ENABLED = _env_flag("TELEGRAM_NOTIFY_ENABLED", "false")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
