"""Shared data shapes for the auto-launch core."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from utils.keys import dedup_key, normalize_id

MODE_CRON = "cron"  # external timer owns ticking
MODE_EDGE = "edge"  # self-rescheduling bounded sessions
RUN_MODES = (MODE_CRON, MODE_EDGE)

LOG_INFO = "info"
LOG_SUCCESS = "success"
LOG_ERROR = "error"
LOG_SKIP = "skip"
LOG_KINDS = (LOG_INFO, LOG_SUCCESS, LOG_ERROR, LOG_SKIP)

SKIP_NOT_RUNNING = "not running"
SKIP_MAX_REACHED = "max reached"
SKIP_NO_CANDIDATES = "no candidates"
SKIP_NO_ELIGIBLE = "no eligible candidate"


class ConfigError(ValueError):
    """Invalid run or deploy settings supplied by an operator."""


class PreconditionError(ValueError):
    """Deploy attempt rejected before any network call (missing key, unknown target, bad tax)."""


class StepError(RuntimeError):
    """A fatal deploy pipeline step failed; message is shown to the operator as-is."""


@dataclass(frozen=True)
class Candidate:
    name: str
    symbol: str
    chain: str
    source_label: str
    image_url: str = ""
    website: str = ""
    twitter: str = ""
    description: str = ""
    volume_24h: float = 0.0
    price_change_24h: float = 0.0
    telegram: str = ""

    @property
    def key(self) -> str:
        return dedup_key(self.symbol, self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "imageUrl": self.image_url or None,
            "website": self.website or None,
            "twitter": self.twitter or None,
            "telegram": self.telegram or None,
            "description": self.description or None,
            "volume24h": self.volume_24h,
            "priceChange24h": self.price_change_24h,
            "chain": self.chain,
            "source": self.source_label,
        }


@dataclass
class TaxSplit:
    """4claw tax settings; the four shares must add up to 100."""

    tax: int
    funds: int = 97
    burn: int = 1
    holders: int = 1
    lp: int = 1

    @property
    def share_total(self) -> int:
        return int(self.funds) + int(self.burn) + int(self.holders) + int(self.lp)


@dataclass
class DeployTarget:
    launchpad: str
    agent: str
    wallet: str
    chain: str = ""
    existing_api_key: str = field(default="", repr=False)
    submolt: str = ""
    tax: TaxSplit | None = None

    def __post_init__(self) -> None:
        self.launchpad = normalize_id(self.launchpad)
        self.agent = normalize_id(self.agent)
        self.chain = normalize_id(self.chain)


@dataclass
class LinkedWallet:
    address: str
    private_key: str = field(repr=False)


@dataclass
class AgentCredentials:
    """Freshly generated identity; handed to the caller once and never stored."""

    api_key: str = field(repr=False)
    agent_handle: str
    linked_wallet: LinkedWallet | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"apiKey": self.api_key, "agentName": self.agent_handle}
        if self.linked_wallet is not None:
            out["evmWallet"] = {
                "address": self.linked_wallet.address,
                "privateKey": self.linked_wallet.private_key,
            }
        return out


@dataclass
class DeploymentOutcome:
    success: bool
    message: str
    log: list[str] = field(default_factory=list)
    post_id: str = ""
    post_url: str = ""
    auto_scanned: bool = False
    credentials: AgentCredentials | None = None

    def to_dict(self, *, include_credentials: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "postId": self.post_id or None,
            "postUrl": self.post_url or None,
            "autoScanned": self.auto_scanned,
            "log": list(self.log),
        }
        if not self.success:
            out["error"] = self.message
        if include_credentials and self.credentials is not None:
            out["credentials"] = self.credentials.to_dict()
        return out


@dataclass
class LogEntry:
    time: str
    message: str
    kind: str = LOG_INFO

    def to_dict(self) -> dict[str, str]:
        return {"time": self.time, "msg": self.message, "type": self.kind}

    @classmethod
    def from_dict(cls, row: Any) -> "LogEntry":
        if not isinstance(row, dict):
            return cls(time="", message=str(row), kind=LOG_INFO)
        kind = str(row.get("type", LOG_INFO) or LOG_INFO)
        return cls(
            time=str(row.get("time", "") or ""),
            message=str(row.get("msg", row.get("message", "")) or ""),
            kind=kind if kind in LOG_KINDS else LOG_INFO,
        )


@dataclass
class RunConfig:
    running: bool
    mode: str
    launchpad: str
    agent: str
    chain: str
    wallet: str
    source: str
    delay_seconds: int
    max_deployments: int
    started_at: int
    total_deployed: int = 0
    trend_filter: str = ""
    chain_filter: bool = False
    source_index: int = 0
    stopped_at: int | None = None
    last_run_at: int | None = None
    launched_keys: list[str] = field(default_factory=list)

    def has_key(self, key: str) -> bool:
        return key in self.launched_keys

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RunConfig":
        def _opt_int(value: Any) -> int | None:
            if value is None or value == "":
                return None
            return int(value)

        mode = normalize_id(payload.get("mode")) or MODE_CRON
        return cls(
            running=bool(payload.get("running", False)),
            mode=mode if mode in RUN_MODES else MODE_CRON,
            launchpad=normalize_id(payload.get("launchpad")),
            agent=normalize_id(payload.get("agent")),
            chain=normalize_id(payload.get("chain")),
            wallet=str(payload.get("wallet", "") or ""),
            source=normalize_id(payload.get("source")),
            delay_seconds=max(0, int(payload.get("delay_seconds", 0) or 0)),
            max_deployments=max(0, int(payload.get("max_deployments", 0) or 0)),
            started_at=int(payload.get("started_at", 0) or 0),
            total_deployed=max(0, int(payload.get("total_deployed", 0) or 0)),
            trend_filter=normalize_id(payload.get("trend_filter")),
            chain_filter=bool(payload.get("chain_filter", False)),
            source_index=max(0, int(payload.get("source_index", 0) or 0)),
            stopped_at=_opt_int(payload.get("stopped_at")),
            last_run_at=_opt_int(payload.get("last_run_at")),
            launched_keys=[str(k) for k in (payload.get("launched_keys") or []) if str(k)],
        )


@dataclass
class StepOutcome:
    deployed: bool = False
    skipped: str = ""
    total_deployed: int = 0
    max_deployments: int = 0
    symbol: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "deployed": self.deployed,
            "totalDeployed": self.total_deployed,
            "maxDeployments": self.max_deployments,
        }
        if self.skipped:
            out["skipped"] = self.skipped
        if self.symbol:
            out["symbol"] = self.symbol
        if self.message:
            out["message"] = self.message
        return out
