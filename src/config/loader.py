"""
Config loader: YAML file -> frozen dataclass tree.

Broker secrets resolved from environment variables (DHAN_CLIENT_ID, DHAN_ACCESS_TOKEN).
Config file holds only non-secret values. Everything here is read once per
agent run and treated as immutable for that run.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from market_data.segments import INSTRUMENT_KINDS

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


class ConfigError(Exception):
    """Raised when a config value is present but unusable."""


@dataclass(frozen=True)
class AgentConfig:
    max_steps_per_run: int = 10
    deadline_seconds: float | None = None


@dataclass(frozen=True)
class MarketHoursConfig:
    open: str = "09:15"
    close: str = "15:30"
    timezone: str = "Asia/Kolkata"
    weekdays_only: bool = True


@dataclass(frozen=True)
class CooldownConfig:
    step: float = 1.0
    option_chain_cache: int = 20
    quote_cache: int = 3
    ohlc_cache: int = 10


@dataclass(frozen=True)
class RiskConfig:
    capital_base: float = 100_000.0
    per_trade_risk_pct: float = 1.0
    target_profit: float = 1_000.0
    max_concurrent_positions: int = 2
    max_daily_loss_pct: float = 3.0
    kill_switch: bool = False


@dataclass(frozen=True)
class BrokerConfig:
    client_id: str = ""
    access_token: str = ""
    base_url: str = ""


@dataclass(frozen=True)
class PlannerConfig:
    host: str = "http://localhost:11434"
    model: str = "phi3:mini"
    timeout: float = 60.0


@dataclass(frozen=True)
class ExecutionConfig:
    live: bool = False
    ledger_path: str = "data/ledger.db"
    idempotency_path: str = "data/idempotency.db"


@dataclass(frozen=True)
class JournalConfig:
    path: str = "data/journal.jsonl"
    echo_stdout: bool = False


@dataclass(frozen=True)
class AlertingConfig:
    structured_logs: bool = True
    webhook_url: str = ""


@dataclass(frozen=True)
class InstrumentConfig:
    """One known instrument: where it trades and what kind it is (EQUITY, INDEX, OPTIDX, ...)."""

    segment: str
    security_id: str
    instrument_type: str
    symbol: str = ""


@dataclass(frozen=True)
class AppConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    market_hours: MarketHoursConfig = field(default_factory=MarketHoursConfig)
    cooldowns: CooldownConfig = field(default_factory=CooldownConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    journal: JournalConfig = field(default_factory=JournalConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    instruments: tuple[InstrumentConfig, ...] = ()

    @property
    def risk_budget(self) -> float:
        """Rupee amount a single trade may put at risk."""
        return self.risk.capital_base * (self.risk.per_trade_risk_pct / 100.0)

    def risk_context(self) -> str:
        r = self.risk
        return (
            f"capital ₹{r.capital_base:g}, risk {r.per_trade_risk_pct:g}%, "
            f"target ₹{r.target_profit:g}, max positions {r.max_concurrent_positions}"
        )


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _flag(value: object, key: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ConfigError(f"{key} must be true or false, got {value!r}")


def _hhmm(value: object, key: str) -> str:
    text = str(value).strip()
    if not _HHMM.match(text):
        raise ConfigError(f"market_hours.{key} must be HH:MM, got {value!r}")
    return text


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    Secrets and switches resolved from environment variables:
      - DHAN_CLIENT_ID, DHAN_ACCESS_TOKEN, DHAN_BASE_URL
      - LIVE_TRADING (overrides execution.live)
      - OLLAMA_HOST, TRADING_AGENT_MODEL (override planner.host / planner.model)
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    return build_config(raw)


def build_config(raw: dict) -> AppConfig:
    """Build an AppConfig from an already-parsed mapping (env vars applied)."""
    ag_raw = raw.get("agent", {}) or {}
    max_steps = int(ag_raw.get("max_steps_per_run", raw.get("max_steps_per_run", 10)))
    if max_steps < 1:
        raise ConfigError(f"agent.max_steps_per_run must be >= 1, got {max_steps}")
    deadline = ag_raw.get("deadline_seconds")
    ag_cfg = AgentConfig(
        max_steps_per_run=max_steps,
        deadline_seconds=float(deadline) if deadline is not None else None,
    )

    mh_raw = raw.get("market_hours", {}) or {}
    mh_cfg = MarketHoursConfig(
        open=_hhmm(mh_raw.get("open", "09:15"), "open"),
        close=_hhmm(mh_raw.get("close", "15:30"), "close"),
        timezone=str(mh_raw.get("timezone", "Asia/Kolkata")),
        weekdays_only=_flag(mh_raw.get("weekdays_only"), "market_hours.weekdays_only", True),
    )

    cd_raw = raw.get("cooldowns", {}) or {}
    cd_cfg = CooldownConfig(
        step=float(cd_raw.get("step", 1.0)),
        option_chain_cache=int(cd_raw.get("option_chain_cache", 20)),
        quote_cache=int(cd_raw.get("quote_cache", 3)),
        ohlc_cache=int(cd_raw.get("ohlc_cache", 10)),
    )
    if cd_cfg.step < 0:
        raise ConfigError(f"cooldowns.step must be >= 0, got {cd_cfg.step}")

    rk_raw = raw.get("risk", {}) or {}
    rk_cfg = RiskConfig(
        capital_base=float(rk_raw.get("capital_base", raw.get("capital_base", 100_000))),
        per_trade_risk_pct=float(rk_raw.get("per_trade_risk_pct", raw.get("per_trade_risk_pct", 1.0))),
        target_profit=float(rk_raw.get("target_profit", raw.get("target_profit", 1_000))),
        max_concurrent_positions=int(
            rk_raw.get("max_concurrent_positions", raw.get("max_concurrent_positions", 2))
        ),
        max_daily_loss_pct=float(rk_raw.get("max_daily_loss_pct", 3.0)),
        kill_switch=_flag(rk_raw.get("kill_switch"), "risk.kill_switch", False),
    )

    br_cfg = BrokerConfig(
        client_id=os.environ.get("DHAN_CLIENT_ID", ""),
        access_token=os.environ.get("DHAN_ACCESS_TOKEN", ""),
        base_url=os.environ.get("DHAN_BASE_URL", ""),
    )

    pl_raw = raw.get("planner", {}) or {}
    pl_cfg = PlannerConfig(
        host=os.environ.get("OLLAMA_HOST") or str(pl_raw.get("host", "http://localhost:11434")),
        model=os.environ.get("TRADING_AGENT_MODEL") or str(pl_raw.get("model", "phi3:mini")),
        timeout=float(pl_raw.get("timeout", 60.0)),
    )

    ex_raw = raw.get("execution", {}) or {}
    ex_cfg = ExecutionConfig(
        live=_env_flag("LIVE_TRADING", _flag(ex_raw.get("live"), "execution.live", False)),
        ledger_path=str(ex_raw.get("ledger_path", "data/ledger.db")),
        idempotency_path=str(ex_raw.get("idempotency_path", "data/idempotency.db")),
    )

    j_raw = raw.get("journal", {}) or {}
    j_cfg = JournalConfig(
        path=str(j_raw.get("path", "data/journal.jsonl")),
        echo_stdout=_flag(j_raw.get("echo_stdout"), "journal.echo_stdout", False),
    )

    a_raw = raw.get("alerting", {}) or {}
    a_cfg = AlertingConfig(
        structured_logs=_flag(a_raw.get("structured_logs"), "alerting.structured_logs", True),
        webhook_url=str(a_raw.get("webhook_url", "")),
    )

    instruments = []
    for i, entry in enumerate(raw.get("instruments", []) or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"instruments[{i}] must be a mapping")
        missing = [k for k in ("segment", "security_id", "instrument_type") if not entry.get(k)]
        if missing:
            raise ConfigError(f"instruments[{i}] missing {', '.join(missing)}")
        kind = str(entry["instrument_type"]).upper()
        if kind not in INSTRUMENT_KINDS:
            raise ConfigError(f"instruments[{i}].instrument_type must be one of {sorted(INSTRUMENT_KINDS)}, got {kind!r}")
        instruments.append(
            InstrumentConfig(
                segment=str(entry["segment"]),
                security_id=str(entry["security_id"]),
                instrument_type=kind,
                symbol=str(entry.get("symbol", "")),
            )
        )

    return AppConfig(
        agent=ag_cfg,
        market_hours=mh_cfg,
        cooldowns=cd_cfg,
        risk=rk_cfg,
        broker=br_cfg,
        planner=pl_cfg,
        execution=ex_cfg,
        journal=j_cfg,
        alerting=a_cfg,
        instruments=tuple(instruments),
    )
