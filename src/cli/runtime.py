"""
Wire one run's collaborators from an AppConfig.

Broker -> gateway -> TTL cache / tick resolver, idempotency store -> order
gate, ledger -> safety guard, all handed to one ToolDispatcher. Nothing here
is a module-level singleton; every run builds its own graph over the shared
SQLite files.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from agent.dispatcher import ToolDispatcher
from config.loader import AppConfig
from execution.idempotency import IdempotencyStore
from execution.ledger import PositionLedger
from execution.order_gate import OrderGate
from execution.safety import SafetyGuard
from journal.writer import JournalWriter
from market_data.broker import BrokerClient, build_broker
from market_data.gateway import MarketDataGateway, StaticInstrumentCatalog
from market_data.ticks import TickCache, TickResolver
from market_data.ttl_cache import CachedMarketData, ShortTTLCache

from cli.structured_log import StructuredEventLogger


@dataclass
class Runtime:
    run_id: str
    config: AppConfig
    broker: BrokerClient
    market: CachedMarketData
    resolver: TickResolver
    gate: OrderGate
    ledger: PositionLedger
    guard: SafetyGuard
    journal: JournalWriter
    events: StructuredEventLogger
    dispatcher: ToolDispatcher


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def open_ledger(cfg: AppConfig) -> PositionLedger:
    return PositionLedger(cfg.execution.ledger_path, paper=not cfg.execution.live)


def build_runtime(
    cfg: AppConfig,
    *,
    broker: BrokerClient | None = None,
    run_id: str | None = None,
    events_stream: Any = None,
) -> Runtime:
    run_id = run_id or new_run_id()
    if broker is None:
        broker = build_broker(cfg.broker.client_id, cfg.broker.access_token, base_url=cfg.broker.base_url)

    catalog = StaticInstrumentCatalog({(i.segment, i.security_id): i.instrument_type for i in cfg.instruments})
    gateway = MarketDataGateway(broker, catalog, timezone=cfg.market_hours.timezone)
    market = CachedMarketData(
        gateway,
        ShortTTLCache(),
        quote_ttl=cfg.cooldowns.quote_cache,
        ohlc_ttl=cfg.cooldowns.ohlc_cache,
        option_chain_ttl=cfg.cooldowns.option_chain_cache,
    )
    resolver = TickResolver(gateway, TickCache())

    ledger = open_ledger(cfg)
    gate = OrderGate(broker, IdempotencyStore(cfg.execution.idempotency_path), live=cfg.execution.live)
    guard = SafetyGuard(
        ledger,
        kill_switch=cfg.risk.kill_switch,
        max_daily_loss_pct=cfg.risk.max_daily_loss_pct,
        capital_base=cfg.risk.capital_base,
        max_concurrent_positions=cfg.risk.max_concurrent_positions,
    )
    journal = JournalWriter(cfg.journal.path, run_id=run_id, echo_stdout=cfg.journal.echo_stdout)
    events = StructuredEventLogger(
        run_id,
        enabled=cfg.alerting.structured_logs,
        webhook_url=cfg.alerting.webhook_url,
        stream=events_stream,
    )
    dispatcher = ToolDispatcher(
        market,
        gate,
        ledger,
        resolver,
        risk=cfg.risk,
        guard=guard,
        run_id=run_id,
        journal=journal,
        events=events,
    )
    return Runtime(
        run_id=run_id,
        config=cfg,
        broker=broker,
        market=market,
        resolver=resolver,
        gate=gate,
        ledger=ledger,
        guard=guard,
        journal=journal,
        events=events,
        dispatcher=dispatcher,
    )
