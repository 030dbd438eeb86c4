"""Pytest fixtures: a recording fake broker, temp-file stores and a wired dispatcher."""

from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from agent.dispatcher import ToolDispatcher
from config.loader import AppConfig, build_config
from execution.idempotency import IdempotencyStore
from execution.ledger import PositionLedger
from execution.order_gate import OrderGate
from execution.paper_adapter import PaperAdapter
from execution.safety import SafetyGuard
from market_data.gateway import MarketDataGateway
from market_data.ticks import TickResolver
from market_data.ttl_cache import CachedMarketData, ShortTTLCache

IST = ZoneInfo("Asia/Kolkata")


def ist(y: int, m: int, d: int, h: int = 10, mi: int = 0) -> datetime:
    return datetime(y, m, d, h, mi, 0, tzinfo=IST)


class FakeBroker:
    """Records every call; responses are plain attributes tests can swap."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.ltp_price: float | None = 101.5
        self.quote_node: dict[str, Any] = {"last_price": 101.5, "ohlc": {"open": 100, "high": 102, "low": 99, "close": 100.5}}
        self.candles: dict[str, Any] = {"close": [100.0, 101.0, 99.5, 102.0], "timestamp": [1, 2, 3, 4]}
        self.chain: dict[str, Any] = {"last_price": 22000.0, "oc": {}}
        self.rows: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.order_response: dict[str, Any] | None = None
        self._seq = 0

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with

    def count(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)

    def quote(self, securities: dict[str, list[int]]) -> dict[str, Any]:
        self._record("quote", securities)
        seg, ids = next(iter(securities.items()))
        return {seg: {str(ids[0]): dict(self.quote_node)}}

    def ltp(self, securities: dict[str, list[int]]) -> dict[str, Any]:
        self._record("ltp", securities)
        seg, ids = next(iter(securities.items()))
        if self.ltp_price is None:
            return {seg: {}}
        return {seg: {str(ids[0]): {"last_price": self.ltp_price}}}

    def intraday(self, *args: Any) -> dict[str, Any]:
        self._record("intraday", *args)
        return dict(self.candles)

    def daily(self, *args: Any) -> dict[str, Any]:
        self._record("daily", *args)
        return dict(self.candles)

    def option_chain(self, *args: Any) -> dict[str, Any]:
        self._record("option_chain", *args)
        return dict(self.chain)

    def positions(self) -> list[dict[str, Any]]:
        self._record("positions")
        return list(self.rows)

    def _order(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        self._record(name, params)
        if self.order_response is not None:
            return dict(self.order_response)
        self._seq += 1
        return {"orderId": f"LIVE{self._seq}", "orderStatus": "TRANSIT"}

    def place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._order("place_order", params)

    def place_bracket(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._order("place_bracket", params)

    def modify_order(self, order_id: str, params: dict[str, Any]) -> dict[str, Any]:
        self._record("modify_order", order_id, params)
        return {"orderId": order_id, "orderStatus": "MODIFIED"}

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        self._record("cancel_order", order_id)
        return {"orderId": order_id, "orderStatus": "CANCELLED"}

    def order_calls(self) -> int:
        return sum(self.count(n) for n in ("place_order", "place_bracket", "modify_order", "cancel_order"))


class Counter:
    """Deterministic id factory for the paper adapter."""

    def __init__(self) -> None:
        self.n = 0

    def __call__(self) -> str:
        self.n += 1
        return f"PAPER_{self.n:08X}"


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def app_config() -> AppConfig:
    return build_config({"cooldowns": {"step": 0}})


@pytest.fixture
def gateway(broker: FakeBroker) -> MarketDataGateway:
    return MarketDataGateway(broker, clock=lambda: ist(2026, 3, 2, 11, 0))


@pytest.fixture
def ledger(tmp_path: Path) -> PositionLedger:
    return PositionLedger(tmp_path / "ledger.db")


@pytest.fixture
def store(tmp_path: Path) -> IdempotencyStore:
    return IdempotencyStore(tmp_path / "idem.db")


@pytest.fixture
def paper_gate(broker: FakeBroker, store: IdempotencyStore) -> OrderGate:
    return OrderGate(broker, store, live=False, paper=PaperAdapter(id_factory=Counter()))


@pytest.fixture
def live_gate(broker: FakeBroker, store: IdempotencyStore) -> OrderGate:
    return OrderGate(broker, store, live=True)


@pytest.fixture
def dispatcher(
    broker: FakeBroker,
    gateway: MarketDataGateway,
    paper_gate: OrderGate,
    ledger: PositionLedger,
    app_config: AppConfig,
) -> ToolDispatcher:
    market = CachedMarketData(gateway, ShortTTLCache())
    resolver = TickResolver(gateway)
    guard = SafetyGuard(ledger, max_concurrent_positions=app_config.risk.max_concurrent_positions)
    return ToolDispatcher(
        market,
        paper_gate,
        ledger,
        resolver,
        risk=app_config.risk,
        guard=guard,
        run_id="run1",
    )
