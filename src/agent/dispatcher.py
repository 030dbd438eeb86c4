"""
ToolDispatcher: ToolCall -> Observation over a closed table of tools.

This is the one place tool failures become data. Unknown tools, bad argument
shapes, market-data and broker failures, and anything unexpected all come
back as ``Observation(ok=False, hint=...)``; nothing raises past ``dispatch``.

Order tools run the safety guard first, go through the idempotent order gate,
and book the fill in the position ledger at the price the tick resolver
settles on. A replay books nothing unless its order never reached the ledger.
A placed order stays ok=True even when the ledger write fails; the hint says
the fill was not tracked.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from typing import Any, Callable, Mapping

from config.loader import RiskConfig
from execution.idempotency import PENDING
from execution.ledger import LedgerError, PositionLedger
from execution.models import BracketPlan, OrderRequest, OrderResult, Position
from execution.order_gate import OrderGate
from execution.safety import SafetyGuard
from market_data.broker import BrokerError
from market_data.gateway import MarketDataError
from market_data.ticks import TickResolver
from market_data.ttl_cache import CachedMarketData

from agent.contracts import Observation, ToolCall, ToolName

logger = logging.getLogger("tradeloop.dispatcher")

_FAILURE_HINTS = {
    ToolName.MARKET_QUOTE: "Quote fetch failed",
    ToolName.MARKET_OHLC: "OHLC fetch failed",
    ToolName.MARKET_OPTION_CHAIN: "Option chain fetch failed",
    ToolName.POSITIONS_LIST: "Positions fetch failed",
    ToolName.RISK_ANALYZE: "Risk analysis failed",
    ToolName.ORDERS_PLACE: "Order placement failed",
    ToolName.ORDERS_PLACE_BRACKET: "Bracket order failed",
    ToolName.ORDERS_MODIFY_SL: "Stop loss update failed",
    ToolName.ORDERS_EXIT: "Order exit failed",
}

_ORDER_TOOLS = {
    ToolName.ORDERS_PLACE,
    ToolName.ORDERS_PLACE_BRACKET,
    ToolName.ORDERS_MODIFY_SL,
    ToolName.ORDERS_EXIT,
}


def summarize_candles(raw: Any, interval: str | int, count: int) -> dict[str, Any]:
    """Reduce a column-oriented candle response to last/high/low of the closes."""
    if not isinstance(raw, Mapping):
        return {"raw": raw}
    closes = [c for c in (raw.get("close") or []) if c is not None]
    if not closes:
        return {"candle_count": count, "interval": interval, "raw": raw}
    summary: dict[str, Any] = {
        "candle_count": len(closes),
        "last_price": float(closes[-1]),
        "high": float(max(closes)),
        "low": float(min(closes)),
        "interval": interval,
    }
    for key in ("time", "timestamp"):
        if key in raw:
            summary[key] = raw[key]
    return summary


def _pick(row: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if row.get(name) is not None:
            return row[name]
    return None


def _broker_position_row(row: Mapping[str, Any]) -> dict[str, Any]:
    pnl = _pick(row, "unrealizedProfit", "unrealized_profit", "mtm")
    avg = _pick(row, "buyAvg", "buy_avg", "costPrice", "cost_price")
    out = {
        "symbol": _pick(row, "tradingSymbol", "trading_symbol", "symbol"),
        "security_id": _pick(row, "securityId", "security_id"),
        "net_qty": int(_pick(row, "netQty", "net_qty") or 0),
        "pnl": float(pnl) if pnl is not None else None,
        "avg_price": float(avg) if avg is not None else None,
    }
    return {k: v for k, v in out.items() if v is not None}


def _tracked_row(position: Position) -> dict[str, Any]:
    return {
        "symbol": position.symbol or position.security_id,
        "security_id": position.security_id,
        "net_qty": position.quantity,
        "avg_price": float(position.avg_price),
    }


def _open_exposure(position: Position) -> dict[str, Any]:
    """Active-position fields only; observation text is pattern-matched by the loop."""
    return {
        "id": position.id,
        "segment": position.segment,
        "security_id": position.security_id,
        "symbol": position.symbol,
        "side": position.side,
        "quantity": position.quantity,
        "avg_price": str(position.avg_price),
        "order_no": position.order_no,
        "paper": position.paper,
    }


def _position_payload(position: Position | None) -> dict[str, Any] | None:
    if position is None:
        return None
    return _open_exposure(position) if position.is_active else position.to_dict()


class ToolDispatcher:
    """
    Route planner tool calls to market data, risk and order handlers.

    Parameters
    ----------
    market:
        Cached gateway reads.
    gate:
        Idempotent order gate (live or paper).
    ledger:
        Position ledger that fills are recorded into.
    resolver:
        LTP cascade used to price fills and exits.
    risk:
        Risk figures echoed by ``risk.analyze``.
    guard:
        Pre-placement safety checks; skipped when None.
    run_id:
        Scope for derived idempotency keys.
    journal, events:
        Optional JournalWriter / StructuredEventLogger sinks.
    """

    def __init__(
        self,
        market: CachedMarketData,
        gate: OrderGate,
        ledger: PositionLedger,
        resolver: TickResolver,
        *,
        risk: RiskConfig | None = None,
        guard: SafetyGuard | None = None,
        run_id: str = "",
        journal: Any = None,
        events: Any = None,
    ) -> None:
        self._market = market
        self._gate = gate
        self._ledger = ledger
        self._resolver = resolver
        self._risk = risk if risk is not None else RiskConfig()
        self._guard = guard
        self._run_id = run_id
        self._journal = journal
        self._events = events
        self._handlers: dict[ToolName, Callable[..., Observation]] = {
            ToolName.MARKET_QUOTE: self._market_quote,
            ToolName.MARKET_OHLC: self._market_ohlc,
            ToolName.MARKET_OPTION_CHAIN: self._market_option_chain,
            ToolName.POSITIONS_LIST: self._positions_list,
            ToolName.RISK_ANALYZE: self._risk_analyze,
            ToolName.ORDERS_PLACE: self._orders_place,
            ToolName.ORDERS_PLACE_BRACKET: self._orders_place_bracket,
            ToolName.ORDERS_MODIFY_SL: self._orders_modify_sl,
            ToolName.ORDERS_EXIT: self._orders_exit,
        }

    @property
    def tools(self) -> list[str]:
        return [name.value for name in self._handlers]

    def dispatch(self, call: ToolCall) -> Observation:
        name = ToolName.parse(call.tool)
        if name is None:
            return Observation(call.tool, False, f"Unknown tool {call.tool}", "Unsupported tool")

        try:
            observation = self._handlers[name](**call.args)
        except (TypeError, ValueError) as exc:
            observation = Observation(name.value, False, f"Argument error: {exc}", "Fix payload")
        except (MarketDataError, BrokerError) as exc:
            logger.warning("%s failed: %s", name.value, exc)
            observation = Observation(name.value, False, str(exc), _FAILURE_HINTS[name])
        except Exception as exc:
            logger.exception("Dispatch error in %s", name.value)
            observation = Observation(name.value, False, f"Dispatch failure: {exc}", "Executor error")

        if name in _ORDER_TOOLS and not observation.ok and self._events is not None:
            self._events.order_rejected(name.value, observation.text())
        return observation

    # -------- Market data --------

    def _market_quote(self, security_id: str | int, segment: str = "NSE") -> Observation:
        data = self._market.quote(security_id, segment)
        return Observation(ToolName.MARKET_QUOTE.value, True, data, f"Quote retrieved for {security_id}")

    def _market_ohlc(
        self,
        security_id: str | int,
        segment: str = "NSE",
        interval: str | int = "5m",
        count: int = 120,
    ) -> Observation:
        raw = self._market.ohlc(security_id, segment, interval=interval, count=int(count))
        summary = summarize_candles(raw, interval, int(count))
        hint = f"Fetched {summary.get('candle_count', 0)} candles"
        return Observation(ToolName.MARKET_OHLC.value, True, summary, hint)

    def _market_option_chain(self, underlying_security_id: str | int, expiry: str, segment: str = "NSE") -> Observation:
        chain = self._market.option_chain(underlying_security_id, segment, expiry)
        hint = f"Option chain {expiry} cached {self._market.option_chain_ttl:g}s"
        return Observation(ToolName.MARKET_OPTION_CHAIN.value, True, chain, hint)

    def _positions_list(self) -> Observation:
        tracked = self._ledger.list_active()
        if self._gate.live:
            rows = [_broker_position_row(r) for r in self._market.positions()]
        else:
            rows = [_tracked_row(p) for p in tracked]
        result = {"positions": rows, "count": len(rows), "tracked": [_open_exposure(p) for p in tracked]}
        return Observation(ToolName.POSITIONS_LIST.value, True, result, "Positions snapshot ready")

    # -------- Risk --------

    def _risk_analyze(self, prompt_context: Any) -> Observation:
        r = self._risk
        active = self._ledger.count_active()
        result = {
            "prompt_context": prompt_context,
            "capital_base": r.capital_base,
            "per_trade_risk_pct": r.per_trade_risk_pct,
            "risk_budget": r.capital_base * (r.per_trade_risk_pct / 100.0),
            "target_profit": r.target_profit,
            "active_positions": active,
            "max_concurrent_positions": r.max_concurrent_positions,
            "slots_available": max(0, r.max_concurrent_positions - active),
        }
        return Observation(ToolName.RISK_ANALYZE.value, True, result, "Context forwarded to planner")

    # -------- Orders --------

    def _derive_key(self, tool: ToolName, params: Mapping[str, Any]) -> str:
        canonical = json.dumps(params, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
        return f"{self._run_id}:{tool.value}:{digest}"

    def _orders_place(self, idempotency_key: str | None = None, **params: Any) -> Observation:
        order = OrderRequest.from_mapping(params)
        return self._place(ToolName.ORDERS_PLACE, order, idempotency_key)

    def _orders_place_bracket(self, idempotency_key: str | None = None, **params: Any) -> Observation:
        plan = BracketPlan.from_mapping(params)
        return self._place(ToolName.ORDERS_PLACE_BRACKET, plan, idempotency_key)

    def _place(self, tool: ToolName, order: OrderRequest | BracketPlan, idempotency_key: str | None) -> Observation:
        security_id = order.security_id or order.symbol
        if self._guard is not None:
            verdict = self._guard.check(segment=order.segment, security_id=security_id)
            if not verdict.allowed:
                logger.warning("%s blocked: %s", tool.value, verdict.reason)
                return Observation(tool.value, False, verdict.reason, "Risk guard blocked")

        key = idempotency_key or self._derive_key(tool, order.to_params())
        if tool is ToolName.ORDERS_PLACE_BRACKET:
            result = self._gate.place_bracket(order, key)
            label = "Bracket order placed"
        else:
            result = self._gate.place(order, key)
            label = "Order placed"

        hint = f"{label} ({result.status})"
        position = None
        if self._needs_tracking(result):
            try:
                position = self._track_fill(tool, order, result, key)
            except (LedgerError, sqlite3.Error) as exc:
                logger.error("Order %s placed but its fill was not tracked: %s", result.order_id, exc)
                hint += f" (fill not tracked: {exc})"
        if self._journal is not None:
            self._journal.order(tool.value, key, result, replayed=result.replayed)
        if self._events is not None and not result.replayed:
            self._events.order_submitted(tool.value, result.order_id, result.status, result.paper)

        if result.replayed:
            hint += " (idempotent replay)"
        payload = {
            "order_id": result.order_id,
            "status": result.status,
            "paper": result.paper,
            "idempotency_key": key,
            "replayed": result.replayed,
            "position": _position_payload(position),
        }
        return Observation(tool.value, True, payload, hint)

    def _needs_tracking(self, result: OrderResult) -> bool:
        if not result.replayed:
            return True
        # A replayed order whose fill never reached the ledger is booked now.
        return result.status != PENDING and not self._ledger.has_order(result.order_id)

    def _track_fill(
        self,
        tool: ToolName,
        order: OrderRequest | BracketPlan,
        result: OrderResult,
        key: str,
    ) -> Position | None:
        security_id = order.security_id or order.symbol
        meta = {"ltp": order.price} if order.price is not None else None
        price = self._resolver.resolve(order.segment, security_id, meta)
        if price is None:
            logger.warning("No actionable price for %s:%s; fill of %s not tracked", order.segment, security_id, result.order_id)
            return None

        signed_qty = -order.quantity if order.transaction_type == "SELL" else order.quantity
        position = self._ledger.apply_fill(
            order.segment,
            security_id,
            order.transaction_type,
            signed_qty,
            price,
            result.order_id,
            symbol=order.symbol,
            meta={"tool": tool.value, "run_id": self._run_id, "idempotency_key": key},
        )
        if self._journal is not None:
            if position.is_active:
                self._journal.fill(result.order_id, position.segment, position.security_id, order.transaction_type, signed_qty, price)
            else:
                self._journal.position_closed(position, order_id=result.order_id)
        return position

    def _orders_modify_sl(self, order_id: str, leg_name: str | None = None, **params: Any) -> Observation:
        ctx = {"order_id": order_id, "leg_name": leg_name, **params}
        result = self._gate.modify_stop_loss(ctx)
        return Observation(ToolName.ORDERS_MODIFY_SL.value, True, result.to_dict(), "Stop loss adjusted")

    def _orders_exit(
        self,
        order_id: str | None = None,
        exit_order_id: str | None = None,
        segment: str | None = None,
        security_id: str | int | None = None,
        price: Any = None,
    ) -> Observation:
        result = self._gate.exit({"order_id": order_id, "exit_order_id": exit_order_id})
        payload: dict[str, Any] = {**result.to_dict(), "position": None}

        if segment and security_id is not None:
            meta = {"ltp": price} if price is not None else None
            exit_price = self._resolver.resolve(segment, security_id, meta)
            if exit_price is None:
                logger.warning("No exit price for %s:%s; ledger position left open", segment, security_id)
            else:
                closed = self._ledger.close(segment, security_id, exit_price)
                if closed is not None:
                    payload["position"] = closed.to_dict()
                    if self._journal is not None:
                        self._journal.position_closed(closed, order_id=result.order_id)

        if self._events is not None:
            self._events.order_submitted(ToolName.ORDERS_EXIT.value, result.order_id, result.status, result.paper)
        return Observation(ToolName.ORDERS_EXIT.value, True, payload, "Order exit requested")
