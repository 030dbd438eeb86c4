"""
OrderGate: idempotent order placement, stop-loss modification and exit.

Placement is keyed on a caller-supplied token. A token seen before returns
the recorded result and the broker is not called at all. Within a process the
token is held under a per-key lock for check -> reserve -> broker -> record;
across processes the store's pending reservation decides the winner.

Once the broker call returns the token stays claimed. A response without an
order id is recorded as UNCONFIRMED, and a record that fails to persist leaves
the token PENDING; either way a retry replays instead of sending again.
"""

import logging
import sqlite3
from typing import Any, Callable, Mapping

from market_data.broker import BrokerClient, BrokerError
from market_data.segments import segment_key

from execution.idempotency import IdempotencyStore
from execution.locks import KeyedLocks
from execution.models import BracketPlan, OrderPayloadError, OrderRequest, OrderResult
from execution.paper_adapter import PaperAdapter

logger = logging.getLogger("tradeloop.orders")

UNCONFIRMED = "UNCONFIRMED"


class OrderGate:
    """
    Route orders to the broker (live) or the paper adapter.

    Parameters
    ----------
    broker:
        Live broker client; only called when ``live`` is True.
    store:
        Idempotency token store.
    live:
        Live trading switch (LIVE_TRADING). Off means paper.
    paper:
        Paper adapter; a default one is created when omitted.
    """

    def __init__(
        self,
        broker: BrokerClient,
        store: IdempotencyStore,
        *,
        live: bool = False,
        paper: PaperAdapter | None = None,
    ) -> None:
        self._broker = broker
        self._store = store
        self._live = live
        self._paper = paper if paper is not None else PaperAdapter()
        self._locks = KeyedLocks()

    @property
    def live(self) -> bool:
        return self._live

    def _endpoint(self) -> Any:
        return self._broker if self._live else self._paper

    def _broker_params(self, params: dict[str, Any]) -> dict[str, Any]:
        out = dict(params)
        out["exchange_segment"] = segment_key(params["segment"])
        if self._live and not out.get("security_id"):
            raise OrderPayloadError("security_id is required for live orders")
        return out

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except (BrokerError, OrderPayloadError):
            raise
        except Exception as exc:
            raise BrokerError(operation, str(exc)) from exc

    def _confirm(self, operation: str, key: str, response: Any) -> OrderResult:
        try:
            return OrderResult.from_response(response, paper=not self._live)
        except OrderPayloadError:
            logger.error("%s key=%s returned no order id; marking unconfirmed: %r", operation, key, response)
            payload = dict(response) if isinstance(response, Mapping) else {"response": response}
            return OrderResult(order_id=UNCONFIRMED, status=UNCONFIRMED, payload=payload, paper=not self._live)

    def _once(self, key: str, operation: str, send: Callable[[], Any]) -> OrderResult:
        if not key or not str(key).strip():
            raise OrderPayloadError("idempotency key is required")
        with self._locks.hold(key):
            existing = self._store.lookup(key)
            if existing is not None:
                logger.info("Idempotent replay %s key=%s order=%s", operation, key, existing.order_id)
                return existing
            if not self._store.reserve(key, operation, paper=not self._live):
                # Another process claimed the key between our lookup and reserve.
                winner = self._store.lookup(key)
                if winner is None:
                    raise BrokerError(operation, f"idempotency key {key} was released mid-race; retry")
                logger.warning("Idempotency race on %s; returning recorded order %s", key, winner.order_id)
                return winner
            try:
                response = send()
            except BaseException:
                self._store.release(key)
                raise
            result = self._confirm(operation, key, response)
            try:
                self._store.record(key, operation, result)
            except sqlite3.Error as exc:
                logger.error("Could not record %s key=%s order=%s; key stays pending: %s", operation, key, result.order_id, exc)
            logger.info(
                "%s placed order=%s status=%s mode=%s",
                operation,
                result.order_id,
                result.status,
                "live" if self._live else "paper",
            )
            return result

    def place_bracket(self, plan: BracketPlan | Mapping[str, Any], idempotency_key: str) -> OrderResult:
        if not isinstance(plan, BracketPlan):
            plan = BracketPlan.from_mapping(plan)
        params = self._broker_params(plan.to_params())

        def _send() -> Any:
            return self._call("place_bracket", lambda: self._endpoint().place_bracket(params))

        return self._once(idempotency_key, "place_bracket", _send)

    def place(self, order: OrderRequest | Mapping[str, Any], idempotency_key: str) -> OrderResult:
        if not isinstance(order, OrderRequest):
            order = OrderRequest.from_mapping(order)
        params = self._broker_params(order.to_params())

        def _send() -> Any:
            return self._call("place_order", lambda: self._endpoint().place_order(params))

        return self._once(idempotency_key, "place_order", _send)

    def modify_stop_loss(self, ctx: Mapping[str, Any]) -> OrderResult:
        order_id = ctx.get("order_id")
        if not order_id:
            raise OrderPayloadError("modify_stop_loss requires order_id")
        params = {k: v for k, v in ctx.items() if k != "order_id" and v is not None}
        if "trigger_price" not in params and "stop_loss_value" not in params and "price" not in params:
            raise OrderPayloadError("modify_stop_loss requires trigger_price, price or stop_loss_value")
        params.setdefault("leg_name", "STOP_LOSS_LEG")
        response = self._call("modify_order", lambda: self._endpoint().modify_order(str(order_id), params))
        return OrderResult.from_response(response, paper=not self._live, fallback_id=str(order_id), default_status="modified")

    def exit(self, ctx: Mapping[str, Any]) -> OrderResult:
        order_id = ctx.get("order_id") or ctx.get("exit_order_id")
        if not order_id:
            raise OrderPayloadError("exit requires order_id")
        response = self._call("exit_order", lambda: self._endpoint().cancel_order(str(order_id)))
        return OrderResult.from_response(response, paper=not self._live, fallback_id=str(order_id), default_status="exited")
