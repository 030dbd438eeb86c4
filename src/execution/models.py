"""Position, OrderResult and order payloads for the execution layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping


class OrderPayloadError(ValueError):
    """An order payload is missing required keys or has unusable values."""


class PositionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Position:
    id: int
    segment: str
    security_id: str
    symbol: str | None
    side: str
    quantity: int
    entry_price: Decimal
    avg_price: Decimal
    order_no: str
    status: PositionStatus
    created_at: datetime
    updated_at: datetime
    paper: bool = True
    meta: dict[str, Any] = field(default_factory=dict)
    exit_price: Decimal | None = None
    exited_at: datetime | None = None
    realized_pnl: Decimal | None = None
    realized_pnl_pct: Decimal | None = None

    @property
    def is_active(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        for k, v in out.items():
            if isinstance(v, Decimal):
                out[k] = str(v)
            elif isinstance(v, datetime):
                out[k] = v.isoformat()
        return out


@dataclass(frozen=True)
class OrderResult:
    """
    What the order gate hands back for one placement/modification/exit.

    ``replayed`` marks a result served from the idempotency store; it does not
    take part in equality, so a replay compares equal to the first result.
    """

    order_id: str
    status: str
    payload: dict[str, Any] = field(default_factory=dict)
    paper: bool = True
    replayed: bool = field(default=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"order_id": self.order_id, "status": self.status, "paper": self.paper, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, replayed: bool = False) -> "OrderResult":
        return cls(
            order_id=str(data["order_id"]),
            status=str(data.get("status", "")),
            payload=dict(data.get("payload") or {}),
            paper=bool(data.get("paper", True)),
            replayed=replayed,
        )

    @classmethod
    def from_response(
        cls,
        response: Any,
        *,
        paper: bool,
        fallback_id: str | None = None,
        default_status: str = "accepted",
    ) -> "OrderResult":
        """Normalize a broker/paper response (camelCase or snake_case keys)."""
        data = dict(response) if isinstance(response, Mapping) else {}
        order_id = data.get("order_id") or data.get("orderId") or fallback_id
        if not order_id:
            raise OrderPayloadError(f"order response carries no order id: {response!r}")
        status = data.get("status") or data.get("order_status") or data.get("orderStatus") or default_status
        payload = data.get("payload")
        if payload is None:
            payload = {k: v for k, v in data.items() if k not in {"order_id", "orderId", "orderStatus", "order_status"}}
        return cls(order_id=str(order_id), status=str(status), payload=dict(payload), paper=paper)


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] not in (None, ""):
            return data[name]
    return None


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise OrderPayloadError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise OrderPayloadError(f"{name} must be positive, got {number}")
    return number


def _positive_decimal(value: Any, name: str) -> Decimal:
    try:
        number = Decimal(str(value))
    except Exception:
        raise OrderPayloadError(f"{name} must be numeric, got {value!r}") from None
    if number <= 0:
        raise OrderPayloadError(f"{name} must be positive, got {number}")
    return number


@dataclass(frozen=True)
class BracketPlan:
    """Entry plus stop-loss and profit-target legs in one order."""

    symbol: str
    quantity: int
    segment: str
    product_type: str
    stop_loss_value: Decimal
    profit_value: Decimal
    order_type: str
    security_id: str | None = None
    transaction_type: str = "BUY"
    price: Decimal | None = None

    REQUIRED = ("symbol", "quantity", "segment", "product_type", "stop_loss_value", "profit_value", "order_type")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BracketPlan":
        values = {
            "symbol": _pick(data, "symbol", "trading_symbol"),
            "quantity": _pick(data, "quantity", "qty"),
            "segment": _pick(data, "segment", "exchange_segment"),
            "product_type": _pick(data, "product_type", "product", "productType"),
            "stop_loss_value": _pick(data, "stop_loss_value", "boStopLossValue", "bo_stop_loss_value"),
            "profit_value": _pick(data, "profit_value", "boProfitValue", "bo_profit_value"),
            "order_type": _pick(data, "order_type", "orderType"),
        }
        missing = [k for k in cls.REQUIRED if values[k] is None]
        if missing:
            raise OrderPayloadError(f"bracket plan missing {', '.join(missing)}")
        price = _pick(data, "price")
        security_id = _pick(data, "security_id", "securityId")
        return cls(
            symbol=str(values["symbol"]),
            quantity=_positive_int(values["quantity"], "quantity"),
            segment=str(values["segment"]),
            product_type=str(values["product_type"]).upper(),
            stop_loss_value=_positive_decimal(values["stop_loss_value"], "stop_loss_value"),
            profit_value=_positive_decimal(values["profit_value"], "profit_value"),
            order_type=str(values["order_type"]).upper(),
            security_id=str(security_id) if security_id is not None else None,
            transaction_type=str(_pick(data, "transaction_type", "side") or "BUY").upper(),
            price=_positive_decimal(price, "price") if price is not None else None,
        )

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "segment": self.segment,
            "product_type": self.product_type,
            "stop_loss_value": str(self.stop_loss_value),
            "profit_value": str(self.profit_value),
            "order_type": self.order_type,
            "transaction_type": self.transaction_type,
        }
        if self.security_id is not None:
            params["security_id"] = self.security_id
        if self.price is not None:
            params["price"] = str(self.price)
        return params


@dataclass(frozen=True)
class OrderRequest:
    """A single-leg order."""

    symbol: str
    quantity: int
    segment: str
    order_type: str = "MARKET"
    product_type: str = "INTRADAY"
    transaction_type: str = "BUY"
    security_id: str | None = None
    price: Decimal | None = None
    trigger_price: Decimal | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrderRequest":
        symbol = _pick(data, "symbol", "trading_symbol")
        quantity = _pick(data, "quantity", "qty")
        segment = _pick(data, "segment", "exchange_segment")
        missing = [n for n, v in (("symbol", symbol), ("quantity", quantity), ("segment", segment)) if v is None]
        if missing:
            raise OrderPayloadError(f"order missing {', '.join(missing)}")
        price = _pick(data, "price")
        trigger = _pick(data, "trigger_price")
        security_id = _pick(data, "security_id", "securityId")
        return cls(
            symbol=str(symbol),
            quantity=_positive_int(quantity, "quantity"),
            segment=str(segment),
            order_type=str(_pick(data, "order_type", "orderType") or "MARKET").upper(),
            product_type=str(_pick(data, "product_type", "product") or "INTRADAY").upper(),
            transaction_type=str(_pick(data, "transaction_type", "side") or "BUY").upper(),
            security_id=str(security_id) if security_id is not None else None,
            price=_positive_decimal(price, "price") if price is not None else None,
            trigger_price=_positive_decimal(trigger, "trigger_price") if trigger is not None else None,
        )

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "segment": self.segment,
            "order_type": self.order_type,
            "product_type": self.product_type,
            "transaction_type": self.transaction_type,
        }
        if self.security_id is not None:
            params["security_id"] = self.security_id
        if self.price is not None:
            params["price"] = str(self.price)
        if self.trigger_price is not None:
            params["trigger_price"] = str(self.trigger_price)
        return params
