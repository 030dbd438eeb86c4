"""
Broker client protocol and the Dhan adapter behind it.

Everything above this module talks in broker segment keys and plain dicts;
only DhanBroker knows the SDK's method names and response envelope.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger("tradeloop.broker")


class BrokerError(Exception):
    """A broker call failed. Carries the operation name and the broker's message."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class BrokerClient(Protocol):
    """Protocol for broker clients. Segment arguments are broker keys (see segments.segment_key)."""

    def quote(self, securities: dict[str, list[int]]) -> dict[str, Any]: ...

    def ltp(self, securities: dict[str, list[int]]) -> dict[str, Any]: ...

    def intraday(
        self,
        security_id: str,
        exchange_segment: str,
        instrument_type: str,
        from_date: str,
        to_date: str,
        interval: int,
    ) -> dict[str, Any]: ...

    def daily(
        self,
        security_id: str,
        exchange_segment: str,
        instrument_type: str,
        from_date: str,
        to_date: str,
    ) -> dict[str, Any]: ...

    def option_chain(self, underlying_security_id: int, exchange_segment: str, expiry: str) -> dict[str, Any]: ...

    def positions(self) -> list[dict[str, Any]]: ...

    def place_order(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def place_bracket(self, params: dict[str, Any]) -> dict[str, Any]: ...

    def modify_order(self, order_id: str, params: dict[str, Any]) -> dict[str, Any]: ...

    def cancel_order(self, order_id: str) -> dict[str, Any]: ...


class UnconfiguredBroker:
    """Fails every call; used when no credentials are configured (paper runs, tests)."""

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)

        def _fail(*args: Any, **kwargs: Any) -> Any:
            raise BrokerError(name, "broker not configured (set DHAN_CLIENT_ID and DHAN_ACCESS_TOKEN)")

        return _fail


def _unwrap(operation: str, response: Any) -> Any:
    """Return the payload of a Dhan response envelope or raise BrokerError."""
    if not isinstance(response, dict):
        raise BrokerError(operation, f"unexpected response type {type(response).__name__}")
    status = str(response.get("status", "")).lower()
    if status != "success":
        remarks = response.get("remarks") or response.get("data") or "request failed"
        if isinstance(remarks, dict):
            remarks = remarks.get("error_message") or remarks.get("message") or remarks
        raise BrokerError(operation, str(remarks))
    data = response.get("data")
    # Market-feed endpoints nest a second {"data": ..., "status": ...} envelope.
    if isinstance(data, dict) and isinstance(data.get("data"), dict) and "status" in data:
        data = data["data"]
    return data


class DhanBroker:
    """
    Dhan broker client built on the dhanhq SDK.

    Credentials via constructor (typically from AppConfig, sourced from env vars).
    The SDK is imported lazily so paper runs never need it installed.
    """

    def __init__(self, client_id: str, access_token: str, *, base_url: str = "") -> None:
        if not client_id or not access_token:
            raise ValueError(
                "Dhan client id and access token are required. "
                "Set DHAN_CLIENT_ID and DHAN_ACCESS_TOKEN environment variables."
            )
        try:
            from dhanhq import dhanhq
        except ImportError:
            raise ImportError(
                "dhanhq is required for DhanBroker. "
                "Install with: pip install 'tradeloop[broker]'"
            )
        self._client = dhanhq(client_id, access_token)
        if base_url:
            self._client.base_url = base_url.rstrip("/")

    # -------- Market data --------

    def quote(self, securities: dict[str, list[int]]) -> dict[str, Any]:
        return _unwrap("quote", self._client.quote_data(securities))

    def ltp(self, securities: dict[str, list[int]]) -> dict[str, Any]:
        return _unwrap("ltp", self._client.ticker_data(securities))

    def intraday(
        self,
        security_id: str,
        exchange_segment: str,
        instrument_type: str,
        from_date: str,
        to_date: str,
        interval: int,
    ) -> dict[str, Any]:
        response = self._client.intraday_minute_data(
            security_id, exchange_segment, instrument_type, from_date, to_date, interval
        )
        return _unwrap("intraday", response)

    def daily(
        self,
        security_id: str,
        exchange_segment: str,
        instrument_type: str,
        from_date: str,
        to_date: str,
    ) -> dict[str, Any]:
        response = self._client.historical_daily_data(
            security_id, exchange_segment, instrument_type, from_date, to_date
        )
        return _unwrap("daily", response)

    def option_chain(self, underlying_security_id: int, exchange_segment: str, expiry: str) -> dict[str, Any]:
        return _unwrap("option_chain", self._client.option_chain(underlying_security_id, exchange_segment, expiry))

    def positions(self) -> list[dict[str, Any]]:
        return list(_unwrap("positions", self._client.get_positions()) or [])

    # -------- Orders --------

    def place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        response = self._client.place_order(
            security_id=str(params["security_id"]),
            exchange_segment=params["exchange_segment"],
            transaction_type=params.get("transaction_type", "BUY"),
            quantity=int(params["quantity"]),
            order_type=params.get("order_type", "MARKET"),
            product_type=params.get("product_type", "INTRADAY"),
            price=float(params.get("price", 0) or 0),
            trigger_price=float(params.get("trigger_price", 0) or 0),
            tag=params.get("tag"),
        )
        return _unwrap("place_order", response)

    def place_bracket(self, params: dict[str, Any]) -> dict[str, Any]:
        response = self._client.place_order(
            security_id=str(params["security_id"]),
            exchange_segment=params["exchange_segment"],
            transaction_type=params.get("transaction_type", "BUY"),
            quantity=int(params["quantity"]),
            order_type=params.get("order_type", "MARKET"),
            product_type=params.get("product_type", "BO"),
            price=float(params.get("price", 0) or 0),
            bo_profit_value=float(params["profit_value"]),
            bo_stop_loss_Value=float(params["stop_loss_value"]),
            tag=params.get("tag"),
        )
        return _unwrap("place_bracket", response)

    def modify_order(self, order_id: str, params: dict[str, Any]) -> dict[str, Any]:
        response = self._client.modify_order(
            order_id=order_id,
            order_type=params.get("order_type", "STOP_LOSS"),
            leg_name=params.get("leg_name") or "",
            quantity=int(params.get("quantity", 0) or 0),
            price=float(params.get("price", 0) or 0),
            trigger_price=float(params.get("trigger_price", 0) or 0),
            disclosed_quantity=int(params.get("disclosed_quantity", 0) or 0),
            validity=params.get("validity", "DAY"),
        )
        return _unwrap("modify_order", response)

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        return _unwrap("cancel_order", self._client.cancel_order(order_id))


def build_broker(client_id: str, access_token: str, *, base_url: str = "") -> BrokerClient:
    """DhanBroker when credentials are present, otherwise an UnconfiguredBroker."""
    if not client_id or not access_token:
        logger.warning("Broker credentials missing; market data calls will fail until configured")
        return UnconfiguredBroker()  # type: ignore[return-value]
    return DhanBroker(client_id, access_token, base_url=base_url)
