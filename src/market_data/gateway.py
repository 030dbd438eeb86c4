"""
MarketDataGateway: one method per market-data shape, one error type out.

Every method resolves the broker segment key, calls the broker, and turns any
failure into MarketDataError naming the operation. Callers never see the
broker's native exceptions.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Protocol, TypeVar
from zoneinfo import ZoneInfo

from market_data.broker import BrokerClient
from market_data.segments import DEFAULT_KIND_BY_SEGMENT, segment_key

logger = logging.getLogger("tradeloop.market_data")

T = TypeVar("T")


class MarketDataError(Exception):
    """Raised for any market-data read failure."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class InstrumentCatalog(Protocol):
    """Looks up the instrument kind code (EQUITY, INDEX, FUTIDX, ...) for a security."""

    def instrument_type(self, exchange_segment: str, security_id: str) -> str | None: ...


class StaticInstrumentCatalog:
    """Catalog backed by an explicit mapping, falling back to one kind per segment."""

    def __init__(
        self,
        entries: Mapping[tuple[str, str], str] | None = None,
        *,
        default_by_segment: Mapping[str, str] | None = None,
    ) -> None:
        self._entries = {(segment_key(seg), str(sid)): kind.upper() for (seg, sid), kind in (entries or {}).items()}
        self._defaults = dict(DEFAULT_KIND_BY_SEGMENT if default_by_segment is None else default_by_segment)

    def instrument_type(self, exchange_segment: str, security_id: str) -> str | None:
        key = (segment_key(exchange_segment), str(security_id))
        if key in self._entries:
            return self._entries[key]
        return self._defaults.get(key[0])


def interval_minutes(interval: str | int) -> int:
    """'5m' or '5' -> 5. Raises MarketDataError for anything else."""
    text = str(interval).strip().lower()
    if text.endswith("m"):
        text = text[:-1]
    try:
        minutes = int(text)
    except ValueError:
        raise MarketDataError("ohlc", f"unsupported interval {interval}") from None
    if minutes <= 0:
        raise MarketDataError("ohlc", f"unsupported interval {interval}")
    return minutes


_DAILY = {"1d", "d", "day", "daily"}


def _is_daily(interval: str | int) -> bool:
    return str(interval).strip().lower() in _DAILY


def _to_int_id(security_id: str | int) -> int:
    try:
        return int(security_id)
    except (TypeError, ValueError):
        raise MarketDataError("resolve", f"security id must be numeric, got {security_id!r}") from None


class MarketDataGateway:
    """
    Normalized market-data reads against an injected broker client.

    Parameters
    ----------
    broker:
        A BrokerClient (DhanBroker in production, a mock in tests).
    catalog:
        Resolves instrument kind codes for OHLC/historical queries.
    timezone:
        Exchange timezone used to build candle windows.
    clock:
        Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        broker: BrokerClient,
        catalog: InstrumentCatalog | None = None,
        *,
        timezone: str = "Asia/Kolkata",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._broker = broker
        self._catalog = catalog if catalog is not None else StaticInstrumentCatalog()
        self._tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except MarketDataError:
            raise
        except Exception as exc:
            raise MarketDataError(operation, str(exc)) from exc

    @staticmethod
    def _node(data: Any, key: str, security_id: str | int) -> Any:
        if not isinstance(data, dict):
            return None
        bucket = data.get(key) or {}
        return bucket.get(str(security_id)) or bucket.get(_to_int_id(security_id))

    def _locate(self, operation: str, key: str, security_id: str | int) -> str:
        kind = self._call(operation, lambda: self._catalog.instrument_type(key, str(security_id)))
        if not kind:
            raise MarketDataError(operation, f"instrument not found for {security_id}")
        return kind

    # -------- Reads --------

    def quote(self, security_id: str | int, segment: str = "NSE") -> dict[str, Any]:
        key = segment_key(segment)

        def _fetch() -> dict[str, Any]:
            data = self._broker.quote({key: [_to_int_id(security_id)]})
            node = self._node(data, key, security_id)
            if not node:
                raise MarketDataError("quote", f"missing data for {key} {security_id}")
            return node

        return self._call("quote", _fetch)

    def ltp(self, segment: str, security_id: str | int) -> Decimal | None:
        """Last traded price from the REST feed, or None when the broker has no price."""
        key = segment_key(segment)

        def _fetch() -> Decimal | None:
            data = self._broker.ltp({key: [_to_int_id(security_id)]})
            node = self._node(data, key, security_id)
            price = node.get("last_price") if isinstance(node, dict) else None
            if price is None:
                return None
            try:
                value = Decimal(str(price))
            except InvalidOperation:
                return None
            return value if value > 0 else None

        return self._call("ltp", _fetch)

    def ohlc(
        self,
        security_id: str | int,
        segment: str = "NSE",
        interval: str | int = "5m",
        count: int = 120,
    ) -> dict[str, Any]:
        key = segment_key(segment)
        kind = self._locate("ohlc", key, security_id)
        minutes = interval_minutes(interval)
        to_time = self._clock()
        from_time = to_time - timedelta(minutes=minutes * int(count))
        return self._call(
            "ohlc",
            lambda: self._broker.intraday(
                str(security_id),
                key,
                kind,
                from_time.strftime("%Y-%m-%d"),
                to_time.strftime("%Y-%m-%d"),
                minutes,
            ),
        )

    def historical(
        self,
        security_id: str | int,
        segment: str = "NSE",
        *,
        from_date: str,
        to_date: str,
        interval: str | int = "1d",
    ) -> dict[str, Any]:
        """Candles between two dates: the daily endpoint for "1d", minute bars otherwise."""
        key = segment_key(segment)
        minutes = None if _is_daily(interval) else interval_minutes(interval)
        kind = self._locate("historical", key, security_id)
        if minutes is None:
            return self._call(
                "historical",
                lambda: self._broker.daily(str(security_id), key, kind, from_date, to_date),
            )
        return self._call(
            "historical",
            lambda: self._broker.intraday(str(security_id), key, kind, from_date, to_date, minutes),
        )

    def option_chain(self, underlying_security_id: str | int, segment: str, expiry: str) -> dict[str, Any]:
        key = segment_key(segment)
        return self._call(
            "option_chain",
            lambda: self._broker.option_chain(_to_int_id(underlying_security_id), key, str(expiry)),
        )

    def positions(self) -> list[dict[str, Any]]:
        return self._call("positions", lambda: list(self._broker.positions() or []))
