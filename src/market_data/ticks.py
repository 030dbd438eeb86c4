"""
Push-feed tick cache and the LTP resolution cascade built on it.

Resolution order for an actionable last-traded price:
  1. caller override (meta["ltp"])
  2. tick cache, when the feed hub is running and connected
  3. subscribe, then wait up to 4 x 50ms for the first tick
  4. one REST LTP call through the gateway (if allowed)
  5. None -- "no actionable price", never zero
"""

from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Protocol

from market_data.gateway import MarketDataGateway
from market_data.segments import segment_key

logger = logging.getLogger("tradeloop.ticks")

_FLOAT_FIELDS = {"ltp", "prev_close", "oi", "oi_prev"}


def is_rate_limit(message: str) -> bool:
    text = message.lower()
    return "429" in text or "rate limit" in text


class FeedHub(Protocol):
    """The live market-feed connection (websocket hub)."""

    def running(self) -> bool: ...

    def connected(self) -> bool: ...

    def subscribe(self, segment: str, security_id: str) -> None: ...


class NullFeedHub:
    """No push feed: resolution always goes straight to the REST fallback."""

    def running(self) -> bool:
        return False

    def connected(self) -> bool:
        return False

    def subscribe(self, segment: str, security_id: str) -> None:
        raise RuntimeError("feed hub not running")


def _key(segment: str, security_id: str | int) -> str:
    return f"{segment_key(segment)}:{security_id}"


class TickCache:
    """
    Latest tick per (segment, security_id), merged field by field.

    ``ltp`` is only overwritten by a positive value, so a partial tick (OI
    update, zero price) never erases a good price. Writers notify waiters.
    """

    def __init__(self) -> None:
        self._map: dict[str, dict[str, Any]] = {}
        self._cond = threading.Condition()

    @staticmethod
    def _normalize(raw: Mapping[str, Any]) -> dict[str, Any] | None:
        if not isinstance(raw, Mapping):
            return None
        out: dict[str, Any] = {}
        for k, v in raw.items():
            name = str(k)
            if name in _FLOAT_FIELDS and v is not None:
                try:
                    v = float(v)
                except (TypeError, ValueError):
                    continue
            out[name] = v
        if out.get("segment") is None or out.get("security_id") is None:
            return None
        out["segment"] = segment_key(str(out["segment"]))
        out["security_id"] = str(out["security_id"])
        return out

    def put(self, raw_tick: Mapping[str, Any]) -> dict[str, Any] | None:
        tick = self._normalize(raw_tick)
        if tick is None:
            return None
        key = _key(tick["segment"], tick["security_id"])
        with self._cond:
            merged = dict(self._map.get(key, {}))
            for k, v in tick.items():
                if v is None:
                    continue
                if k == "ltp":
                    if v > 0:
                        merged["ltp"] = v
                    continue
                merged[k] = v
            self._map[key] = merged
            self._cond.notify_all()
            return dict(merged)

    def get(self, segment: str, security_id: str | int) -> dict[str, Any] | None:
        with self._cond:
            tick = self._map.get(_key(segment, security_id))
            return dict(tick) if tick is not None else None

    def ltp(self, segment: str, security_id: str | int) -> float | None:
        tick = self.get(segment, security_id)
        value = tick.get("ltp") if tick else None
        return float(value) if value is not None else None

    def wait_for_ltp(
        self,
        segment: str,
        security_id: str | int,
        *,
        attempts: int = 4,
        interval: float = 0.05,
        cancel: threading.Event | None = None,
    ) -> float | None:
        """Check up to *attempts* times, *interval* apart; a put() wakes the waiter early."""
        key = _key(segment, security_id)
        start = time.monotonic()
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                return None
            slot_end = start + attempt * interval
            with self._cond:
                remaining = slot_end - time.monotonic()
                if remaining > 0:
                    self._cond.wait(timeout=remaining)
                value = self._map.get(key, {}).get("ltp")
            if value is not None and value > 0:
                return float(value)
        return None

    def delete(self, segment: str, security_id: str | int) -> bool:
        with self._cond:
            return self._map.pop(_key(segment, security_id), None) is not None

    def all(self) -> dict[str, dict[str, Any]]:
        with self._cond:
            return {k: dict(v) for k, v in self._map.items()}

    def clear(self) -> None:
        with self._cond:
            self._map.clear()


def _positive(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    return price if price > 0 else None


class TickResolver:
    """
    Resolve an actionable LTP. Never raises.

    Parameters
    ----------
    gateway:
        REST fallback (MarketDataGateway.ltp).
    tick_cache:
        Push-feed populated cache.
    hub:
        Feed connection; NullFeedHub when there is no push feed.
    cancel:
        Optional event that cuts the post-subscribe wait short.
    """

    def __init__(
        self,
        gateway: MarketDataGateway,
        tick_cache: TickCache | None = None,
        hub: FeedHub | None = None,
        *,
        poll_attempts: int = 4,
        poll_interval: float = 0.05,
        cancel: threading.Event | None = None,
    ) -> None:
        self._gateway = gateway
        self._ticks = tick_cache if tick_cache is not None else TickCache()
        self._hub = hub if hub is not None else NullFeedHub()
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self._cancel = cancel

    def resolve(
        self,
        segment: str,
        security_id: str | int,
        meta: Mapping[str, Any] | None = None,
        fallback_to_api: bool = True,
        *,
        subscribe: bool = True,
    ) -> Decimal | None:
        try:
            override = (meta or {}).get("ltp")
            if override is not None and str(override).strip() != "":
                return Decimal(str(override))

            feed_price = self._from_feed(segment, security_id, subscribe)
            if feed_price is not None:
                return feed_price

            if fallback_to_api:
                return self._gateway.ltp(segment, security_id)
            return None
        except Exception as exc:
            message = str(exc)
            if is_rate_limit(message):
                logger.debug("LTP rate limited for %s:%s: %s", segment, security_id, message)
            else:
                logger.error("Failed to resolve LTP for %s:%s - %s", segment, security_id, message)
            return None

    def _from_feed(self, segment: str, security_id: str | int, subscribe: bool) -> Decimal | None:
        if not (self._hub.running() and self._hub.connected()):
            return None

        cached = _positive(self._ticks.ltp(segment, security_id))
        if cached is not None:
            logger.debug("LTP from tick cache for %s:%s: %s", segment, security_id, cached)
            return cached

        if not subscribe:
            return None
        try:
            self._hub.subscribe(segment_key(segment), str(security_id))
        except Exception as exc:
            logger.debug("Feed subscription failed for %s:%s: %s, falling back", segment, security_id, exc)
            return None
        waited = self._ticks.wait_for_ltp(
            segment,
            security_id,
            attempts=self._poll_attempts,
            interval=self._poll_interval,
            cancel=self._cancel,
        )
        price = _positive(waited)
        if price is not None:
            logger.debug("LTP from tick cache after subscribe for %s:%s: %s", segment, security_id, price)
        return price
