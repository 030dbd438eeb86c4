"""
Short-TTL read-through cache for market data.

Bounds broker request rate without letting data go staler than the agent's
decision cadence. No background refresh: an expired entry is invisible and is
recomputed by whichever caller asks next. Concurrent misses on the same key
may each compute; only the TTL bound matters for correctness.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from market_data.gateway import MarketDataGateway

QUOTE_TTL = 3
OHLC_TTL = 10
OPTION_CHAIN_TTL = 20


@dataclass(frozen=True)
class CacheEntry:
    key: Hashable
    value: Any
    expires_at: float


class ShortTTLCache:
    """Thread-safe key -> value map with absolute per-entry expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry

    def fetch(self, key: Hashable, ttl_seconds: float, compute: Callable[[], Any]) -> Any:
        entry = self.get(key)
        if entry is not None:
            return entry.value
        # compute() runs unlocked; a miss never holds up other keys.
        value = compute()
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl_seconds)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for e in self._entries.values() if e.expires_at > now)


class CachedMarketData:
    """Gateway reads behind per-operation TTLs (quote 3s, OHLC 10s, option chain 20s)."""

    def __init__(
        self,
        gateway: MarketDataGateway,
        cache: ShortTTLCache | None = None,
        *,
        quote_ttl: float = QUOTE_TTL,
        ohlc_ttl: float = OHLC_TTL,
        option_chain_ttl: float = OPTION_CHAIN_TTL,
    ) -> None:
        self.gateway = gateway
        self.cache = cache if cache is not None else ShortTTLCache()
        self.quote_ttl = quote_ttl
        self.ohlc_ttl = ohlc_ttl
        self.option_chain_ttl = option_chain_ttl

    def quote(self, security_id: str | int, segment: str = "NSE") -> dict[str, Any]:
        key = ("q", str(security_id), segment)
        return self.cache.fetch(key, self.quote_ttl, lambda: self.gateway.quote(security_id, segment))

    def ohlc(self, security_id: str | int, segment: str = "NSE", interval: str | int = "5m", count: int = 120) -> Any:
        key = ("ohlc", str(security_id), segment, str(interval), int(count))
        return self.cache.fetch(
            key, self.ohlc_ttl, lambda: self.gateway.ohlc(security_id, segment, interval=interval, count=count)
        )

    def option_chain(self, underlying_security_id: str | int, segment: str, expiry: str) -> dict[str, Any]:
        key = ("chain", str(underlying_security_id), segment, str(expiry))
        return self.cache.fetch(
            key,
            self.option_chain_ttl,
            lambda: self.gateway.option_chain(underlying_security_id, segment, expiry),
        )

    def positions(self) -> list[dict[str, Any]]:
        return self.gateway.positions()
