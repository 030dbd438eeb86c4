"""
Market data: broker segment keys, the normalizing gateway, short-TTL caching,
and the push-feed / REST LTP resolution cascade.
"""

from market_data.broker import BrokerClient, BrokerError, DhanBroker, UnconfiguredBroker, build_broker
from market_data.gateway import (
    InstrumentCatalog,
    MarketDataError,
    MarketDataGateway,
    StaticInstrumentCatalog,
)
from market_data.segments import segment_key
from market_data.ticks import FeedHub, NullFeedHub, TickCache, TickResolver
from market_data.ttl_cache import CachedMarketData, ShortTTLCache

__all__ = [
    "BrokerClient",
    "BrokerError",
    "CachedMarketData",
    "DhanBroker",
    "FeedHub",
    "InstrumentCatalog",
    "MarketDataError",
    "MarketDataGateway",
    "NullFeedHub",
    "ShortTTLCache",
    "StaticInstrumentCatalog",
    "TickCache",
    "TickResolver",
    "UnconfiguredBroker",
    "build_broker",
    "segment_key",
]
