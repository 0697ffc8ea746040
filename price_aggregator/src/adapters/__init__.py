"""
Source adapters for the four provider capability variants.

This module provides a uniform "read latest value and timestamp" interface
over round-based feeds, TWAP pool oracles, dispute-aware value stores and
simple proxy feeds.

Usage:
    from price_aggregator.src.adapters import get_adapter, get_available_adapters

    # Get list of available adapters
    available = get_available_adapters()
    # ['dispute_feed', 'proxy_feed', 'round_feed', 'twap_feed']

    # Create an adapter for a registered source and read it
    adapter = get_adapter(source, client, default_heartbeat_seconds=3600)
    reading = await adapter.read()
"""

# Import base classes and utilities
from .base import (
    ADAPTER_REGISTRY,
    BaseAdapter,
    DisputedError,
    MalformedError,
    NoDataError,
    PriceReading,
    SourceError,
    SourceType,
    StaleDataError,
    get_adapter,
    get_adapter_class,
    get_available_adapters,
    register_adapter,
)

# Import all adapter implementations to trigger registration
from .dispute_feed import (
    DisputeAnalytics,
    DisputeFeedAdapter,
    ValueStatus,
    spot_price_query_id,
)
from .proxy_feed import ProxyFeedAdapter
from .round_feed import RoundFeedAdapter
from .twap_feed import TwapFeedAdapter, tick_to_price

__all__ = [
    # Base classes
    "BaseAdapter",
    "PriceReading",
    "SourceType",
    # Per-source failures
    "SourceError",
    "NoDataError",
    "StaleDataError",
    "DisputedError",
    "MalformedError",
    # Registry functions
    "register_adapter",
    "get_adapter",
    "get_adapter_class",
    "get_available_adapters",
    "ADAPTER_REGISTRY",
    # Adapter implementations
    "DisputeFeedAdapter",
    "ProxyFeedAdapter",
    "RoundFeedAdapter",
    "TwapFeedAdapter",
    # Helpers
    "DisputeAnalytics",
    "ValueStatus",
    "spot_price_query_id",
    "tick_to_price",
]
