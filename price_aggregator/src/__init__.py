"""
Multi-Source Price Aggregator - Aggregation Engine

This module combines prices from several independent sources:
- adapters: Per-provider adapters (round feeds, TWAP pools, dispute feeds, proxies)
- normalize: Rescaling of native precision to the canonical precision
- combine: Median and weighted mean
- SourceRegistry / AssetPairRegistry: Administrator-gated registries
- PriceAggregator: Query façade with staleness and dispute exclusion
- config: Deployment file loading
"""

from .AssetPairRegistry import AssetPair, AssetPairRegistry
from .PriceAggregator import (
    AggregatorConfig,
    DisputeCheck,
    PriceAggregator,
    SourcePrice,
)
from .SourceRegistry import OracleSource, SourceRegistry
from .adapters import SourceType
from .combine import AggregateResult
from .config import Deployment, load_deployment

__all__ = [
    "AggregateResult",
    "AggregatorConfig",
    "AssetPair",
    "AssetPairRegistry",
    "Deployment",
    "DisputeCheck",
    "OracleSource",
    "PriceAggregator",
    "SourcePrice",
    "SourceRegistry",
    "SourceType",
    "load_deployment",
]
