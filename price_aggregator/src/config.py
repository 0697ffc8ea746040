"""Deployment files: engine options, administrators, sources and pairs.

A deployment file is JSON:

.. code-block:: json

    {
        "admin": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
        "minimum_responses": 2,
        "canonical_decimals": 18,
        "default_heartbeat_seconds": 3600,
        "fetch_timeout": 10,
        "sources": [
            {"handle": "0x694A...", "type": "round_feed", "weight": 2, "decimals": 8,
             "description": "ETH / USD"},
            {"handle": "tellor-eth-usd", "type": "tellor", "weight": 1, "decimals": 18,
             "options": {"address": "0xB19...", "asset": "eth", "currency": "usd"}}
        ],
        "pairs": [
            {"symbol": "ETH/USD", "base": "ETH", "quote": "USD",
             "sources": ["0x694A...", "tellor-eth-usd"]}
        ]
    }

Instead of ``admin``, ``admins`` lists several administrators; adding
``threshold`` requires that many of them to approve each change.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .AssetPairRegistry import AssetPair
from .PriceAggregator import AggregatorConfig, Connector, PriceAggregator
from .SourceRegistry import OracleSource
from .auth import (
    AdminListPolicy,
    AllowAllPolicy,
    AuthorizationPolicy,
    SingleAdminPolicy,
    ThresholdPolicy,
)
from .errors import InvalidConfigError

logger = logging.getLogger(__name__)

_CONFIG_KEYS = ("minimum_responses", "canonical_decimals", "default_heartbeat_seconds", "fetch_timeout")


@dataclass
class Deployment:
    """Parsed deployment file.

    :ivar config: Engine options.
    :ivar admins: Administrator identities (empty means anyone may administer).
    :ivar threshold: Approvals required per change, or None for any single admin.
    :ivar sources: Sources to register, in order.
    :ivar pairs: Pairs to register, in order.
    """

    config: AggregatorConfig = field(default_factory=AggregatorConfig)
    admins: list[str] = field(default_factory=list)
    threshold: int | None = None
    sources: list[OracleSource] = field(default_factory=list)
    pairs: list[AssetPair] = field(default_factory=list)

    def policy(self) -> AuthorizationPolicy:
        """Build the authorization policy described by the file."""
        if not self.admins:
            return AllowAllPolicy()
        if self.threshold is not None:
            return ThresholdPolicy(self.admins, self.threshold)
        if len(self.admins) == 1:
            return SingleAdminPolicy(self.admins[0])
        return AdminListPolicy(self.admins)

    @property
    def bootstrap_caller(self) -> object:
        """Caller identity that satisfies :meth:`policy` when registering."""
        if self.threshold is not None:
            return tuple(self.admins)
        return self.admins[0] if self.admins else None

    def build(self, connector: Connector) -> PriceAggregator:
        """Create an aggregator with every source and pair registered.

        :param connector: Builds the capability client for a source.
        :returns: Ready-to-query aggregator.
        :raises InvalidConfigError: If a source or pair is rejected.
        """
        aggregator = PriceAggregator(connector, config=self.config, policy=self.policy())
        caller = self.bootstrap_caller
        for source in self.sources:
            aggregator.sources.add_source(source, caller=caller)
        for pair in self.pairs:
            aggregator.add_asset_pair(
                pair.symbol, pair.base, pair.quote, pair.source_handles, caller=caller
            )
            if not pair.active:
                aggregator.set_asset_pair_active(pair.symbol, False, caller=caller)

        logger.info(
            f"Loaded {len(aggregator.sources)} sources and {len(aggregator.pairs)} pairs"
        )
        return aggregator


def _require(entry: dict[str, Any], key: str, kind: str) -> Any:
    try:
        return entry[key]
    except KeyError:
        raise InvalidConfigError(f"{kind} entry is missing '{key}': {entry}") from None


def parse_source(entry: dict[str, Any]) -> OracleSource:
    """Parse one ``sources`` entry.

    :raises InvalidConfigError: If a required key is missing or the type is unknown.
    """
    return OracleSource(
        handle=_require(entry, "handle", "Source"),
        source_type=_require(entry, "type", "Source"),
        weight=_require(entry, "weight", "Source"),
        decimals=_require(entry, "decimals", "Source"),
        heartbeat_seconds=entry.get("heartbeat_seconds"),
        description=entry.get("description", ""),
        options=entry.get("options") or {},
    )


def parse_pair(entry: dict[str, Any]) -> AssetPair:
    """Parse one ``pairs`` entry.

    :raises InvalidConfigError: If a required key is missing.
    """
    symbol = _require(entry, "symbol", "Pair")
    base, _, quote = symbol.partition("/")
    return AssetPair(
        symbol=symbol,
        base=entry.get("base", base),
        quote=entry.get("quote", quote),
        source_handles=tuple(_require(entry, "sources", "Pair")),
        active=bool(entry.get("active", True)),
    )


def parse_deployment(data: dict[str, Any]) -> Deployment:
    """Parse a decoded deployment document.

    :raises InvalidConfigError: If the document is malformed.
    """
    if not isinstance(data, dict):
        raise InvalidConfigError("Deployment file must contain a JSON object")

    config = AggregatorConfig(**{k: data[k] for k in _CONFIG_KEYS if k in data})

    admins = data.get("admins") or ([data["admin"]] if data.get("admin") else [])
    if isinstance(admins, str):
        admins = [admins]

    return Deployment(
        config=config,
        admins=list(admins),
        threshold=data.get("threshold"),
        sources=[parse_source(entry) for entry in data.get("sources", [])],
        pairs=[parse_pair(entry) for entry in data.get("pairs", [])],
    )


def load_deployment(path: str | Path) -> Deployment:
    """Load a deployment file.

    :param path: Path to the JSON file.
    :returns: Parsed deployment.
    :raises InvalidConfigError: If the file cannot be read or parsed.
    """
    try:
        with open(path, "r") as file:
            data = json.load(file)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidConfigError(f"Cannot load deployment file {path}: {e}") from e

    logger.debug(f"Loaded deployment file {path}")
    return parse_deployment(data)
