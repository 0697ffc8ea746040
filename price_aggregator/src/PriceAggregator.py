"""PriceAggregator: Multi-source price aggregation façade.

Per query:
    1. Resolve the pair (must exist and be active)
    2. Read every source of the pair concurrently, each bounded by a timeout
    3. Exclude sources that fail (no data, stale, disputed, malformed,
       timed out or unregistered since the pair was created)
    4. Normalize the survivors to the canonical precision
    5. Require at least ``minimum_responses`` survivors
    6. Return the median, the weighted mean, or both

Nothing is cached between queries; every call reads the sources again. Each
query reads its sources on a worker pool of its own, one thread per source, so
a hung provider can only ever hold up its own read.

.. code-block:: python

    aggregator = PriceAggregator(ContractConnector(w3), policy=SingleAdminPolicy(admin))
    aggregator.add_source(feed, "round_feed", weight=2, decimals=8, caller=admin)
    aggregator.add_asset_pair("ETH/USD", "ETH", "USD", [feed], caller=admin)
    price = await aggregator.get_median_price("ETH/USD")
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from .AssetPairRegistry import AssetPair, AssetPairRegistry
from .SourceRegistry import OracleSource, SourceRegistry
from .adapters import (
    BaseAdapter,
    DisputeAnalytics,
    DisputedError,
    DisputeFeedAdapter,
    PriceReading,
    SourceError,
    SourceType,
    get_adapter,
)
from .auth import AllowAllPolicy, AuthorizationPolicy
from .combine import AggregateResult, combine, median, weighted_mean
from .errors import InsufficientResponsesError, InvalidConfigError
from .normalize import DEFAULT_CANONICAL_DECIMALS, normalize_price

logger = logging.getLogger(__name__)

# Builds the capability client for a registered source
Connector = Callable[[OracleSource], Any]

DEFAULT_MINIMUM_RESPONSES = 1
DEFAULT_HEARTBEAT_SECONDS = 3600


@dataclass(frozen=True)
class AggregatorConfig:
    """Engine options.

    :ivar minimum_responses: Valid sources required for a result.
    :ivar canonical_decimals: Precision of every returned price.
    :ivar default_heartbeat_seconds: Heartbeat of sources registered without one.
    :ivar fetch_timeout: Optional cap on the per-source read timeout, in seconds.
    """

    minimum_responses: int = DEFAULT_MINIMUM_RESPONSES
    canonical_decimals: int = DEFAULT_CANONICAL_DECIMALS
    default_heartbeat_seconds: int = DEFAULT_HEARTBEAT_SECONDS
    fetch_timeout: float | None = None

    def __post_init__(self) -> None:
        for name in ("minimum_responses", "canonical_decimals", "default_heartbeat_seconds"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.fetch_timeout is not None and self.fetch_timeout <= 0:
            raise InvalidConfigError(f"fetch_timeout must be positive, got {self.fetch_timeout!r}")


@dataclass(frozen=True)
class SourcePrice:
    """One source's contribution to a pair, as shown by the diagnostic views.

    :ivar handle: Source handle.
    :ivar price: Normalized price, or 0 if the read failed.
    :ivar source_type: Capability variant, or None if the source was removed.
    :ivar description: Source description.
    :ivar timestamp: Timestamp of the reading, or 0 if the read failed.
    :ivar disputed: Whether the latest reading is flagged as disputed.
    :ivar error: Reason the read failed, if it did.
    """

    handle: str
    price: int
    source_type: SourceType | None
    description: str
    timestamp: int
    disputed: bool = False
    error: str | None = None

    @property
    def valid(self) -> bool:
        """Check if the source produced a usable price."""
        return self.error is None


@dataclass(frozen=True)
class DisputeCheck:
    """Dispute status of a pair's dispute-capable sources.

    :ivar has_disputed: Whether any of them reports a disputed latest value.
    :ivar disputed_sources: Handles of the sources that do.
    """

    has_disputed: bool
    disputed_sources: tuple[str, ...]


@dataclass(frozen=True)
class _Fetch:
    handle: str
    source: OracleSource | None
    reading: PriceReading | None = None
    error: BaseException | None = None


class PriceAggregator:
    """Aggregates prices for asset pairs from registered sources.

    Mutations go through one lock shared by both registries and the engine
    options. Queries take the options, the pair and the sources together under
    that lock, then read without holding it.

    :ivar connector: Builds the capability client for a source.
    :ivar policy: Authorization policy for administrative operations.
    :ivar config: Current engine options.
    :ivar sources: Source registry.
    :ivar pairs: Asset pair registry.
    """

    def __init__(
        self,
        connector: Connector,
        config: AggregatorConfig | None = None,
        policy: AuthorizationPolicy | None = None,
    ) -> None:
        """Initialize the aggregator.

        :param connector: Builds the capability client for a source.
        :param config: Engine options (defaults: 1 response, 18 decimals,
            3600s heartbeat).
        :param policy: Authorization policy; defaults to allowing everyone.
        """
        self.connector = connector
        self.config = config or AggregatorConfig()
        self.policy = policy or AllowAllPolicy()
        self._lock = threading.RLock()
        self.sources = SourceRegistry(self.policy, self._lock)
        self.pairs = AssetPairRegistry(self.sources, self.policy, self._lock)

    # Queries

    async def get_median_price(self, symbol: str) -> int:
        """Median of the valid source prices of a pair.

        :param symbol: Pair symbol.
        :returns: Median price in canonical precision.
        :raises AssetPairInactiveError: If the pair is unknown or inactive.
        :raises InsufficientResponsesError: If too few sources are valid.
        """
        config, _, fetches = await self._fetch_pair(symbol)
        valid = self._valid_prices(fetches, config)
        price = median(price for _, price, _ in valid)
        logger.info(f"{symbol}: median {price} from {len(valid)}/{len(fetches)} sources")
        return price

    async def get_weighted_price(self, symbol: str) -> int:
        """Weighted mean of the valid source prices of a pair.

        :param symbol: Pair symbol.
        :returns: Weighted mean in canonical precision.
        :raises AssetPairInactiveError: If the pair is unknown or inactive.
        :raises InsufficientResponsesError: If too few sources are valid.
        :raises ZeroWeightError: If the valid sources carry no weight.
        """
        config, _, fetches = await self._fetch_pair(symbol)
        valid = self._valid_prices(fetches, config)
        price = weighted_mean((price, weight) for _, price, weight in valid)
        logger.info(f"{symbol}: weighted {price} from {len(valid)}/{len(fetches)} sources")
        return price

    async def get_aggregated_price(self, symbol: str) -> AggregateResult:
        """Median and weighted mean of a pair, from one shared read of its sources.

        :param symbol: Pair symbol.
        :returns: Both statistics with the contributing sources.
        :raises AssetPairInactiveError: If the pair is unknown or inactive.
        :raises InsufficientResponsesError: If too few sources are valid.
        :raises ZeroWeightError: If the valid sources carry no weight.
        """
        config, _, fetches = await self._fetch_pair(symbol)
        result = combine(self._valid_prices(fetches, config))
        logger.info(
            f"{symbol}: median {result.median}, weighted {result.weighted_mean} "
            f"from {result.valid_count}/{len(fetches)} sources"
        )
        return result

    async def get_all_prices(self, symbol: str) -> list[SourcePrice]:
        """Every source of a pair with its normalized price, unfiltered.

        Failed sources are listed with price 0, timestamp 0 and the failure
        reason.

        :raises AssetPairInactiveError: If the pair is unknown or inactive.
        """
        config, _, fetches = await self._fetch_pair(symbol)
        return [self._source_price(fetch, config, with_status=False) for fetch in fetches]

    async def get_all_prices_with_status(self, symbol: str) -> list[SourcePrice]:
        """Like :meth:`get_all_prices`, plus the dispute flag of each source.

        :raises AssetPairInactiveError: If the pair is unknown or inactive.
        """
        config, _, fetches = await self._fetch_pair(symbol)
        return [self._source_price(fetch, config, with_status=True) for fetch in fetches]

    # Administration

    def add_source(
        self,
        handle: str,
        source_type: SourceType | str | int,
        weight: int,
        decimals: int,
        heartbeat_seconds: int | None = None,
        description: str = "",
        options: Mapping[str, Any] | None = None,
        *,
        caller: object = None,
    ) -> OracleSource:
        """Register a source. See :meth:`SourceRegistry.add_source`.

        The caller is authorized before any field is parsed.
        """
        with self._lock:
            self.policy.authorize(caller, "add_source")
            source = OracleSource(
                handle=handle,
                source_type=source_type,
                weight=weight,
                decimals=decimals,
                heartbeat_seconds=heartbeat_seconds,
                description=description,
                options=options or {},
            )
            return self.sources.add_source(source, caller=caller)

    def remove_source(self, handle: str, *, caller: object = None) -> OracleSource:
        """Remove a source. See :meth:`SourceRegistry.remove_source`."""
        return self.sources.remove_source(handle, caller=caller)

    def update_source_weight(
        self, handle: str, new_weight: int, *, caller: object = None
    ) -> OracleSource:
        """Change a source's weight. See :meth:`SourceRegistry.update_weight`."""
        return self.sources.update_weight(handle, new_weight, caller=caller)

    def add_asset_pair(
        self,
        symbol: str,
        base: str,
        quote: str,
        source_handles: Iterable[str],
        *,
        caller: object = None,
    ) -> AssetPair:
        """Register a pair. See :meth:`AssetPairRegistry.add_pair`."""
        return self.pairs.add_pair(symbol, base, quote, source_handles, caller=caller)

    def set_asset_pair_active(
        self, symbol: str, active: bool, *, caller: object = None
    ) -> AssetPair:
        """Activate or deactivate a pair. See :meth:`AssetPairRegistry.set_active`."""
        return self.pairs.set_active(symbol, active, caller=caller)

    def set_minimum_responses(self, minimum: int, *, caller: object = None) -> None:
        """Set the number of valid sources a result requires.

        :raises UnauthorizedError: If the policy rejects the caller.
        :raises InvalidConfigError: If ``minimum`` is not a positive integer.
        """
        with self._lock:
            self.policy.authorize(caller, "set_minimum_responses")
            self.config = dataclasses.replace(self.config, minimum_responses=minimum)
        logger.info(f"Minimum responses set to {minimum}")

    def set_staleness_threshold(self, seconds: int, *, caller: object = None) -> None:
        """Set the default heartbeat of sources registered without their own.

        :raises UnauthorizedError: If the policy rejects the caller.
        :raises InvalidConfigError: If ``seconds`` is not a positive integer.
        """
        with self._lock:
            self.policy.authorize(caller, "set_staleness_threshold")
            self.config = dataclasses.replace(self.config, default_heartbeat_seconds=seconds)
        logger.info(f"Default heartbeat set to {seconds}s")

    # Diagnostics

    async def fetch_price_from_source(self, handle: str) -> SourcePrice:
        """Read one source and normalize its price.

        :raises NotFoundError: If the handle is not registered.
        """
        with self._lock:
            config = self.config
            source = self.sources.get(handle)
        with self._worker_pool(1) as executor:
            fetch = await self._fetch_source(source, config, executor)
        return self._source_price(fetch, config, with_status=True)

    def get_sources(self) -> tuple[OracleSource, ...]:
        """All registered sources in their current order."""
        return self.sources.snapshot()

    def get_source_index(self, handle: str) -> int:
        """Position of a source. See :meth:`SourceRegistry.find_index`."""
        return self.sources.find_index(handle)

    def get_asset_pair_sources(self, symbol: str) -> tuple[str, ...]:
        """Source handles of a pair.

        :raises AssetPairNotFoundError: If the symbol is not registered.
        """
        return self.pairs.sources_of(symbol)

    def get_supported_pairs_count(self) -> int:
        """Number of registered pairs, active or not."""
        return len(self.pairs)

    def adapter_for(self, handle: str) -> BaseAdapter:
        """Adapter for a registered source, for historical queries.

        :raises NotFoundError: If the handle is not registered.
        """
        source = self.sources.get(handle)
        return get_adapter(source, self.connector(source), self.config.default_heartbeat_seconds)

    async def check_disputes(self, symbol: str) -> DisputeCheck:
        """Which dispute-capable sources of a pair report a disputed latest value.

        Sources that cannot be read are logged and not counted as disputed.

        :raises AssetPairNotFoundError: If the symbol is not registered.
        """
        with self._lock:
            config = self.config
            handles = self.pairs.sources_of(symbol)
            registered = {source.handle: source for source in self.sources.snapshot()}
        candidates = [
            registered[handle]
            for handle in handles
            if handle in registered
            and registered[handle].source_type == SourceType.DISPUTE_FEED
        ]

        with self._worker_pool(len(candidates)) as executor:
            results = await asyncio.gather(
                *(self._latest_disputed(source, config, executor) for source in candidates),
                return_exceptions=True,
            )

        disputed: list[str] = []
        for source, result in zip(candidates, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"[{source.handle}] Dispute check failed: {result}")
            elif result:
                disputed.append(source.handle)
        return DisputeCheck(has_disputed=bool(disputed), disputed_sources=tuple(disputed))

    async def get_dispute_analytics(self, handle: str) -> DisputeAnalytics:
        """Reporting statistics of a dispute-capable source.

        :raises NotFoundError: If the handle is not registered.
        :raises InvalidConfigError: If the source is not dispute-capable.
        """
        adapter = self.adapter_for(handle)
        if not isinstance(adapter, DisputeFeedAdapter):
            raise InvalidConfigError(f"Source {adapter.handle} is not a dispute feed")
        return await adapter.analytics()

    # Internals

    async def _fetch_pair(
        self, symbol: str
    ) -> tuple[AggregatorConfig, AssetPair, list[_Fetch]]:
        """Resolve a pair and read all its sources concurrently."""
        with self._lock:
            config = self.config
            pair = self.pairs.resolve(symbol)
            registered = {source.handle: source for source in self.sources.snapshot()}

        with self._worker_pool(len(pair.source_handles)) as executor:
            tasks = []
            for handle in pair.source_handles:
                source = registered.get(handle)
                if source is None:
                    tasks.append(self._unregistered(handle))
                else:
                    tasks.append(self._fetch_source(source, config, executor))
            fetches = await asyncio.gather(*tasks)
        return config, pair, list(fetches)

    @staticmethod
    @contextlib.contextmanager
    def _worker_pool(size: int) -> Iterator[ThreadPoolExecutor]:
        """Thread pool for one query, released without waiting for hung reads."""
        executor = ThreadPoolExecutor(max_workers=max(1, size), thread_name_prefix="source-read")
        try:
            yield executor
        finally:
            executor.shutdown(wait=False)

    async def _unregistered(self, handle: str) -> _Fetch:
        logger.warning(f"[{handle}] Source is no longer registered, skipping")
        return _Fetch(handle, None, error=LookupError("Source is no longer registered"))

    async def _fetch_source(
        self, source: OracleSource, config: AggregatorConfig, executor: ThreadPoolExecutor
    ) -> _Fetch:
        """Read one source, converting any failure into an excluded result."""
        timeout = self._timeout_for(source, config)
        try:
            adapter = get_adapter(
                source, self.connector(source), config.default_heartbeat_seconds, executor
            )
            reading = await asyncio.wait_for(adapter.read(), timeout=timeout)
            return _Fetch(source.handle, source, reading=reading)
        except asyncio.TimeoutError as e:
            logger.warning(f"[{source.handle}] Read timed out after {timeout}s")
            return _Fetch(source.handle, source, error=e)
        except SourceError as e:
            logger.warning(f"[{source.handle}] Excluded: {e}")
            return _Fetch(source.handle, source, error=e)
        except Exception as e:
            logger.warning(f"[{source.handle}] Read error: {e}")
            return _Fetch(source.handle, source, error=e)

    async def _latest_disputed(
        self, source: OracleSource, config: AggregatorConfig, executor: ThreadPoolExecutor
    ) -> bool:
        adapter = get_adapter(
            source, self.connector(source), config.default_heartbeat_seconds, executor
        )
        assert isinstance(adapter, DisputeFeedAdapter)
        return await adapter.latest_disputed()

    @staticmethod
    def _timeout_for(source: OracleSource, config: AggregatorConfig) -> float:
        timeout: float = source.effective_heartbeat(config.default_heartbeat_seconds)
        if config.fetch_timeout is not None:
            timeout = min(timeout, config.fetch_timeout)
        return timeout

    @staticmethod
    def _valid_prices(
        fetches: list[_Fetch], config: AggregatorConfig
    ) -> list[tuple[str, int, int]]:
        """Normalized ``(handle, price, weight)`` of the successful reads.

        :raises InsufficientResponsesError: If fewer than
            ``config.minimum_responses`` reads succeeded.
        """
        valid = [
            (
                fetch.handle,
                normalize_price(
                    fetch.reading.raw_value,
                    fetch.reading.native_decimals,
                    config.canonical_decimals,
                ),
                fetch.source.weight,
            )
            for fetch in fetches
            if fetch.reading is not None and fetch.source is not None
        ]
        if len(valid) < config.minimum_responses:
            raise InsufficientResponsesError(len(valid), config.minimum_responses)
        return valid

    @staticmethod
    def _source_price(fetch: _Fetch, config: AggregatorConfig, with_status: bool) -> SourcePrice:
        source = fetch.source
        reading = fetch.reading
        price = 0
        timestamp = 0
        if reading is not None:
            price = normalize_price(
                reading.raw_value, reading.native_decimals, config.canonical_decimals
            )
            timestamp = reading.timestamp

        error = None
        if fetch.error is not None:
            error = str(fetch.error) or type(fetch.error).__name__
        return SourcePrice(
            handle=fetch.handle,
            price=price,
            source_type=source.source_type if source else None,
            description=source.description if source else "",
            timestamp=timestamp,
            disputed=with_status and isinstance(fetch.error, DisputedError),
            error=error,
        )
