"""Base adapter interface, per-source failure taxonomy and adapter registry.

Every provider family gets one adapter class implementing ``_read()``. The
class is registered under its :class:`SourceType`, so the aggregation façade
can build the right adapter for any registered source without per-type
branching.

Capability clients (the objects that actually talk to a provider) are plain
synchronous objects; adapters call them through :meth:`BaseAdapter._call`,
which runs them on the adapter's executor (the loop's default pool when none
is given). A hung call keeps its worker busy until it returns, so callers
reading many sources at once give each read its own worker.

.. code-block:: python

    @register_adapter
    class MyAdapter(BaseAdapter):
        source_type = SourceType.PROXY_FEED

        async def _read(self) -> PriceReading:
            value, timestamp = await self._call(self.client.read)
            return self._reading(value, timestamp)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, ClassVar, TypeVar

from ..errors import InvalidConfigError

if TYPE_CHECKING:
    from ..SourceRegistry import OracleSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SourceType(enum.IntEnum):
    """Capability variant of a source.

    Values are the numeric type tags stored by deployed aggregator contracts.
    """

    ROUND_FEED = 0
    TWAP_FEED = 1
    DISPUTE_FEED = 2
    PROXY_FEED = 3

    @classmethod
    def parse(cls, value: str | int | SourceType) -> SourceType:
        """Parse a type tag from its name ("round_feed", "RoundFeed") or number.

        :param value: Type name, numeric tag or SourceType.
        :returns: Matching SourceType.
        :raises InvalidConfigError: If the value names no source type.
        """
        if isinstance(value, SourceType):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError as e:
                raise InvalidConfigError(f"Unknown source type {value}") from e

        if not isinstance(value, str):
            raise InvalidConfigError(f"Unknown source type {value!r}")

        key = value.strip().replace("-", "_")
        if key.lower() in SOURCE_TYPE_ALIASES:
            return SOURCE_TYPE_ALIASES[key.lower()]
        # RoundFeed -> ROUND_FEED
        if "_" not in key and not key.isupper():
            key = "".join(f"_{c}" if c.isupper() else c for c in key).lstrip("_")
        try:
            return cls[key.upper()]
        except KeyError as e:
            available = ", ".join(t.name.lower() for t in cls)
            raise InvalidConfigError(
                f"Unknown source type '{value}'. Available: {available}"
            ) from e


# Provider family names accepted in deployment files
SOURCE_TYPE_ALIASES: dict[str, SourceType] = {
    "chainlink": SourceType.ROUND_FEED,
    "uniswap": SourceType.TWAP_FEED,
    "tellor": SourceType.DISPUTE_FEED,
    "api3": SourceType.PROXY_FEED,
}


class SourceError(Exception):
    """Base exception for a failed read from a single source."""

    pass


class NoDataError(SourceError):
    """Raised when the source has no usable reading."""

    pass


class StaleDataError(SourceError):
    """Raised when the latest reading is older than the source's heartbeat.

    :ivar age: Age of the reading in seconds.
    :ivar heartbeat: Maximum tolerated age in seconds.
    """

    def __init__(self, age: int, heartbeat: int):
        """Initialize the error.

        :param age: Age of the reading in seconds.
        :param heartbeat: Maximum tolerated age in seconds.
        """
        self.age = age
        self.heartbeat = heartbeat
        super().__init__(f"Data is stale: age {age}s exceeds heartbeat {heartbeat}s")


class DisputedError(SourceError):
    """Raised when the latest reading is flagged as disputed.

    :ivar timestamp: Timestamp of the disputed reading.
    """

    def __init__(self, timestamp: int):
        """Initialize the error.

        :param timestamp: Timestamp of the disputed reading.
        """
        self.timestamp = timestamp
        super().__init__(f"Value reported at {timestamp} is disputed")


class MalformedError(SourceError):
    """Raised when a reading cannot be decoded or fails validation."""

    pass


@dataclass(frozen=True)
class PriceReading:
    """One raw reading from a source, before normalization.

    :ivar raw_value: Price in the source's native precision.
    :ivar native_decimals: Fractional digits of ``raw_value``.
    :ivar timestamp: Unix timestamp of the reading.
    :ivar source_type: Capability variant that produced the reading.
    :ivar disputed: Whether the reading is flagged as disputed.
    """

    raw_value: int
    native_decimals: int
    timestamp: int
    source_type: SourceType
    disputed: bool = False


class BaseAdapter(ABC):
    """Abstract base class for source adapters.

    Subclasses must implement:
        - source_type: Class variable naming the capability variant
        - _read(): Async method returning the latest PriceReading

    :cvar source_type: Capability variant handled by this adapter.
    :cvar enforces_heartbeat: Whether :meth:`read` rejects stale readings.
    :cvar OPTIONS: Option names accepted from the source registration.
    :ivar client: Capability client for the provider.
    :ivar handle: Handle of the source being read.
    :ivar decimals: Native precision of the source.
    :ivar heartbeat_seconds: Maximum tolerated age of a reading.
    :ivar executor: Executor running capability calls, or None for the loop default.
    """

    source_type: ClassVar[SourceType]

    enforces_heartbeat: ClassVar[bool] = True

    # "address" names the provider contract when it differs from the handle
    OPTIONS: ClassVar[frozenset[str]] = frozenset({"address"})

    def __init__(
        self,
        client: Any,
        *,
        handle: str,
        decimals: int,
        heartbeat_seconds: int,
        executor: Executor | None = None,
        **options: Any,
    ) -> None:
        """Initialize the adapter.

        :param client: Capability client for the provider.
        :param handle: Handle of the source being read.
        :param decimals: Native precision of the source.
        :param heartbeat_seconds: Maximum tolerated age of a reading.
        :param executor: Executor running capability calls.
        :param options: Type-specific options, see ``OPTIONS``.
        """
        self.client = client
        self.handle = handle
        self.decimals = decimals
        self.heartbeat_seconds = heartbeat_seconds
        self.executor = executor

    @classmethod
    def validate_options(cls, options: Mapping[str, Any]) -> None:
        """Check registration options before a source is accepted.

        :param options: Options given at registration.
        :raises InvalidConfigError: If an option is unknown or invalid.
        """
        unknown = set(options) - cls.OPTIONS
        if unknown:
            raise InvalidConfigError(
                f"Unknown options for {cls.source_type.name.lower()}: {sorted(unknown)}"
            )

    async def read(self) -> PriceReading:
        """Read the latest value from the source.

        :returns: The latest valid reading.
        :raises SourceError: If the source has no valid, fresh reading.
        """
        reading = await self._read()
        if self.enforces_heartbeat:
            self.check_fresh(reading.timestamp)
        logger.debug(
            f"[{self.handle}] read {reading.raw_value} "
            f"({reading.native_decimals} decimals) at {reading.timestamp}"
        )
        return reading

    @abstractmethod
    async def _read(self) -> PriceReading:
        """Read and validate the latest value, without the heartbeat check."""
        pass

    def data_age(self, timestamp: int) -> int:
        """Age of a reading in seconds (never negative).

        :param timestamp: Unix timestamp of the reading.
        """
        return max(0, int(time.time()) - timestamp)

    def is_data_stale(self, timestamp: int, max_age: int | None = None) -> bool:
        """Check whether a reading is older than ``max_age``.

        :param timestamp: Unix timestamp of the reading.
        :param max_age: Maximum tolerated age; defaults to the heartbeat.
        """
        limit = self.heartbeat_seconds if max_age is None else max_age
        return self.data_age(timestamp) > limit

    def check_fresh(self, timestamp: int, max_age: int | None = None) -> None:
        """Raise unless a reading is within ``max_age`` (default: heartbeat).

        :raises StaleDataError: If the reading is too old.
        """
        if self.is_data_stale(timestamp, max_age):
            limit = self.heartbeat_seconds if max_age is None else max_age
            raise StaleDataError(self.data_age(timestamp), limit)

    async def latest_value_with_age(self, max_age: int) -> PriceReading:
        """Read the latest value, requiring it to be at most ``max_age`` old.

        :param max_age: Maximum tolerated age in seconds, overriding the heartbeat.
        :raises InvalidConfigError: If ``max_age`` is not positive.
        :raises SourceError: If the source has no valid reading that recent.
        """
        if max_age <= 0:
            raise InvalidConfigError(f"max_age must be positive, got {max_age}")
        reading = await self._read()
        self.check_fresh(reading.timestamp, max_age)
        return reading

    async def last_update_timestamp(self) -> int:
        """Timestamp of the latest valid reading.

        :raises SourceError: If the source has no valid reading.
        """
        return (await self._read()).timestamp

    async def last_update_age(self) -> int:
        """Age in seconds of the latest valid reading.

        :raises SourceError: If the source has no valid reading.
        """
        return self.data_age(await self.last_update_timestamp())

    async def can_provide_data(self) -> bool:
        """Check whether :meth:`read` would currently succeed."""
        try:
            await self.read()
        except SourceError as e:
            logger.debug(f"[{self.handle}] Cannot provide data: {e}")
            return False
        return True

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a synchronous capability call on the executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, fn, *args)

    def _reading(self, value: int, timestamp: int, disputed: bool = False) -> PriceReading:
        """Build a reading in this source's native precision."""
        return PriceReading(
            raw_value=value,
            native_decimals=self.decimals,
            timestamp=timestamp,
            source_type=self.source_type,
            disputed=disputed,
        )


# Registry of available adapters (populated by subclass imports)
ADAPTER_REGISTRY: dict[SourceType, type[BaseAdapter]] = {}


def register_adapter(cls: type[BaseAdapter]) -> type[BaseAdapter]:
    """Decorator to register an adapter class under its source type.

    :param cls: Adapter class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the adapter has no source type defined.
    """
    if getattr(cls, "source_type", None) is None:
        raise ValueError(
            f"Adapter {cls.__name__} must define a 'source_type' class variable"
        )
    ADAPTER_REGISTRY[cls.source_type] = cls
    return cls


def get_adapter_class(source_type: SourceType) -> type[BaseAdapter]:
    """Get the adapter class registered for a source type.

    :raises InvalidConfigError: If no adapter handles the type.
    """
    try:
        return ADAPTER_REGISTRY[source_type]
    except KeyError as e:
        raise InvalidConfigError(f"No adapter registered for {source_type!r}") from e


def get_adapter(
    source: OracleSource,
    client: Any,
    default_heartbeat_seconds: int,
    executor: Executor | None = None,
) -> BaseAdapter:
    """Build the adapter for a registered source.

    :param source: Registered source.
    :param client: Capability client for the source's provider.
    :param default_heartbeat_seconds: Heartbeat used when the source has none.
    :param executor: Executor running the adapter's capability calls.
    :returns: Adapter instance.
    """
    cls = get_adapter_class(source.source_type)
    return cls(
        client,
        handle=source.handle,
        decimals=source.decimals,
        heartbeat_seconds=source.effective_heartbeat(default_heartbeat_seconds),
        executor=executor,
        **dict(source.options),
    )


def get_available_adapters() -> list[str]:
    """Get the names of the source types with a registered adapter."""
    return sorted(t.name.lower() for t in ADAPTER_REGISTRY)
