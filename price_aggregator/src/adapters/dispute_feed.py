"""Dispute-aware feed adapter for crowd-reported value stores.

Source: a value store keyed by an opaque 32-byte query id. Reporters submit
values over time; any submitted value can be disputed, after which it must
not be trusted. Values are ABI-encoded ``uint256`` (32 bytes, big-endian).
Typical precision: 18 decimals.

The latest reading is rejected if it is disputed. The historical queries
(``value_before``, ``value_after``, ``multiple_values``) skip disputed
entries and return the nearest undisputed ones instead.

Query ids for spot prices follow the common convention::

    keccak256(abi.encode("SpotPrice", abi.encode(asset, currency)))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from eth_abi import encode
from web3 import Web3

from ..errors import InvalidConfigError
from .base import (
    BaseAdapter,
    DisputedError,
    MalformedError,
    NoDataError,
    PriceReading,
    SourceType,
    register_adapter,
)

logger = logging.getLogger(__name__)


class DisputeStoreApi(Protocol):
    """Capability client for a crowd-reported value store."""

    def value_count(self, query_id: bytes) -> int:
        ...

    def timestamp_by_index(self, query_id: bytes, index: int) -> int:
        ...

    def retrieve(self, query_id: bytes, timestamp: int) -> bytes:
        ...

    def is_disputed(self, query_id: bytes, timestamp: int) -> bool:
        ...

    def reporter(self, query_id: bytes, timestamp: int) -> str:
        ...


@dataclass(frozen=True)
class DisputeAnalytics:
    """Reporting statistics of a dispute-capable source.

    :ivar value_count: Number of values ever reported.
    :ivar last_reporter: Reporter of the most recent value, or None.
    :ivar last_timestamp: Timestamp of the most recent value, or 0.
    :ivar last_disputed: Whether the most recent value is disputed.
    """

    value_count: int
    last_reporter: str | None
    last_timestamp: int
    last_disputed: bool


@dataclass(frozen=True)
class ValueStatus:
    """Latest reported value of a dispute-capable source, disputed or not.

    :ivar reading: The reported value, flagged if disputed.
    :ivar age: Age of the value in seconds.
    """

    reading: PriceReading
    age: int

    @property
    def disputed(self) -> bool:
        return self.reading.disputed


def spot_price_query_id(asset: str, currency: str) -> bytes:
    """Compute the query id of a spot price feed.

    :param asset: Asset symbol (e.g., "eth"); lowercased.
    :param currency: Currency symbol (e.g., "usd"); lowercased.
    :returns: 32-byte keccak256 query id.
    """
    query_args = encode(["string", "string"], [asset.lower(), currency.lower()])
    query_data = encode(["string", "bytes"], ["SpotPrice", query_args])
    return bytes(Web3.keccak(query_data))


def parse_query_id(query_id: str | bytes) -> bytes:
    """Parse a 32-byte query id given as bytes or a hex string.

    :raises InvalidConfigError: If the value is not 32 bytes long.
    """
    if isinstance(query_id, str):
        try:
            query_id = bytes.fromhex(query_id.removeprefix("0x"))
        except ValueError as e:
            raise InvalidConfigError(f"query_id is not valid hex: {query_id!r}") from e
    if len(query_id) != 32:
        raise InvalidConfigError(f"query_id must be 32 bytes, got {len(query_id)}")
    return bytes(query_id)


def decode_value(value: bytes | int) -> int:
    """Decode a reported value into a positive integer.

    :raises NoDataError: If the value is empty.
    :raises MalformedError: If the value is not a positive 32-byte integer.
    """
    if isinstance(value, int):
        decoded = value
    else:
        if len(value) == 0:
            raise NoDataError("Empty value")
        if len(value) != 32:
            raise MalformedError(f"Expected a 32-byte value, got {len(value)} bytes")
        decoded = Web3.to_int(primitive=bytes(value))
    if decoded <= 0:
        raise MalformedError(f"Non-positive value {decoded}")
    return decoded


@register_adapter
class DisputeFeedAdapter(BaseAdapter):
    """Adapter for dispute-aware crowd-reported feeds.

    Registered with either a ``query_id`` or an ``asset``/``currency`` pair
    from which the spot price query id is derived.

    :ivar query_id: 32-byte query id of the feed.
    """

    source_type = SourceType.DISPUTE_FEED

    OPTIONS = BaseAdapter.OPTIONS | {"query_id", "asset", "currency"}

    client: DisputeStoreApi

    def __init__(
        self,
        client: DisputeStoreApi,
        *,
        query_id: str | bytes | None = None,
        asset: str | None = None,
        currency: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        if query_id is not None:
            self.query_id = parse_query_id(query_id)
        elif asset and currency:
            self.query_id = spot_price_query_id(asset, currency)
        else:
            raise InvalidConfigError("Either query_id or asset and currency is required")

    @classmethod
    def validate_options(cls, options: Mapping[str, Any]) -> None:
        super().validate_options(options)
        if "query_id" in options:
            parse_query_id(options["query_id"])
        elif not (options.get("asset") and options.get("currency")):
            raise InvalidConfigError("Either query_id or asset and currency is required")

    async def _read(self) -> PriceReading:
        timestamp = await self.last_update_timestamp()
        if await self._is_disputed(timestamp):
            raise DisputedError(timestamp)
        return await self._reading_at(timestamp)

    async def value_count(self) -> int:
        """Number of values ever reported for this query id."""
        return int(await self._call(self.client.value_count, self.query_id))

    async def latest_disputed(self) -> bool:
        """Whether the most recent reported value is disputed.

        :returns: False if nothing was ever reported.
        """
        count = await self.value_count()
        if count == 0:
            return False
        return await self._is_disputed(await self._timestamp_at(count - 1))

    async def latest_value_with_status(self) -> ValueStatus:
        """Latest reported value with its age and dispute flag.

        Unlike :meth:`read`, a disputed value is returned rather than rejected.

        :raises NoDataError: If nothing was ever reported.
        :raises MalformedError: If the value cannot be decoded.
        """
        timestamp = await self.last_update_timestamp()
        disputed = await self._is_disputed(timestamp)
        reading = await self._reading_at(timestamp, disputed=disputed)
        return ValueStatus(reading=reading, age=self.data_age(timestamp))

    async def last_update_timestamp(self) -> int:
        """Timestamp of the most recent report, disputed or not.

        :raises NoDataError: If nothing was ever reported.
        """
        count = await self.value_count()
        if count == 0:
            raise NoDataError("No values reported")
        return await self._timestamp_at(count - 1)

    async def index_before(self, timestamp: int) -> int | None:
        """Index of the last value reported strictly before ``timestamp``.

        :returns: The index, or None if no value precedes ``timestamp``.
        """
        low, high = 0, await self.value_count() - 1
        found: int | None = None
        while low <= high:
            middle = (low + high) // 2
            if await self._timestamp_at(middle) < timestamp:
                found = middle
                low = middle + 1
            else:
                high = middle - 1
        return found

    async def value_before(self, timestamp: int) -> PriceReading:
        """Latest undisputed value reported strictly before ``timestamp``.

        :raises NoDataError: If no undisputed value precedes ``timestamp``.
        """
        index = await self.index_before(timestamp)
        while index is not None and index >= 0:
            reported_at = await self._timestamp_at(index)
            if not await self._is_disputed(reported_at):
                return await self._reading_at(reported_at)
            index -= 1
        raise NoDataError(f"No undisputed value before {timestamp}")

    async def value_after(self, timestamp: int) -> PriceReading:
        """Earliest undisputed value reported strictly after ``timestamp``.

        :raises NoDataError: If no undisputed value follows ``timestamp``.
        """
        count = await self.value_count()
        before = await self.index_before(timestamp + 1)
        index = 0 if before is None else before + 1
        while index < count:
            reported_at = await self._timestamp_at(index)
            if reported_at > timestamp and not await self._is_disputed(reported_at):
                return await self._reading_at(reported_at)
            index += 1
        raise NoDataError(f"No undisputed value after {timestamp}")

    async def multiple_values(self, max_age: int, max_count: int) -> list[PriceReading]:
        """Up to ``max_count`` undisputed values from the last ``max_age`` seconds.

        :param max_age: Oldest acceptable age in seconds.
        :param max_count: Maximum number of values to return.
        :returns: Readings ordered from oldest to newest.
        """
        if max_count <= 0:
            return []

        oldest = int(time.time()) - max_age
        readings: list[PriceReading] = []
        index = await self.value_count() - 1
        while index >= 0 and len(readings) < max_count:
            reported_at = await self._timestamp_at(index)
            if reported_at < oldest:
                break
            if not await self._is_disputed(reported_at):
                try:
                    readings.append(await self._reading_at(reported_at))
                except (NoDataError, MalformedError) as e:
                    logger.debug(f"[{self.handle}] Skipping value at {reported_at}: {e}")
            index -= 1
        readings.reverse()
        return readings

    async def analytics(self) -> DisputeAnalytics:
        """Reporting statistics for this query id."""
        count = await self.value_count()
        if count == 0:
            return DisputeAnalytics(
                value_count=0, last_reporter=None, last_timestamp=0, last_disputed=False
            )

        timestamp = await self._timestamp_at(count - 1)
        reporter = await self._call(self.client.reporter, self.query_id, timestamp)
        return DisputeAnalytics(
            value_count=count,
            last_reporter=reporter,
            last_timestamp=timestamp,
            last_disputed=await self._is_disputed(timestamp),
        )

    async def _timestamp_at(self, index: int) -> int:
        return int(await self._call(self.client.timestamp_by_index, self.query_id, index))

    async def _is_disputed(self, timestamp: int) -> bool:
        return bool(await self._call(self.client.is_disputed, self.query_id, timestamp))

    async def _reading_at(self, timestamp: int, disputed: bool = False) -> PriceReading:
        if timestamp == 0:
            raise NoDataError("Zero timestamp")
        value = await self._call(self.client.retrieve, self.query_id, timestamp)
        return self._reading(decode_value(value), timestamp, disputed=disputed)
