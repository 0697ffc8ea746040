"""Proxy feed adapter.

Source: a first-party data feed proxy whose ``read()`` returns
``(value, timestamp)``. Typical precision: 18 decimals.
"""

from __future__ import annotations

from typing import Protocol

from .base import (
    BaseAdapter,
    MalformedError,
    NoDataError,
    PriceReading,
    SourceType,
    register_adapter,
)


class ProxyFeedApi(Protocol):
    """Capability client for a data feed proxy."""

    def read(self) -> tuple[int, int]:
        ...


@register_adapter
class ProxyFeedAdapter(BaseAdapter):
    """Adapter for simple ``(value, timestamp)`` proxies."""

    source_type = SourceType.PROXY_FEED

    client: ProxyFeedApi

    async def _read(self) -> PriceReading:
        result = await self._call(self.client.read)
        try:
            value, timestamp = (int(x) for x in result)
        except (TypeError, ValueError) as e:
            raise MalformedError(f"Unexpected proxy response {result!r}") from e

        if timestamp == 0:
            raise NoDataError("Proxy has never been updated")
        if value <= 0:
            raise MalformedError(f"Non-positive value {value}")
        return self._reading(value, timestamp)
