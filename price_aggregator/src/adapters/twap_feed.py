"""Time-weighted average price adapter.

Source: a liquidity pool oracle exposing ``observe(secondsAgos)`` (cumulative
tick samples) plus its own last-update timestamp.

The average tick over the window is::

    avg_tick = (tick_cumulative[1] - tick_cumulative[0]) / window_seconds

truncated toward zero. Ticks are logarithms of the square-root price in base
1.0001 (``tick = log(sqrt(price)) / log(1.0001)``), so the price is
``1.0001 ** (2 * avg_tick)``, expressed in the source's native decimals. The
power is evaluated with :class:`decimal.Decimal` at a fixed precision, so the
conversion is deterministic and strictly increasing in the tick. It is not
bit-exact with any AMM's fixed-point square-root-price math.

This adapter does not check freshness. The reading's timestamp is the pool
oracle's last-update time; callers that need freshness check it separately.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from decimal import ROUND_DOWN, Context, Decimal
from typing import Any, Protocol

from ..errors import InvalidConfigError
from ..normalize import div_trunc
from .base import (
    BaseAdapter,
    MalformedError,
    NoDataError,
    PriceReading,
    SourceType,
    register_adapter,
)

DEFAULT_WINDOW_SECONDS = 1800

# Ticks are bounded by the pool math; anything outside is a broken feed.
MIN_TICK = -887272
MAX_TICK = 887272

_TICK_BASE = Decimal("1.0001")
_TICK_CONTEXT = Context(prec=60)


class TwapObservationApi(Protocol):
    """Capability client for a pool's cumulative tick observations."""

    def observe(self, seconds_agos: Sequence[int]) -> Sequence[int]:
        ...

    def last_update_timestamp(self) -> int:
        ...


def tick_to_price(tick: int, decimals: int) -> int:
    """Convert a square-root-price tick to a fixed-point price ``1.0001 ** (2 * tick)``.

    :param tick: Average tick, within ``[MIN_TICK, MAX_TICK]``.
    :param decimals: Fractional digits of the returned price.
    :returns: Price scaled by ``10 ** decimals``, truncated toward zero.
    :raises MalformedError: If the tick is out of range.

    .. code-block:: python

        >>> tick_to_price(0, 18)
        1000000000000000000
        >>> tick_to_price(1, 8)
        100020001
    """
    if not MIN_TICK <= tick <= MAX_TICK:
        raise MalformedError(f"Tick {tick} out of range")
    price = _TICK_CONTEXT.power(_TICK_BASE, 2 * tick)
    scaled = _TICK_CONTEXT.multiply(price, Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN, context=_TICK_CONTEXT))


@register_adapter
class TwapFeedAdapter(BaseAdapter):
    """Adapter deriving a price from two cumulative tick observations.

    :ivar window_seconds: Length of the averaging window.
    """

    source_type = SourceType.TWAP_FEED

    enforces_heartbeat = False

    OPTIONS = BaseAdapter.OPTIONS | {"window_seconds"}

    client: TwapObservationApi

    def __init__(
        self,
        client: TwapObservationApi,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, **kwargs)
        self.window_seconds = int(window_seconds)

    @classmethod
    def validate_options(cls, options: Mapping[str, Any]) -> None:
        super().validate_options(options)
        window = options.get("window_seconds", DEFAULT_WINDOW_SECONDS)
        if not isinstance(window, int) or isinstance(window, bool) or window <= 0:
            raise InvalidConfigError(f"window_seconds must be a positive integer, got {window!r}")

    async def _read(self) -> PriceReading:
        cumulatives = await self._call(self.client.observe, [self.window_seconds, 0])
        try:
            start, end = (int(c) for c in cumulatives)
        except (TypeError, ValueError) as e:
            raise MalformedError(f"Unexpected tick cumulatives {cumulatives!r}") from e

        timestamp = await self.last_update_timestamp()
        avg_tick = div_trunc(end - start, self.window_seconds)
        price = tick_to_price(avg_tick, self.decimals)
        if price <= 0:
            raise MalformedError(f"Tick {avg_tick} maps to a zero price")
        return self._reading(price, timestamp)

    async def last_update_timestamp(self) -> int:
        """Last-update time of the pool oracle, without reading a price.

        :raises NoDataError: If the pool oracle has never been updated.
        """
        timestamp = int(await self._call(self.client.last_update_timestamp))
        if timestamp == 0:
            raise NoDataError("Pool oracle has never been updated")
        return timestamp
