"""Combination engine: median and weighted mean over normalized prices.

Both statistics are exposed because they trade off differently against
manipulation. One extreme outlier among three or more prices moves the median
by at most one sorted rank, while it can pull the weighted mean arbitrarily
close to itself as its share of the total weight approaches one.

.. code-block:: python

    >>> median([3100, 2900, 3000])
    3000
    >>> median([100, 101])
    100
    >>> weighted_mean([(3100, 2), (2900, 1), (3000, 1)])
    3025
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .errors import InsufficientResponsesError, ZeroWeightError
from .normalize import div_trunc


@dataclass(frozen=True)
class AggregateResult:
    """Both statistics for one pair, in canonical precision.

    :ivar median: Median of the valid prices.
    :ivar weighted_mean: Weight-weighted mean of the valid prices.
    :ivar valid_count: Number of sources that contributed.
    :ivar sources: Handles of the contributing sources.
    """

    median: int
    weighted_mean: int
    valid_count: int = 0
    sources: tuple[str, ...] = field(default_factory=tuple)


def median(values: Iterable[int]) -> int:
    """Median of a non-empty collection of integer prices.

    Odd counts return the middle element of the sorted values. Even counts
    return the mean of the two middle elements, truncated toward zero.

    :param values: Normalized prices, in any order.
    :returns: The median price.
    :raises InsufficientResponsesError: If ``values`` is empty.
    """
    ordered = sorted(values)
    count = len(ordered)
    if count == 0:
        raise InsufficientResponsesError(available=0, required=1)

    middle = count // 2
    if count % 2 == 1:
        return ordered[middle]
    return div_trunc(ordered[middle - 1] + ordered[middle], 2)


def weighted_mean(pairs: Iterable[tuple[int, int]]) -> int:
    """Weight-weighted mean ``sum(value * weight) / sum(weight)``.

    :param pairs: ``(normalized_price, weight)`` tuples.
    :returns: The weighted mean, truncated toward zero.
    :raises ZeroWeightError: If the total weight is zero (including empty input).
    """
    weighted_sum = 0
    total_weight = 0
    for value, weight in pairs:
        weighted_sum += value * weight
        total_weight += weight

    if total_weight == 0:
        raise ZeroWeightError("Total weight of valid sources is zero")
    return div_trunc(weighted_sum, total_weight)


def combine(
    prices: Sequence[tuple[str, int, int]],
) -> AggregateResult:
    """Compute both statistics over ``(handle, price, weight)`` tuples.

    :param prices: Valid normalized prices with their source handle and weight.
    :returns: AggregateResult for the given prices.
    :raises InsufficientResponsesError: If ``prices`` is empty.
    :raises ZeroWeightError: If the total weight is zero.
    """
    return AggregateResult(
        median=median(price for _, price, _ in prices),
        weighted_mean=weighted_mean((price, weight) for _, price, weight in prices),
        valid_count=len(prices),
        sources=tuple(handle for handle, _, _ in prices),
    )
