"""Decimal normalization of fixed-point source prices.

Every source reports an integer in its own native precision (8 decimals for
most round-based feeds, 18 for most others). Before combination all prices
are rescaled to one canonical precision.

.. code-block:: python

    >>> normalize_price(3100_00000000, 8, 18)
    3100000000000000000000
    >>> normalize_price(1_999, 3, 2)
    199
"""

DEFAULT_CANONICAL_DECIMALS = 18


def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero.

    Python's ``//`` floors, which differs from fixed-point truncation for
    negative operands.

    :param numerator: Dividend.
    :param denominator: Non-zero divisor.
    :returns: Quotient rounded toward zero.
    :raises ZeroDivisionError: If ``denominator`` is zero.
    """
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        return -quotient
    return quotient


def normalize_price(
    raw: int,
    native_decimals: int,
    canonical_decimals: int = DEFAULT_CANONICAL_DECIMALS,
) -> int:
    """Rescale ``raw`` from ``native_decimals`` to ``canonical_decimals``.

    Scaling up is exact. Scaling down truncates toward zero, so digits beyond
    the canonical precision are lost.

    :param raw: Price as an integer in native precision.
    :param native_decimals: Fractional digits of ``raw``.
    :param canonical_decimals: Target fractional digits.
    :returns: Price as an integer in canonical precision.
    """
    if native_decimals == canonical_decimals:
        return raw
    if native_decimals < canonical_decimals:
        return raw * 10 ** (canonical_decimals - native_decimals)
    return div_trunc(raw, 10 ** (native_decimals - canonical_decimals))
