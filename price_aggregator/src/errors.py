"""Exception hierarchy for registry, authorization and aggregation failures.

Per-source read failures (stale, disputed, malformed, missing data) live next
to the adapters in :mod:`price_aggregator.src.adapters.base`; they never leave
the aggregation façade. The errors defined here are the ones a caller can see.

Caller misuse (never retry):
    - InvalidConfigError: bad registration arguments or engine options
    - NotFoundError: unknown source handle or pair symbol
    - UnauthorizedError: the authorization policy rejected the caller

Transient (retry, or check source health):
    - InsufficientResponsesError: too many sources were excluded this round
    - ZeroWeightError: the surviving sources carry no weight
    - AssetPairInactiveError: the pair is deactivated or was never registered
"""


class AggregatorError(Exception):
    """Base exception for all aggregator errors."""

    pass


class InvalidConfigError(AggregatorError, ValueError):
    """Raised when registration arguments or engine options are invalid."""

    pass


class NotFoundError(AggregatorError, LookupError):
    """Raised when a source handle or pair symbol is not registered."""

    pass


class UnauthorizedError(AggregatorError):
    """Raised when a caller is not allowed to perform an administrative action.

    :ivar caller: Identity that attempted the action.
    :ivar action: Name of the rejected action.
    """

    def __init__(self, caller: object, action: str):
        """Initialize the error.

        :param caller: Identity that attempted the action.
        :param action: Name of the rejected action.
        """
        self.caller = caller
        self.action = action
        super().__init__(f"Caller {caller!r} is not authorized to {action}")


class InsufficientResponsesError(AggregatorError):
    """Raised when fewer valid sources remain than the quorum requires.

    :ivar available: Number of valid sources in this round.
    :ivar required: Minimum number of valid sources configured.
    """

    def __init__(self, available: int, required: int):
        """Initialize the error.

        :param available: Number of valid sources in this round.
        :param required: Minimum number of valid sources configured.
        """
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient valid prices: {available} available, {required} required"
        )


class ZeroWeightError(AggregatorError):
    """Raised when the total weight of the valid sources is zero."""

    pass


class AssetPairInactiveError(AggregatorError):
    """Raised when a pair is inactive or cannot be resolved."""

    pass


class AssetPairNotFoundError(NotFoundError, AssetPairInactiveError):
    """Raised for a pair symbol that was never registered.

    Catching :class:`AssetPairInactiveError` covers both the unknown and the
    deactivated case; catching :class:`NotFoundError` tells them apart.
    """

    pass
