"""AssetPairRegistry: Maps pair symbols to the sources that price them.

Pairs are created once and never deleted, only deactivated. Every source a
pair references must be registered in the source registry at creation time;
sources removed later stay referenced and are skipped when the pair is
queried.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from .SourceRegistry import SourceRegistry
from .auth import AllowAllPolicy, AuthorizationPolicy, normalize_identity
from .errors import AssetPairInactiveError, AssetPairNotFoundError, InvalidConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetPair:
    """A named asset pair and its ordered source handles.

    :ivar symbol: Unique pair symbol (e.g., "ETH/USD").
    :ivar base: Base asset symbol.
    :ivar quote: Quote asset symbol.
    :ivar source_handles: Handles of the sources that price this pair.
    :ivar active: Whether the pair can be queried.
    """

    symbol: str
    base: str
    quote: str
    source_handles: tuple[str, ...]
    active: bool = True


class AssetPairRegistry:
    """Registry of asset pairs with administrator-gated mutation.

    :ivar sources: Source registry that handles are checked against.
    :ivar policy: Authorization policy consulted before every mutation.
    """

    def __init__(
        self,
        sources: SourceRegistry,
        policy: AuthorizationPolicy | None = None,
        lock: threading.RLock | None = None,
    ) -> None:
        """Initialize an empty registry.

        :param sources: Source registry that handles are checked against.
        :param policy: Authorization policy; defaults to allowing everyone.
        :param lock: Lock serializing mutations, shared with other registries.
        """
        self.sources = sources
        self.policy = policy or AllowAllPolicy()
        self._lock = lock or threading.RLock()
        self._pairs: dict[str, AssetPair] = {}

    def add_pair(
        self,
        symbol: str,
        base: str,
        quote: str,
        source_handles: Iterable[str],
        *,
        caller: object = None,
    ) -> AssetPair:
        """Register a new, active pair.

        :param symbol: Unique pair symbol.
        :param base: Base asset symbol.
        :param quote: Quote asset symbol.
        :param source_handles: Handles of registered sources, in order.
        :param caller: Identity performing the change.
        :returns: The registered pair.
        :raises UnauthorizedError: If the policy rejects the caller.
        :raises InvalidConfigError: If a field is empty, a handle is unknown
            or repeated, or the symbol already exists.
        """
        with self._lock:
            self.policy.authorize(caller, "add_pair")

            for name, value in (("symbol", symbol), ("base", base), ("quote", quote)):
                if not isinstance(value, str) or not value.strip():
                    raise InvalidConfigError(f"Pair {name} must not be empty")
            symbol = symbol.strip()
            if symbol in self._pairs:
                raise InvalidConfigError(f"Asset pair {symbol!r} is already registered")

            handles = tuple(normalize_identity(h) for h in source_handles)
            if not handles:
                raise InvalidConfigError(f"Asset pair {symbol!r} needs at least one source")
            if len(set(handles)) != len(handles):
                raise InvalidConfigError(f"Asset pair {symbol!r} lists a source twice")
            unknown = [h for h in handles if h not in self.sources]
            if unknown:
                raise InvalidConfigError(f"Unknown sources for {symbol!r}: {unknown}")

            pair = AssetPair(symbol, base.strip(), quote.strip(), handles)
            self._pairs = {**self._pairs, symbol: pair}

        logger.info(f"Added asset pair {symbol} with {len(handles)} sources")
        return pair

    def set_active(self, symbol: str, active: bool, *, caller: object = None) -> AssetPair:
        """Activate or deactivate a pair.

        :raises UnauthorizedError: If the policy rejects the caller.
        :raises AssetPairNotFoundError: If the symbol is not registered.
        """
        with self._lock:
            self.policy.authorize(caller, "set_pair_active")
            pair = dataclasses.replace(self.get(symbol), active=bool(active))
            self._pairs = {**self._pairs, pair.symbol: pair}

        logger.info(f"Asset pair {pair.symbol} {'activated' if active else 'deactivated'}")
        return pair

    def get(self, symbol: str) -> AssetPair:
        """Look up a pair by symbol.

        :raises AssetPairNotFoundError: If the symbol is not registered.
        """
        try:
            return self._pairs[symbol.strip()]
        except KeyError:
            raise AssetPairNotFoundError(f"Asset pair not found: {symbol}") from None

    def resolve(self, symbol: str) -> AssetPair:
        """Look up a pair that can be queried.

        :raises AssetPairNotFoundError: If the symbol is not registered.
        :raises AssetPairInactiveError: If the pair is deactivated.
        """
        pair = self.get(symbol)
        if not pair.active:
            raise AssetPairInactiveError(f"Asset pair not active: {pair.symbol}")
        return pair

    def sources_of(self, symbol: str) -> tuple[str, ...]:
        """Source handles of a pair, in registration order."""
        return self.get(symbol).source_handles

    def is_active(self, symbol: str) -> bool:
        """Whether a pair is active.

        :raises AssetPairNotFoundError: If the symbol is not registered.
        """
        return self.get(symbol).active

    def symbols(self) -> list[str]:
        """Symbols of all pairs, active or not, in registration order."""
        return list(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.strip() in self._pairs
