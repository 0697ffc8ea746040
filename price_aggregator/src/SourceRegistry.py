"""SourceRegistry: Administrator-gated collection of registered price sources.

Sources are kept in an immutable tuple that is replaced on every mutation, so
a reader holding a :meth:`SourceRegistry.snapshot` never observes a partial
update. Mutations are serialized by a lock that may be shared with other
registries.

Removal swaps the removed source with the last one and truncates, so the
order of the remaining sources is not stable across removals.

.. code-block:: python

    >>> registry = SourceRegistry()
    >>> registry.add_source(OracleSource("feed-a", SourceType.ROUND_FEED, weight=2, decimals=8))
    OracleSource(handle='feed-a', ...)
    >>> registry.find_index("feed-a")
    0
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .adapters.base import SourceType, get_adapter_class
from .auth import AllowAllPolicy, AuthorizationPolicy, normalize_identity
from .errors import InvalidConfigError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OracleSource:
    """A registered price source.

    :ivar handle: Opaque feed identity, unique within the registry.
    :ivar source_type: Capability variant of the feed.
    :ivar weight: Positive weight used by the weighted mean.
    :ivar decimals: Native precision of the feed's values.
    :ivar heartbeat_seconds: Maximum tolerated data age, or None to use the
        engine's default heartbeat.
    :ivar description: Human-readable description.
    :ivar options: Type-specific adapter options.
    """

    handle: str
    source_type: SourceType
    weight: int
    decimals: int
    heartbeat_seconds: int | None = None
    description: str = ""
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_type", SourceType.parse(self.source_type))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def effective_heartbeat(self, default_heartbeat_seconds: int) -> int:
        """Heartbeat of this source, falling back to the engine default."""
        if self.heartbeat_seconds is None:
            return default_heartbeat_seconds
        return self.heartbeat_seconds


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_source(source: OracleSource) -> None:
    """Check the invariants of a source before registration.

    :raises InvalidConfigError: If any field is out of range or the adapter
        rejects the options.
    """
    if not isinstance(source.handle, str) or not source.handle.strip():
        raise InvalidConfigError("Source handle must not be empty")
    if not _is_positive_int(source.weight):
        raise InvalidConfigError(f"Weight must be a positive integer, got {source.weight!r}")
    if not _is_positive_int(source.decimals):
        raise InvalidConfigError(
            f"Decimals must be a positive integer, got {source.decimals!r}"
        )
    if source.heartbeat_seconds is not None and not _is_positive_int(source.heartbeat_seconds):
        raise InvalidConfigError(
            f"Heartbeat must be a positive integer, got {source.heartbeat_seconds!r}"
        )
    get_adapter_class(source.source_type).validate_options(source.options)


class SourceRegistry:
    """Registry of price sources with administrator-gated mutation.

    :ivar policy: Authorization policy consulted before every mutation.
    """

    def __init__(
        self,
        policy: AuthorizationPolicy | None = None,
        lock: threading.RLock | None = None,
    ) -> None:
        """Initialize an empty registry.

        :param policy: Authorization policy; defaults to allowing everyone.
        :param lock: Lock serializing mutations, shared with other registries.
        """
        self.policy = policy or AllowAllPolicy()
        self._lock = lock or threading.RLock()
        self._sources: tuple[OracleSource, ...] = ()

    def add_source(self, source: OracleSource, *, caller: object = None) -> OracleSource:
        """Register a new source.

        :param source: Source to register. EVM address handles are stored in
            checksum form.
        :param caller: Identity performing the change.
        :returns: The source as stored.
        :raises UnauthorizedError: If the policy rejects the caller.
        :raises InvalidConfigError: If the source is invalid or its handle is
            already registered.
        """
        with self._lock:
            self.policy.authorize(caller, "add_source")
            validate_source(source)
            source = dataclasses.replace(source, handle=normalize_identity(source.handle))
            if source.handle in self:
                raise InvalidConfigError(f"Source {source.handle!r} is already registered")

            self._sources = self._sources + (source,)

        logger.info(
            f"Added source {source.handle} ({source.source_type.name.lower()}, "
            f"weight {source.weight}, {source.decimals} decimals)"
        )
        return source

    def remove_source(self, handle: str, *, caller: object = None) -> OracleSource:
        """Remove a source by swapping it with the last one and truncating.

        Pairs that still reference the handle keep it; it is skipped at query
        time.

        :param handle: Handle of the source to remove.
        :param caller: Identity performing the change.
        :returns: The removed source.
        :raises UnauthorizedError: If the policy rejects the caller.
        :raises NotFoundError: If the handle is not registered.
        """
        with self._lock:
            self.policy.authorize(caller, "remove_source")
            index = self.find_index(handle)

            sources = list(self._sources)
            removed = sources[index]
            sources[index] = sources[-1]
            sources.pop()
            self._sources = tuple(sources)

        logger.info(f"Removed source {removed.handle}")
        return removed

    def update_weight(
        self, handle: str, new_weight: int, *, caller: object = None
    ) -> OracleSource:
        """Change the weight of a registered source.

        :param handle: Handle of the source.
        :param new_weight: New positive weight.
        :param caller: Identity performing the change.
        :returns: The updated source.
        :raises UnauthorizedError: If the policy rejects the caller.
        :raises NotFoundError: If the handle is not registered.
        :raises InvalidConfigError: If the weight is not positive.
        """
        with self._lock:
            self.policy.authorize(caller, "update_weight")
            index = self.find_index(handle)
            if not _is_positive_int(new_weight):
                raise InvalidConfigError(f"Weight must be a positive integer, got {new_weight!r}")

            sources = list(self._sources)
            updated = dataclasses.replace(sources[index], weight=new_weight)
            sources[index] = updated
            self._sources = tuple(sources)

        logger.info(f"Updated weight of {updated.handle} to {new_weight}")
        return updated

    def find_index(self, handle: str) -> int:
        """Position of a source in the current ordering.

        :raises NotFoundError: If the handle is not registered.
        """
        handle = normalize_identity(handle)
        for index, source in enumerate(self._sources):
            if source.handle == handle:
                return index
        raise NotFoundError(f"Oracle not found: {handle}")

    def get(self, handle: str) -> OracleSource:
        """Look up a source by handle.

        :raises NotFoundError: If the handle is not registered.
        """
        sources = self._sources
        handle = normalize_identity(handle)
        for source in sources:
            if source.handle == handle:
                return source
        raise NotFoundError(f"Oracle not found: {handle}")

    def snapshot(self) -> tuple[OracleSource, ...]:
        """Immutable view of all sources in their current order."""
        return self._sources

    def handles(self) -> list[str]:
        """Handles of all sources in their current order."""
        return [source.handle for source in self._sources]

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[OracleSource]:
        return iter(self._sources)

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, str):
            return False
        handle = normalize_identity(handle)
        return any(source.handle == handle for source in self._sources)
