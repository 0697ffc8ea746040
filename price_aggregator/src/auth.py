"""Authorization policies for administrative mutations.

Registries do not hard-code a single owner. They are given a policy at
construction and ask it before every mutation:

.. code-block:: python

    >>> policy = SingleAdminPolicy("0x5FbDB2315678afecb367f032d93F642f64180aa3")
    >>> policy.authorize("0x5fbdb2315678afecb367f032d93f642f64180aa3", "add_source")
    >>> policy.is_authorized("mallory", "add_source")
    False
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Iterable

from web3 import Web3

from .errors import InvalidConfigError, UnauthorizedError


def normalize_identity(identity: str) -> str:
    """Normalize an identity or handle for comparison.

    EVM addresses are converted to their checksum form so that differently
    cased spellings of the same address compare equal. Anything else is
    returned stripped but otherwise untouched.

    :param identity: Caller identity or feed handle.
    :returns: Normalized identity.
    :raises InvalidConfigError: If the identity is not a string.
    """
    if not isinstance(identity, str):
        raise InvalidConfigError(f"Identity must be a string, got {identity!r}")
    identity = identity.strip()
    if Web3.is_address(identity):
        return Web3.to_checksum_address(identity)
    return identity


class AuthorizationPolicy(ABC):
    """Decides whether a caller may perform an administrative action."""

    @abstractmethod
    def is_authorized(self, caller: object, action: str) -> bool:
        """Check whether ``caller`` may perform ``action``.

        :param caller: Caller identity, or a collection of approvers for
            threshold policies.
        :param action: Name of the administrative action.
        :returns: True if the action is allowed.
        """
        pass

    def authorize(self, caller: object, action: str) -> None:
        """Raise unless ``caller`` may perform ``action``.

        :raises UnauthorizedError: If the policy rejects the caller.
        """
        if not self.is_authorized(caller, action):
            raise UnauthorizedError(caller, action)


class AllowAllPolicy(AuthorizationPolicy):
    """Accepts every caller. Used for embedded, single-tenant engines."""

    def is_authorized(self, caller: object, action: str) -> bool:
        return True


class AdminListPolicy(AuthorizationPolicy):
    """Accepts any caller from a fixed set of administrators.

    :ivar admins: Normalized administrator identities.
    """

    def __init__(self, admins: Iterable[str]) -> None:
        """Initialize the policy.

        :param admins: Administrator identities.
        :raises InvalidConfigError: If no administrator is given.
        """
        self.admins = frozenset(normalize_identity(a) for a in admins)
        if not self.admins:
            raise InvalidConfigError("At least one administrator is required")

    def is_authorized(self, caller: object, action: str) -> bool:
        if not isinstance(caller, str):
            return False
        return normalize_identity(caller) in self.admins


class SingleAdminPolicy(AdminListPolicy):
    """Accepts exactly one administrator identity."""

    def __init__(self, admin: str) -> None:
        super().__init__([admin])

    @property
    def admin(self) -> str:
        """The administrator identity."""
        return next(iter(self.admins))


class ThresholdPolicy(AuthorizationPolicy):
    """Accepts a set of approvals once it reaches a threshold of signers.

    The caller passed to :meth:`authorize` is a collection of approver
    identities; unknown approvers are ignored and duplicates count once.

    :ivar signers: Normalized signer identities.
    :ivar threshold: Number of distinct signers required.
    """

    def __init__(self, signers: Iterable[str], threshold: int) -> None:
        """Initialize the policy.

        :param signers: Identities allowed to approve.
        :param threshold: Number of distinct signers required.
        :raises InvalidConfigError: If the threshold cannot be met.
        """
        self.signers = frozenset(normalize_identity(s) for s in signers)
        if threshold < 1 or threshold > len(self.signers):
            raise InvalidConfigError(
                f"threshold must be between 1 and {len(self.signers)}, got {threshold}"
            )
        self.threshold = threshold

    def is_authorized(self, caller: object, action: str) -> bool:
        if isinstance(caller, str):
            approvers: Collection[str] = [caller]
        elif isinstance(caller, Collection):
            approvers = [a for a in caller if isinstance(a, str)]
        else:
            return False
        approved = {normalize_identity(a) for a in approvers} & self.signers
        return len(approved) >= self.threshold
