"""
Session-key policies.

A session key is a secondary signer with bounded authority over an
account: an inclusive time window, a remaining call count, and an
optional target whitelist. A key registered with the UNLIMITED limit is
a master key: no call budget, no whitelist, and it may register and
revoke other session keys as if it were the owner. The time window
applies to every key, master keys included.

Policies live in the account's storage, keyed by lower-case address.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from .encoding import is_zero_address, normalize_address
from .errors import (
    BatchTooLargeError,
    ExpiredError,
    InvalidWindowError,
    LimitReachedError,
    NotYetValidError,
    TargetNotWhitelistedError,
    UnauthorizedError,
    UnknownSessionKeyError,
    WhitelistTooLargeError,
    ZeroAddressNotAllowedError,
)

if TYPE_CHECKING:
    from .account import AccountStorage
    from .ownership import OwnershipController

logger = logging.getLogger(__name__)


UNLIMITED = 2**256 - 1
MAX_WHITELIST_SIZE = 10
MAX_WHITELISTED_BATCH = 10


@dataclass
class SessionKeyPolicy:
    """Authority granted to one session key."""

    valid_after: int
    valid_until: int
    limit: int = UNLIMITED
    whitelist: list[str] = field(default_factory=list)
    enforce_whitelist: bool = False

    @property
    def is_master(self) -> bool:
        return self.limit == UNLIMITED

    def in_window(self, now: int) -> bool:
        return self.valid_after <= now <= self.valid_until

    def permits(self, target: str) -> bool:
        if self.is_master or not self.enforce_whitelist:
            return True
        return normalize_address(target) in self.whitelist

    def to_dict(self) -> dict:
        return {
            "valid_after": self.valid_after,
            "valid_until": self.valid_until,
            # uint256 sentinel does not survive every JSON reader as a number
            "limit": str(self.limit),
            "whitelist": list(self.whitelist),
            "enforce_whitelist": self.enforce_whitelist,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SessionKeyPolicy:
        return cls(
            valid_after=int(d["valid_after"]),
            valid_until=int(d["valid_until"]),
            limit=int(d.get("limit", UNLIMITED)),
            whitelist=[normalize_address(a) for a in d.get("whitelist", [])],
            enforce_whitelist=bool(d.get("enforce_whitelist", False)),
        )


class SessionKeyRegistry:
    """Lifecycle and policy checks for an account's session keys."""

    def __init__(
        self,
        storage: "AccountStorage",
        ownership: "OwnershipController",
        emit: Optional[Callable[..., Any]] = None,
    ):
        self._storage = storage
        self._ownership = ownership
        self._emit = emit or (lambda event, **args: None)

    # ── Lifecycle ─────────────────────────────────────────────────

    def register(
        self,
        caller: str,
        key: str,
        valid_after: int,
        valid_until: int,
        limit: Optional[int] = None,
        whitelist: Optional[Iterable[str]] = None,
        enforce_whitelist: Optional[bool] = None,
        *,
        now: int,
    ) -> SessionKeyPolicy:
        """Register or overwrite the policy for ``key``.

        ``limit=None`` registers a master key. ``enforce_whitelist=None``
        resolves to ``whitelist is not None``: omitting the whitelist means
        unrestricted targets, while an explicitly supplied list, even an
        empty one, is enforced.
        """
        self._require_admin(caller, now, "register session keys")
        if is_zero_address(key):
            raise ZeroAddressNotAllowedError("session key")
        # valid_until == 0 is the revoked sentinel
        if valid_until == 0 or valid_after < 0 or valid_after > valid_until:
            raise InvalidWindowError(valid_after, valid_until)
        if limit is not None and not (0 <= limit <= UNLIMITED):
            raise ValueError("limit must be between 0 and 2**256 - 1")

        targets = sorted({normalize_address(t) for t in (whitelist or [])})
        if len(targets) > MAX_WHITELIST_SIZE:
            raise WhitelistTooLargeError(len(targets), MAX_WHITELIST_SIZE)

        policy = SessionKeyPolicy(
            valid_after=int(valid_after),
            valid_until=int(valid_until),
            limit=UNLIMITED if limit is None else int(limit),
            whitelist=targets,
            enforce_whitelist=(whitelist is not None) if enforce_whitelist is None else bool(enforce_whitelist),
        )
        normalized_key = normalize_address(key)
        self._storage.session_keys[normalized_key] = policy

        logger.info(
            "Session key registered: %s (window: [%d, %d], master: %s, whitelist: %d)",
            normalized_key, policy.valid_after, policy.valid_until,
            policy.is_master, len(policy.whitelist) if policy.enforce_whitelist else -1,
        )
        self._emit(
            "SessionKeyRegistered",
            key=normalized_key,
            valid_after=policy.valid_after,
            valid_until=policy.valid_until,
            limit=str(policy.limit),
        )
        return policy

    def revoke(self, caller: str, key: str, *, now: int) -> None:
        """Delete the policy for ``key``. The owner, the key itself or a master key may revoke."""
        normalized_key = normalize_address(key)
        if normalize_address(caller) != normalized_key:
            self._require_admin(caller, now, "revoke session keys")
        if normalized_key not in self._storage.session_keys:
            raise UnknownSessionKeyError(normalized_key)

        del self._storage.session_keys[normalized_key]
        logger.info("Session key revoked: %s (by %s)", normalized_key, normalize_address(caller))
        self._emit("SessionKeyRevoked", key=normalized_key, revoked_by=normalize_address(caller))

    # ── Reads ─────────────────────────────────────────────────────

    def get_policy(self, key: str) -> Optional[SessionKeyPolicy]:
        policy = self._storage.session_keys.get(normalize_address(key))
        if policy is None or policy.valid_until == 0:
            return None
        return policy

    def is_registered(self, key: str) -> bool:
        return self.get_policy(key) is not None

    def is_master(self, key: str) -> bool:
        policy = self.get_policy(key)
        return policy is not None and policy.is_master

    def is_active(self, key: str, now: int) -> bool:
        policy = self.get_policy(key)
        if policy is None or not policy.in_window(now):
            return False
        return policy.is_master or policy.limit > 0

    def remaining_uses(self, key: str) -> int:
        policy = self.get_policy(key)
        return 0 if policy is None else policy.limit

    def is_whitelisted(self, key: str, target: str) -> bool:
        policy = self.get_policy(key)
        return policy is not None and policy.permits(target)

    def list_keys(self) -> dict[str, SessionKeyPolicy]:
        return {k: p for k, p in self._storage.session_keys.items() if p.valid_until != 0}

    # ── Authorization ─────────────────────────────────────────────

    def check_and_consume(self, key: str, now: int, targets: Iterable[str]) -> SessionKeyPolicy:
        """Check a request against ``key``'s policy and spend one use.

        Every check runs before the single mutation (the limit decrement),
        so a failure leaves the policy untouched and a success is fully
        recorded before any sub-call can observe the account.
        """
        normalized_key = normalize_address(key)
        policy = self.get_policy(normalized_key)
        if policy is None:
            raise UnknownSessionKeyError(normalized_key)

        if now < policy.valid_after:
            raise NotYetValidError(normalized_key, policy.valid_after, now)
        if now > policy.valid_until:
            raise ExpiredError(normalized_key, policy.valid_until, now)
        if policy.is_master:
            return policy

        if policy.limit == 0:
            raise LimitReachedError(normalized_key)
        if policy.enforce_whitelist:
            target_list = [normalize_address(t) for t in targets]
            if len(target_list) > MAX_WHITELISTED_BATCH:
                raise BatchTooLargeError(len(target_list), MAX_WHITELISTED_BATCH)
            for target in target_list:
                if target not in policy.whitelist:
                    raise TargetNotWhitelistedError(normalized_key, target)

        policy.limit -= 1
        logger.debug("Session key %s consumed one use (%d remaining)", normalized_key, policy.limit)
        return policy

    def _require_admin(self, caller: str, now: int, action: str) -> None:
        if self._ownership.is_owner(caller):
            return
        if self.is_master(caller) and self.is_active(caller, now):
            return
        raise UnauthorizedError(normalize_address(caller), action)
