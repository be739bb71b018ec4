"""
Two-phase ownership transfer.

    Owned(owner) --propose--> PendingTransfer(owner, pending) --accept--> Owned(pending)

The current owner keeps full authority until the proposed owner accepts,
so a transfer to a mistyped or unreachable address can never strand the
account. Proposing again replaces the pending owner; proposing the zero
address cancels.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from .encoding import ZERO_ADDRESS, is_zero_address, normalize_address
from .errors import UnauthorizedError, ZeroAddressNotAllowedError

if TYPE_CHECKING:
    from .account import AccountStorage

logger = logging.getLogger(__name__)


class OwnershipController:
    def __init__(self, storage: "AccountStorage", emit: Optional[Callable[..., Any]] = None):
        self._storage = storage
        self._emit = emit or (lambda event, **args: None)

    @property
    def owner(self) -> str:
        return self._storage.owner

    @property
    def pending_owner(self) -> str:
        return self._storage.pending_owner

    @property
    def trusted_relayer(self) -> str:
        return self._storage.trusted_relayer

    @property
    def has_pending_transfer(self) -> bool:
        return self._storage.pending_owner != ZERO_ADDRESS

    def initialize(self, owner: str, trusted_relayer: str) -> None:
        if is_zero_address(owner):
            raise ZeroAddressNotAllowedError("owner")
        if is_zero_address(trusted_relayer):
            raise ZeroAddressNotAllowedError("trusted relayer")
        self._storage.owner = normalize_address(owner)
        self._storage.pending_owner = ZERO_ADDRESS
        self._storage.trusted_relayer = normalize_address(trusted_relayer)
        self._emit("OwnershipTransferred", previous_owner=ZERO_ADDRESS, new_owner=self._storage.owner)

    def is_owner(self, address: str) -> bool:
        return self._storage.owner != ZERO_ADDRESS and normalize_address(address) == self._storage.owner

    def is_trusted_relayer(self, address: str) -> bool:
        return normalize_address(address) == self._storage.trusted_relayer

    def require_owner(self, caller: str, action: str) -> None:
        if not self.is_owner(caller):
            raise UnauthorizedError(normalize_address(caller), action)

    def propose_transfer(self, caller: str, new_owner: str) -> None:
        self.require_owner(caller, "propose an ownership transfer")
        pending = normalize_address(new_owner)
        self._storage.pending_owner = pending
        if pending == ZERO_ADDRESS:
            logger.info("Ownership transfer cancelled by %s", self._storage.owner)
        else:
            logger.info("Ownership transfer proposed: %s -> %s", self._storage.owner, pending)
        self._emit("OwnershipTransferStarted", previous_owner=self._storage.owner, new_owner=pending)

    def accept_ownership(self, caller: str) -> None:
        candidate = normalize_address(caller)
        if not self.has_pending_transfer or candidate != self._storage.pending_owner:
            raise UnauthorizedError(candidate, "accept ownership")
        previous = self._storage.owner
        self._storage.owner = candidate
        self._storage.pending_owner = ZERO_ADDRESS
        logger.info("Ownership transferred: %s -> %s", previous, candidate)
        self._emit("OwnershipTransferred", previous_owner=previous, new_owner=candidate)

    def update_trusted_relayer(self, caller: str, new_relayer: str) -> None:
        self.require_owner(caller, "update the trusted relayer")
        if is_zero_address(new_relayer):
            raise ZeroAddressNotAllowedError("trusted relayer")
        previous = self._storage.trusted_relayer
        self._storage.trusted_relayer = normalize_address(new_relayer)
        logger.info("Trusted relayer updated: %s -> %s", previous, self._storage.trusted_relayer)
        self._emit(
            "TrustedRelayerUpdated",
            previous_relayer=previous,
            new_relayer=self._storage.trusted_relayer,
        )
