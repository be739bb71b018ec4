"""
Smart accounts.

Every account variant offers the same capability surface (initialize,
validate, execute, signature check). Two variants ship:

    SmartAccount   owner plus session keys; the primary, non-upgradeable variant
    SimpleAccount  owner-only signer

Both are assembled from the same components: an OwnershipController,
a SignatureResolver bound to the account's EIP-712 domain, an
AuthorizationGate and an ExecutionEngine. SmartAccount adds a
SessionKeyRegistry to the gate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, Sequence, Union

from .chain import LocalChain
from .encoding import ZERO_ADDRESS, as_hash32, normalize_address
from .errors import (
    AlreadyInitializedError,
    CallRevertedError,
    InvalidSignatureError,
    UnauthorizedError,
    UnknownSignerError,
    WardenError,
)
from .execution import ExecutionEngine
from .gate import SIG_VALIDATION_FAILED, AuthorizationGate
from .ownership import OwnershipController
from .request import Request
from .session_keys import SessionKeyPolicy, SessionKeyRegistry
from .signatures import SignatureResolver, SigningDomain

logger = logging.getLogger(__name__)


ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_INVALID = bytes.fromhex("ffffffff")


@dataclass
class AccountStorage:
    """Persistent account state."""

    owner: str = ZERO_ADDRESS
    pending_owner: str = ZERO_ADDRESS
    trusted_relayer: str = ZERO_ADDRESS
    session_keys: dict[str, SessionKeyPolicy] = field(default_factory=dict)
    initialized: bool = False

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "pending_owner": self.pending_owner,
            "trusted_relayer": self.trusted_relayer,
            "session_keys": {k: p.to_dict() for k, p in self.session_keys.items()},
            "initialized": self.initialized,
        }

    @classmethod
    def from_dict(cls, d: dict) -> AccountStorage:
        return cls(
            owner=normalize_address(d.get("owner", ZERO_ADDRESS)),
            pending_owner=normalize_address(d.get("pending_owner", ZERO_ADDRESS)),
            trusted_relayer=normalize_address(d.get("trusted_relayer", ZERO_ADDRESS)),
            session_keys={
                normalize_address(k): SessionKeyPolicy.from_dict(p)
                for k, p in d.get("session_keys", {}).items()
            },
            initialized=bool(d.get("initialized", False)),
        )


class AccountCapability(Protocol):
    """What relayers, factories and callers rely on."""

    VARIANT: str
    address: str
    storage: AccountStorage

    def initialize(self, owner: str, trusted_relayer: str) -> None: ...

    def validate_request(self, caller: str, request: Request, now: Optional[int] = None) -> int: ...

    def execute(self, caller: str, target: str, value: int = 0, data: bytes = b"") -> bytes: ...

    def execute_batch(
        self,
        caller: str,
        targets: Sequence[str],
        values: Sequence[int],
        data_items: Sequence[bytes],
    ) -> list[bytes]: ...

    def is_valid_signature(self, request_hash: Union[bytes, str], signature: Union[bytes, str]) -> bytes: ...

    def on_call(self, chain: LocalChain, sender: str, value: int, data: bytes) -> bytes: ...


class _AccountBase:
    VARIANT = ""
    STORAGE_CLS = AccountStorage

    def __init__(self, chain: LocalChain, address: str, storage: Optional[AccountStorage] = None):
        self.chain = chain
        self.address = normalize_address(address)
        self.storage = storage or AccountStorage()
        self.ownership = OwnershipController(self.storage, self._emit)
        self.resolver = SignatureResolver(SigningDomain(chain.chain_id, self.address))
        self.engine = ExecutionEngine(chain, self.address, self.ownership)
        self.gate = AuthorizationGate(self.resolver, self.ownership, self._session_keys())

    def _session_keys(self) -> Optional[SessionKeyRegistry]:
        return None

    # ── State ─────────────────────────────────────────────────────

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def pending_owner(self) -> str:
        return self.storage.pending_owner

    @property
    def trusted_relayer(self) -> str:
        return self.storage.trusted_relayer

    @property
    def domain(self) -> SigningDomain:
        return self.resolver.domain

    def initialize(self, owner: str, trusted_relayer: str) -> None:
        if self.storage.initialized:
            raise AlreadyInitializedError(f"Account {self.address} is already initialized")
        self.ownership.initialize(owner, trusted_relayer)
        self.storage.initialized = True
        logger.info(
            "Account initialized: %s (variant: %s, owner: %s, relayer: %s)",
            self.address, self.VARIANT, self.storage.owner, self.storage.trusted_relayer,
        )

    # ── Relayer entrypoint ────────────────────────────────────────

    def validate_request(self, caller: str, request: Request, now: Optional[int] = None) -> int:
        """Validate a relayed request.

        Returns 0 for an owner-signed request, a packed validity window
        for a session key, or SIG_VALIDATION_FAILED when the signature is
        malformed or names no authority. Session-key policy denials raise.
        On success the relayer may execute exactly this request's calls once.
        """
        if not self.ownership.is_trusted_relayer(caller):
            raise UnauthorizedError(normalize_address(caller), "validate requests")
        if request.sender != self.address:
            raise ValueError(f"Request sender {request.sender} is not this account ({self.address})")

        try:
            auth = self.gate.authorize(request, self._now(now))
        except (InvalidSignatureError, UnknownSignerError):
            return SIG_VALIDATION_FAILED
        self.engine.grant(request)
        return auth.validation_data

    # ── Execution ─────────────────────────────────────────────────

    def execute(self, caller: str, target: str, value: int = 0, data: bytes = b"") -> bytes:
        return self.engine.execute(caller, target, value, data)

    def execute_batch(
        self,
        caller: str,
        targets: Sequence[str],
        values: Sequence[int],
        data_items: Sequence[bytes],
    ) -> list[bytes]:
        return self.engine.execute_batch(caller, targets, values, data_items)

    # ── Ownership ─────────────────────────────────────────────────

    def propose_transfer(self, caller: str, new_owner: str) -> None:
        self.ownership.propose_transfer(caller, new_owner)

    def accept_ownership(self, caller: str) -> None:
        self.ownership.accept_ownership(caller)

    def update_trusted_relayer(self, caller: str, new_relayer: str) -> None:
        self.ownership.update_trusted_relayer(caller, new_relayer)

    # ── ERC-1271 ──────────────────────────────────────────────────

    def is_valid_signature(self, request_hash: Union[bytes, str], signature: Union[bytes, str]) -> bytes:
        """Return the ERC-1271 magic value if an active authority signed ``request_hash``."""
        try:
            if self.gate.verify(as_hash32(request_hash), signature, self.chain.timestamp):
                return ERC1271_MAGIC_VALUE
        except (WardenError, ValueError) as e:
            logger.debug("Signature rejected for %s: %s", self.address, e)
        return ERC1271_INVALID

    # ── Chain hooks ───────────────────────────────────────────────

    def on_call(self, chain: LocalChain, sender: str, value: int, data: bytes) -> bytes:
        # Plain value transfers only; administration goes through the direct methods.
        if data:
            raise CallRevertedError(b"Warden: unsupported calldata", target=self.address)
        return b""

    def _emit(self, event: str, **args) -> None:
        self.chain.emit(self.address, event, **args)

    def _now(self, now: Optional[int]) -> int:
        return self.chain.timestamp if now is None else int(now)


class SimpleAccount(_AccountBase):
    """Owner-only account: the owner is the sole signer."""

    VARIANT = "simple"


class SmartAccount(_AccountBase):
    """Owner plus policy-bound session keys."""

    VARIANT = "smart"

    def _session_keys(self) -> SessionKeyRegistry:
        self.session_keys = SessionKeyRegistry(self.storage, self.ownership, self._emit)
        return self.session_keys

    def register_session_key(
        self,
        caller: str,
        key: str,
        valid_after: int,
        valid_until: int,
        limit: Optional[int] = None,
        whitelist: Optional[Iterable[str]] = None,
        enforce_whitelist: Optional[bool] = None,
    ) -> SessionKeyPolicy:
        return self.session_keys.register(
            caller,
            key,
            valid_after,
            valid_until,
            limit=limit,
            whitelist=whitelist,
            enforce_whitelist=enforce_whitelist,
            now=self.chain.timestamp,
        )

    def revoke_session_key(self, caller: str, key: str) -> None:
        self.session_keys.revoke(caller, key, now=self.chain.timestamp)

    def is_session_key_active(self, key: str) -> bool:
        return self.session_keys.is_active(key, self.chain.timestamp)


ACCOUNT_VARIANTS: dict[str, type[_AccountBase]] = {
    SmartAccount.VARIANT: SmartAccount,
    SimpleAccount.VARIANT: SimpleAccount,
}
