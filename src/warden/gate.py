"""
Request authorization.

    Received -> SignerResolved -> OwnerPath | SessionKeyPath -> Authorized | Denied

The gate hashes the request, recovers a signer under each signature
encoding in resolution order and stops at the first one that is the
owner or a registered session key. Owners are authorized outright.
Session keys go through ``check_and_consume``, which is the only place
an authorization decision mutates state; a denied request leaves the
account untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from .errors import AuthorizationError, UnknownSignerError
from .signatures import SignatureMode, SignatureResolver

if TYPE_CHECKING:
    from .ownership import OwnershipController
    from .request import Request
    from .session_keys import SessionKeyRegistry

logger = logging.getLogger(__name__)


SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

_UINT48_MAX = 2**48 - 1


def pack_validation_data(valid_until: int, valid_after: int, sig_failed: bool = False) -> int:
    """Pack an ERC-4337 validation value: ``sigFailed | validUntil << 160 | validAfter << 208``."""
    return (
        (1 if sig_failed else 0)
        | (min(valid_until, _UINT48_MAX) << 160)
        | (min(valid_after, _UINT48_MAX) << 208)
    )


def unpack_validation_data(data: int) -> tuple[bool, int, int]:
    """Inverse of ``pack_validation_data``: ``(sig_failed, valid_until, valid_after)``."""
    sig_failed = (data & ((1 << 160) - 1)) != 0
    valid_until = (data >> 160) & _UINT48_MAX
    valid_after = (data >> 208) & _UINT48_MAX
    return sig_failed, valid_until, valid_after


class AuthorizationPath(str, Enum):
    OWNER = "owner"
    SESSION_KEY = "session_key"


@dataclass(frozen=True)
class Authorization:
    """An approved request."""

    request_hash: bytes
    signer: str
    path: AuthorizationPath
    mode: SignatureMode
    valid_after: int = 0
    valid_until: int = 0

    @property
    def validation_data(self) -> int:
        if self.path == AuthorizationPath.OWNER:
            return SIG_VALIDATION_SUCCESS
        return pack_validation_data(self.valid_until, self.valid_after)


class AuthorizationGate:
    def __init__(
        self,
        resolver: SignatureResolver,
        ownership: "OwnershipController",
        session_keys: Optional["SessionKeyRegistry"] = None,
    ):
        self.resolver = resolver
        self.ownership = ownership
        self.session_keys = session_keys

    @property
    def account(self) -> str:
        return self.resolver.domain.verifying_contract

    def resolve(
        self,
        request_hash: bytes,
        signature: Union[bytes, str],
    ) -> tuple[SignatureMode, str, AuthorizationPath]:
        """Find the first encoding whose signer holds authority over the account."""
        for mode, signer in self.resolver.candidates(request_hash, signature):
            if self.ownership.is_owner(signer):
                return mode, signer, AuthorizationPath.OWNER
            if self.session_keys is not None and self.session_keys.is_registered(signer):
                return mode, signer, AuthorizationPath.SESSION_KEY
        raise UnknownSignerError(self.account)

    def authorize(self, request: "Request", now: int) -> Authorization:
        """Authorize ``request`` or raise the specific denial.

        Session-key bookkeeping (limit decrement) is complete when this
        returns, before the caller dispatches any sub-call.
        """
        request_hash = request.request_hash()
        try:
            mode, signer, path = self.resolve(request_hash, request.signature)
            if path == AuthorizationPath.OWNER:
                auth = Authorization(request_hash, signer, path, mode)
            else:
                policy = self.session_keys.check_and_consume(signer, now, request.targets)
                auth = Authorization(
                    request_hash,
                    signer,
                    path,
                    mode,
                    valid_after=policy.valid_after,
                    valid_until=policy.valid_until,
                )
        except AuthorizationError as e:
            logger.warning(
                "Request 0x%s denied for %s: %s", request_hash.hex()[:16], self.account, e,
            )
            raise

        logger.info(
            "Request 0x%s authorized for %s via %s (%s, signer %s)",
            request_hash.hex()[:16], self.account, path.value, mode.value, signer,
        )
        return auth

    def verify(self, request_hash: bytes, signature: Union[bytes, str], now: int) -> bool:
        """True if the signer is the owner or an active session key. Never mutates."""
        mode, signer, path = self.resolve(request_hash, signature)
        if path == AuthorizationPath.OWNER:
            return True
        return self.session_keys.is_active(signer, now)
