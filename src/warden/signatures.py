"""
Signer recovery for account requests.

A request hash can be signed three ways, and the account accepts all of
them:

    raw         ecrecover(h)
    personal    ecrecover(keccak("\\x19Ethereum Signed Message:\\n32" || h))
    typed_data  ecrecover(EIP-712 digest of AccountRequest{requestHash: h}
                          under the account's domain)

The typed-data domain binds the signature to a name, version, chain id
and the account address, so it cannot be replayed against another
account or chain. Recovery is pure: deciding whether the recovered
address means anything is the gate's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak

from .encoding import as_hash32, checksum, normalize_address
from .errors import InvalidSignatureError


DOMAIN_NAME = "Warden Account"
DOMAIN_VERSION = "1"
SIGNATURE_LENGTH = 65

_PERSONAL_PREFIX = b"\x19Ethereum Signed Message:\n32"
# secp256k1 group order
_SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

REQUEST_TYPES = {
    "AccountRequest": [
        {"name": "requestHash", "type": "bytes32"},
    ],
}


class SignatureMode(str, Enum):
    TYPED_DATA = "typed_data"
    PERSONAL = "personal"
    RAW = "raw"


# Richest, replay-bound encoding first.
RESOLUTION_ORDER = (SignatureMode.TYPED_DATA, SignatureMode.PERSONAL, SignatureMode.RAW)


@dataclass(frozen=True)
class SigningDomain:
    """EIP-712 domain of a single account."""

    chain_id: int
    verifying_contract: str
    name: str = DOMAIN_NAME
    version: str = DOMAIN_VERSION

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": int(self.chain_id),
            "verifyingContract": checksum(self.verifying_contract),
        }


def split_signature(signature: Union[bytes, str]) -> tuple[int, int, int]:
    """Split ``r || s || v`` into (v, r, s) with v normalized to 0/1."""
    if isinstance(signature, str):
        try:
            signature = bytes.fromhex(signature[2:] if signature.lower().startswith("0x") else signature)
        except ValueError as e:
            raise InvalidSignatureError("Signature is not valid hex") from e
    if not isinstance(signature, (bytes, bytearray)):
        raise InvalidSignatureError(f"Signature must be bytes or hex, got {type(signature).__name__}")
    if len(signature) != SIGNATURE_LENGTH:
        raise InvalidSignatureError(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}"
        )
    r = int.from_bytes(signature[0:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise InvalidSignatureError(f"Invalid recovery id: {signature[64]}")
    if not (0 < r < _SECP256K1_N) or not (0 < s < _SECP256K1_N):
        raise InvalidSignatureError("Signature r/s out of range")
    if s > _SECP256K1_N // 2:
        raise InvalidSignatureError("Signature s value is in the malleable upper half")
    return v, r, s


def personal_digest(request_hash: bytes) -> bytes:
    return keccak(_PERSONAL_PREFIX + as_hash32(request_hash))


def typed_data_digest(request_hash: bytes, domain: SigningDomain) -> bytes:
    signable = encode_typed_data(
        domain.to_dict(),
        REQUEST_TYPES,
        {"requestHash": "0x" + as_hash32(request_hash).hex()},
    )
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def mode_digest(
    request_hash: bytes,
    mode: SignatureMode,
    domain: Optional[SigningDomain] = None,
) -> bytes:
    """Return the digest that is actually signed under ``mode``."""
    if mode == SignatureMode.RAW:
        return as_hash32(request_hash)
    if mode == SignatureMode.PERSONAL:
        return personal_digest(request_hash)
    if domain is None:
        raise ValueError("typed_data signatures require a signing domain")
    return typed_data_digest(request_hash, domain)


def recover_signer(
    request_hash: bytes,
    signature: Union[bytes, str],
    mode: SignatureMode,
    domain: Optional[SigningDomain] = None,
) -> str:
    """Recover the signer address (lower-case) of ``signature`` under ``mode``."""
    v, r, s = split_signature(signature)
    digest = mode_digest(request_hash, mode, domain)
    try:
        public_key = keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValidationError) as e:
        raise InvalidSignatureError(f"Signature recovery failed: {e}") from e
    return normalize_address(public_key.to_checksum_address())


def sign_request_hash(
    private_key: str,
    request_hash: bytes,
    mode: SignatureMode = SignatureMode.TYPED_DATA,
    domain: Optional[SigningDomain] = None,
) -> bytes:
    """Sign a request hash under the given encoding. Returns 65 bytes ``r || s || v``."""
    request_hash = as_hash32(request_hash)
    if mode == SignatureMode.RAW:
        signed = Account.unsafe_sign_hash(request_hash, private_key)
    elif mode == SignatureMode.PERSONAL:
        signed = Account.sign_message(encode_defunct(primitive=request_hash), private_key)
    else:
        if domain is None:
            raise ValueError("typed_data signatures require a signing domain")
        signed = Account.sign_typed_data(
            private_key,
            domain.to_dict(),
            REQUEST_TYPES,
            {"requestHash": "0x" + request_hash.hex()},
        )
    return bytes(signed.signature)


class SignatureResolver:
    """Recovers candidate signers for one account's signing domain."""

    def __init__(self, domain: SigningDomain):
        self.domain = domain

    def recover(self, request_hash: bytes, signature: Union[bytes, str], mode: SignatureMode) -> str:
        return recover_signer(request_hash, signature, mode, self.domain)

    def candidates(
        self,
        request_hash: bytes,
        signature: Union[bytes, str],
    ) -> Iterator[tuple[SignatureMode, str]]:
        """Yield ``(mode, signer)`` for every mode in resolution order.

        The signature shape is validated once up front, so a malformed
        signature raises before anything is yielded.
        """
        split_signature(signature)
        for mode in RESOLUTION_ORDER:
            yield mode, self.recover(request_hash, signature, mode)
