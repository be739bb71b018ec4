"""
Signed requests.

A Request is the unit of work a relayer submits to an account: one call
or an ordered batch of calls, plus a signature over the request's
content hash. The hash covers sender, nonce, batch flag and calls; it
never covers the signature itself.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Iterable, Union

from eth_account import Account

from .encoding import canonical_json_hash, hex_to_bytes, normalize_address
from .signatures import SignatureMode, SigningDomain, sign_request_hash


REQUEST_SCHEMA_VERSION = "1"


@dataclass(frozen=True)
class Call:
    """A single ``(target, value, data)`` sub-call."""

    target: str
    value: int = 0
    data: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, "target", normalize_address(self.target))
        if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value < 0:
            raise ValueError("Call value must be a non-negative integer")
        if isinstance(self.data, str):
            object.__setattr__(self, "data", hex_to_bytes(self.data))
        else:
            object.__setattr__(self, "data", bytes(self.data))

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "value": str(self.value),
            "data": "0x" + self.data.hex(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Call:
        return cls(target=d["target"], value=int(d.get("value", 0)), data=d.get("data", "0x"))


@dataclass(frozen=True)
class Request:
    sender: str
    nonce: int
    calls: tuple[Call, ...]
    is_batch: bool = False
    signature: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, "sender", normalize_address(self.sender))
        object.__setattr__(self, "calls", tuple(self.calls))
        if self.nonce < 0:
            raise ValueError("nonce must be >= 0")
        if not self.calls:
            raise ValueError("Request must carry at least one call")
        if not self.is_batch and len(self.calls) != 1:
            raise ValueError("Single requests carry exactly one call")
        if isinstance(self.signature, str):
            object.__setattr__(self, "signature", hex_to_bytes(self.signature))
        else:
            object.__setattr__(self, "signature", bytes(self.signature))

    @classmethod
    def single(
        cls,
        sender: str,
        nonce: int,
        target: str,
        value: int = 0,
        data: bytes = b"",
        signature: bytes = b"",
    ) -> Request:
        return cls(sender=sender, nonce=nonce, calls=(Call(target, value, data),), signature=signature)

    @classmethod
    def batch(cls, sender: str, nonce: int, calls: Iterable[Call], signature: bytes = b"") -> Request:
        return cls(sender=sender, nonce=nonce, calls=tuple(calls), is_batch=True, signature=signature)

    @property
    def targets(self) -> tuple[str, ...]:
        return tuple(c.target for c in self.calls)

    def content(self) -> dict:
        return {
            "schema_version": REQUEST_SCHEMA_VERSION,
            "sender": self.sender,
            "nonce": str(self.nonce),
            "batch": self.is_batch,
            "calls": [c.to_dict() for c in self.calls],
        }

    def request_hash(self) -> bytes:
        return canonical_json_hash(self.content())

    def with_signature(self, signature: Union[bytes, str]) -> Request:
        return dataclasses.replace(self, signature=signature)

    def to_dict(self) -> dict:
        d = self.content()
        d["request_hash"] = "0x" + self.request_hash().hex()
        d["signature"] = "0x" + self.signature.hex()
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Request:
        return cls(
            sender=d["sender"],
            nonce=int(d["nonce"]),
            calls=tuple(Call.from_dict(c) for c in d["calls"]),
            is_batch=bool(d.get("batch", False)),
            signature=d.get("signature", "0x"),
        )


def sign_request(
    request: Request,
    private_key: str,
    chain_id: int,
    mode: SignatureMode = SignatureMode.TYPED_DATA,
) -> Request:
    """Return a copy of ``request`` signed by ``private_key`` under ``mode``."""
    domain = SigningDomain(chain_id=chain_id, verifying_contract=request.sender)
    signature = sign_request_hash(private_key, request.request_hash(), mode, domain)
    return request.with_signature(signature)


def signer_address(private_key: str) -> str:
    return normalize_address(Account.from_key(private_key).address)
