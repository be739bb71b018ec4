"""
Local relayer.

A minimal stand-in for the bundler that submits requests to accounts:
it tracks the next nonce per sender, asks the account to validate, and
forwards authorized requests to the execution entrypoint. The nonce is
spent once validation succeeds, even if execution then reverts, the
same way an ERC-4337 EntryPoint treats a reverted UserOperation.

The relayer is deployed on the chain it serves and keeps its nonces and
receipt log in contract storage. A request handled from inside a call
that later reverts is rolled back with everything else: its nonce is
restored and its receipt disappears from the log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .chain import LocalChain
from .encoding import hex_to_bytes, normalize_address
from .errors import CallRevertedError, InvalidNonceError
from .factory import derived_address
from .gate import SIG_VALIDATION_FAILED, unpack_validation_data
from .request import Request

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReceipt:
    """Outcome of one relayed request."""

    request_hash: str
    sender: str
    nonce: int
    validation_data: int
    success: bool
    return_data: list[bytes] = field(default_factory=list)
    revert_data: Optional[bytes] = None
    reason: Optional[str] = None

    @property
    def validity_window(self) -> tuple[int, int]:
        _, valid_until, valid_after = unpack_validation_data(self.validation_data)
        return valid_after, valid_until

    def to_dict(self) -> dict:
        return {
            "request_hash": self.request_hash,
            "sender": self.sender,
            "nonce": self.nonce,
            "validation_data": hex(self.validation_data),
            "success": self.success,
            "return_data": ["0x" + r.hex() for r in self.return_data],
            "revert_data": "0x" + self.revert_data.hex() if self.revert_data is not None else None,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ExecutionReceipt:
        revert_data = d.get("revert_data")
        return cls(
            request_hash=d["request_hash"],
            sender=normalize_address(d["sender"]),
            nonce=int(d["nonce"]),
            validation_data=int(d["validation_data"], 16),
            success=bool(d["success"]),
            return_data=[hex_to_bytes(r) for r in d.get("return_data", [])],
            revert_data=hex_to_bytes(revert_data) if revert_data is not None else None,
            reason=d.get("reason"),
        )


@dataclass
class RelayerStorage:
    nonces: dict[str, int] = field(default_factory=dict)
    receipts: list[ExecutionReceipt] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nonces": dict(self.nonces),
            "receipts": [r.to_dict() for r in self.receipts],
        }

    @classmethod
    def from_dict(cls, d: dict) -> RelayerStorage:
        return cls(
            nonces={normalize_address(k): int(v) for k, v in d.get("nonces", {}).items()},
            receipts=[ExecutionReceipt.from_dict(r) for r in d.get("receipts", [])],
        )


class LocalRelayer:
    VARIANT = "relayer"
    STORAGE_CLS = RelayerStorage

    def __init__(
        self,
        chain: LocalChain,
        address: Optional[str] = None,
        storage: Optional[RelayerStorage] = None,
    ):
        self.chain = chain
        self.address = normalize_address(address or derived_address("relayer"))
        self.storage = storage or RelayerStorage()
        if not chain.has_code(self.address):
            chain.deploy(self.address, self)

    def get_nonce(self, sender: str) -> int:
        return self.storage.nonces.get(normalize_address(sender), 0)

    def receipts(self, sender: Optional[str] = None) -> list[ExecutionReceipt]:
        """Receipts of requests whose effects are part of the current chain state."""
        if sender is None:
            return list(self.storage.receipts)
        addr = normalize_address(sender)
        return [r for r in self.storage.receipts if r.sender == addr]

    def handle(self, request: Request, now: Optional[int] = None) -> ExecutionReceipt:
        """Validate and execute one request.

        Authorization denials raise out of here untouched. A sub-call
        revert is captured in the receipt with its original revert data.
        """
        account = self.chain.get_contract(request.sender)
        expected = self.get_nonce(request.sender)
        if request.nonce != expected:
            raise InvalidNonceError(request.sender, expected, request.nonce)

        request_hash = "0x" + request.request_hash().hex()
        validation_data = account.validate_request(self.address, request, now)  # type: ignore[attr-defined]
        if validation_data == SIG_VALIDATION_FAILED:
            logger.warning("Dropping request %s: signature validation failed", request_hash[:18])
            return ExecutionReceipt(
                request_hash=request_hash,
                sender=request.sender,
                nonce=request.nonce,
                validation_data=validation_data,
                success=False,
                reason="signature validation failed",
            )

        self.storage.nonces[request.sender] = expected + 1
        try:
            if request.is_batch:
                return_data = account.execute_batch(  # type: ignore[attr-defined]
                    self.address,
                    [c.target for c in request.calls],
                    [c.value for c in request.calls],
                    [c.data for c in request.calls],
                )
            else:
                call = request.calls[0]
                return_data = [account.execute(self.address, call.target, call.value, call.data)]  # type: ignore[attr-defined]
        except CallRevertedError as e:
            logger.info("Request %s reverted: %s", request_hash[:18], e)
            receipt = ExecutionReceipt(
                request_hash=request_hash,
                sender=request.sender,
                nonce=request.nonce,
                validation_data=validation_data,
                success=False,
                revert_data=e.revert_data,
                reason=str(e),
            )
        else:
            receipt = ExecutionReceipt(
                request_hash=request_hash,
                sender=request.sender,
                nonce=request.nonce,
                validation_data=validation_data,
                success=True,
                return_data=return_data,
            )

        self.storage.receipts.append(receipt)
        return receipt

    def on_call(self, chain: LocalChain, sender: str, value: int, data: bytes) -> bytes:
        if data:
            raise CallRevertedError(b"Warden: relayer takes requests via handle()", target=self.address)
        return b""
