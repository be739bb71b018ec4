"""
Sub-call execution.

The owner may execute directly. The trusted relayer may execute only
the calls of a request the account has just authorized: validation
leaves a one-shot ticket, and the ticket is spent before the first
sub-call is dispatched. A reentrant callee therefore cannot replay the
authorization, and any request it submits is authorized from scratch
against the already-updated session-key state.

Batches run inside one atomic chain frame; the first failing call rolls
back everything the batch did and its error propagates unchanged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

from .encoding import normalize_address
from .errors import LengthMismatchError, UnauthorizedError
from .request import Call

if TYPE_CHECKING:
    from .chain import LocalChain
    from .ownership import OwnershipController
    from .request import Request

logger = logging.getLogger(__name__)


class ExecutionEngine:
    def __init__(self, chain: "LocalChain", address: str, ownership: "OwnershipController"):
        self._chain = chain
        self._address = normalize_address(address)
        self._ownership = ownership
        self._ticket: Optional[tuple[bool, tuple[Call, ...]]] = None

    def grant(self, request: "Request") -> None:
        """Record that ``request`` was authorized; replaces any unspent ticket."""
        self._ticket = (request.is_batch, request.calls)

    @property
    def has_ticket(self) -> bool:
        return self._ticket is not None

    def execute(self, caller: str, target: str, value: int = 0, data: bytes = b"") -> bytes:
        call = Call(target, value, data)
        self._admit(caller, False, (call,))
        logger.debug("Account %s calling %s (value: %d)", self._address, call.target, call.value)
        return self._chain.call(self._address, call.target, call.value, call.data)

    def execute_batch(
        self,
        caller: str,
        targets: Sequence[str],
        values: Sequence[int],
        data_items: Sequence[bytes],
    ) -> list[bytes]:
        if not (len(targets) == len(values) == len(data_items)):
            raise LengthMismatchError(len(targets), len(values), len(data_items))
        calls = tuple(Call(t, v, d) for t, v, d in zip(targets, values, data_items))
        self._admit(caller, True, calls)

        logger.debug("Account %s executing batch of %d calls", self._address, len(calls))
        results: list[bytes] = []
        with self._chain.atomic():
            for call in calls:
                results.append(self._chain.call(self._address, call.target, call.value, call.data))
        return results

    def _admit(self, caller: str, is_batch: bool, calls: tuple[Call, ...]) -> None:
        if self._ownership.is_owner(caller):
            return
        if self._ownership.is_trusted_relayer(caller) and self._ticket == (is_batch, calls):
            self._ticket = None
            return
        raise UnauthorizedError(normalize_address(caller), "execute calls")
