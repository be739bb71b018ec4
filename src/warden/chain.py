"""
In-process execution substrate.

LocalChain stands in for the EVM the accounts would live on: balances,
deployed contracts, a block timestamp, an event log, and value-carrying
calls. Every call runs in an atomic frame; if anything inside raises,
balances, contract storage, deployments and events roll back to the
state before the frame and the exception propagates unchanged.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol

from .encoding import normalize_address
from .errors import InsufficientBalanceError, NoCodeError

logger = logging.getLogger(__name__)


DEFAULT_CHAIN_ID = 8453


class Contract(Protocol):
    """Anything that can be deployed at an address and receive calls.

    Contracts with persistent state expose it as a dataclass ``storage``
    attribute so the chain can snapshot and restore it.
    """

    address: str

    def on_call(self, chain: "LocalChain", sender: str, value: int, data: bytes) -> bytes: ...


@dataclass
class LogEntry:
    address: str
    event: str
    args: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "event": self.event,
            "args": dict(self.args),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> LogEntry:
        return cls(
            address=d["address"],
            event=d["event"],
            args=dict(d.get("args", {})),
            timestamp=int(d.get("timestamp", 0)),
        )


@dataclass
class _Snapshot:
    balances: dict[str, int]
    contracts: dict[str, Contract]
    storages: dict[str, Any]
    log_count: int


class LocalChain:
    """Single-threaded local chain with nested atomic frames."""

    def __init__(self, chain_id: int = DEFAULT_CHAIN_ID, timestamp: Optional[int] = None):
        if chain_id <= 0:
            raise ValueError("chain_id must be > 0")
        self.chain_id = int(chain_id)
        self.timestamp = int(time.time()) if timestamp is None else int(timestamp)
        self.logs: list[LogEntry] = []
        self._balances: dict[str, int] = {}
        self._contracts: dict[str, Contract] = {}

    # ── Time ──────────────────────────────────────────────────────

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Cannot move chain time backwards")
        self.timestamp += int(seconds)
        return self.timestamp

    # ── Balances ──────────────────────────────────────────────────

    def balance_of(self, address: str) -> int:
        return self._balances.get(normalize_address(address), 0)

    def mint(self, address: str, amount: int) -> None:
        """Credit native value out of thin air (faucet)."""
        if amount < 0:
            raise ValueError("amount must be >= 0")
        addr = normalize_address(address)
        self._balances[addr] = self._balances.get(addr, 0) + int(amount)

    def balances(self) -> dict[str, int]:
        return dict(self._balances)

    # ── Code ──────────────────────────────────────────────────────

    def has_code(self, address: str) -> bool:
        return normalize_address(address) in self._contracts

    def deploy(self, address: str, contract: Contract) -> None:
        addr = normalize_address(address)
        if addr in self._contracts:
            raise ValueError(f"Address already has code: {addr}")
        self._contracts[addr] = contract
        logger.debug("Contract deployed at %s (%s)", addr, type(contract).__name__)

    def get_contract(self, address: str) -> Contract:
        addr = normalize_address(address)
        contract = self._contracts.get(addr)
        if contract is None:
            raise NoCodeError(addr)
        return contract

    def contracts(self) -> dict[str, Contract]:
        return dict(self._contracts)

    # ── Events ────────────────────────────────────────────────────

    def emit(self, address: str, event: str, **args: Any) -> LogEntry:
        entry = LogEntry(
            address=normalize_address(address),
            event=event,
            args=args,
            timestamp=self.timestamp,
        )
        self.logs.append(entry)
        return entry

    def events(self, event: Optional[str] = None, address: Optional[str] = None) -> list[LogEntry]:
        addr = normalize_address(address) if address else None
        return [
            e for e in self.logs
            if (event is None or e.event == event) and (addr is None or e.address == addr)
        ]

    # ── Calls ─────────────────────────────────────────────────────

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run a block as one all-or-nothing frame."""
        snapshot = self._snapshot()
        try:
            yield
        except BaseException:
            self._restore(snapshot)
            raise

    def call(self, sender: str, target: str, value: int = 0, data: bytes = b"") -> bytes:
        """Transfer ``value`` from sender to target and dispatch ``data`` if target has code."""
        if value < 0:
            raise ValueError("value must be >= 0")
        src = normalize_address(sender)
        dst = normalize_address(target)
        with self.atomic():
            if value:
                balance = self._balances.get(src, 0)
                if balance < value:
                    raise InsufficientBalanceError(src, balance, value)
                self._balances[src] = balance - value
                self._balances[dst] = self._balances.get(dst, 0) + value
            contract = self._contracts.get(dst)
            if contract is None:
                return b""
            return contract.on_call(self, src, value, bytes(data))

    def _snapshot(self) -> _Snapshot:
        storages = {}
        for addr, contract in self._contracts.items():
            storage = getattr(contract, "storage", None)
            if dataclasses.is_dataclass(storage):
                storages[addr] = copy.deepcopy(storage)
        return _Snapshot(
            balances=dict(self._balances),
            contracts=dict(self._contracts),
            storages=storages,
            log_count=len(self.logs),
        )

    def _restore(self, snapshot: _Snapshot) -> None:
        self._balances = snapshot.balances
        self._contracts = snapshot.contracts
        del self.logs[snapshot.log_count:]
        for addr, saved in snapshot.storages.items():
            live = self._contracts[addr].storage  # type: ignore[attr-defined]
            # Restore in place: components hold references to the live object.
            for f in dataclasses.fields(saved):
                setattr(live, f.name, getattr(saved, f.name))
