"""
File-backed chain state for the CLI.

The whole local chain (balances, deployed accounts and relayers with
their storage, event log) is kept in one JSON document. Reads and writes happen under
an exclusive flock and writes go through an atomic rename, so concurrent
CLI invocations never observe a half-written state.
"""

from __future__ import annotations

import fcntl
import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .account import ACCOUNT_VARIANTS
from .chain import LocalChain, LogEntry
from .relayer import LocalRelayer


STATE_SCHEMA_VERSION = 1

# Contract types the store knows how to rebuild, keyed by VARIANT.
PERSISTED_CONTRACTS = {**ACCOUNT_VARIANTS, LocalRelayer.VARIANT: LocalRelayer}


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def chain_to_dict(chain: LocalChain) -> dict:
    contracts = {}
    for address, contract in chain.contracts().items():
        variant = getattr(contract, "VARIANT", None)
        if variant not in PERSISTED_CONTRACTS:
            raise ValueError(f"Cannot persist contract at {address}: {type(contract).__name__}")
        contracts[address] = {"variant": variant, "storage": contract.storage.to_dict()}  # type: ignore[attr-defined]
    return {
        "schema_version": STATE_SCHEMA_VERSION,
        "chain_id": chain.chain_id,
        "balances": {addr: str(bal) for addr, bal in chain.balances().items()},
        "contracts": contracts,
        "logs": [entry.to_dict() for entry in chain.logs],
    }


def chain_from_dict(d: dict) -> LocalChain:
    if int(d.get("schema_version", STATE_SCHEMA_VERSION)) != STATE_SCHEMA_VERSION:
        raise ValueError(f"Unsupported state schema version: {d.get('schema_version')}")
    chain = LocalChain(chain_id=int(d["chain_id"]))
    for address, balance in d.get("balances", {}).items():
        chain.mint(address, int(balance))
    for address, record in d.get("contracts", {}).items():
        contract_cls = PERSISTED_CONTRACTS.get(record["variant"])
        if contract_cls is None:
            raise ValueError(f"Unknown contract variant: {record['variant']}")
        contract = contract_cls(chain, address, storage=contract_cls.STORAGE_CLS.from_dict(record["storage"]))
        # relayers deploy themselves on construction
        if not chain.has_code(address):
            chain.deploy(address, contract)
    chain.logs = [LogEntry.from_dict(e) for e in d.get("logs", [])]
    return chain


class ChainStore:
    def __init__(self, path: Path):
        self.path = path
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".chain.lock"
        ensure_private_file(self._lock_path)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load(self, chain_id: int) -> LocalChain:
        if not self.path.exists():
            return LocalChain(chain_id=chain_id)
        with open(self.path, encoding="utf-8") as f:
            chain = chain_from_dict(json.load(f))
        if chain.chain_id != chain_id:
            raise ValueError(
                f"State at {self.path} belongs to chain {chain.chain_id}, not {chain_id}"
            )
        return chain

    def _save(self, chain: LocalChain) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + f".tmp.{os.getpid()}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(chain_to_dict(chain), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        ensure_private_file(self.path)

    def load(self, chain_id: int) -> LocalChain:
        with self._lock():
            return self._load(chain_id)

    @contextmanager
    def transaction(self, chain_id: int) -> Iterator[LocalChain]:
        """Load, yield, and save the chain under one lock. Nothing is saved if the block raises."""
        with self._lock():
            chain = self._load(chain_id)
            yield chain
            self._save(chain)
