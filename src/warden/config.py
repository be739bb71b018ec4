"""Runtime configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .chain import DEFAULT_CHAIN_ID
from .encoding import normalize_address


# ERC-4337 EntryPoint v0.6, the usual relaying authority on EVM chains.
DEFAULT_RELAYER_ADDRESS = "0x5ff137d4b0fdcd49dca30c7cf57e578a026d2789"
DEFAULT_HOME = Path.home() / ".warden"


@dataclass
class WardenConfig:
    home: Path = DEFAULT_HOME
    chain_id: int = DEFAULT_CHAIN_ID
    relayer_address: str = DEFAULT_RELAYER_ADDRESS
    audit_hmac_key: Optional[str] = None

    @property
    def state_path(self) -> Path:
        return self.home / "chain.json"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> WardenConfig:
        env = os.environ if environ is None else environ
        home = env.get("WARDEN_HOME")
        chain_id = env.get("WARDEN_CHAIN_ID")
        relayer = env.get("WARDEN_RELAYER_ADDRESS")
        try:
            parsed_chain_id = int(chain_id) if chain_id else DEFAULT_CHAIN_ID
        except ValueError as e:
            raise ValueError(f"Invalid WARDEN_CHAIN_ID: {chain_id}") from e
        if parsed_chain_id <= 0:
            raise ValueError(f"Invalid WARDEN_CHAIN_ID: {chain_id}")
        return cls(
            home=Path(home).expanduser() if home else DEFAULT_HOME,
            chain_id=parsed_chain_id,
            relayer_address=normalize_address(relayer) if relayer else DEFAULT_RELAYER_ADDRESS,
            audit_hmac_key=env.get("WARDEN_AUDIT_HMAC_KEY") or None,
        )
