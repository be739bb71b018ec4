"""Address normalization and canonical hashing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Union

from eth_utils import keccak, to_checksum_address


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def is_zero_address(address: str) -> bool:
    return normalize_address(address) == ZERO_ADDRESS


def checksum(address: str) -> str:
    return to_checksum_address(normalize_address(address))


def address_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def as_hash32(value: Union[bytes, str]) -> bytes:
    """Accept a 32-byte digest as bytes or 0x-prefixed hex."""
    if isinstance(value, str):
        value = hex_to_bytes(value)
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValueError("Hash must be exactly 32 bytes")
    return bytes(value)


def hex_to_bytes(value: str) -> bytes:
    candidate = value.strip()
    if candidate.lower().startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) % 2:
        raise ValueError(f"Odd-length hex string: {value}")
    try:
        return bytes.fromhex(candidate)
    except ValueError as e:
        raise ValueError(f"Invalid hex string: {value}") from e


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        _normalize_for_canonical_json(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> bytes:
    """Return the keccak256 digest of canonical JSON bytes."""
    return keccak(canonical_json_bytes(value))


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in canonical payloads")
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")
