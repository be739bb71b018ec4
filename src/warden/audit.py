"""
Audit trail for administrative account operations.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .encoding import normalize_address
from .store import ensure_private_dir, ensure_private_file


class EventType(str, Enum):
    ACCOUNT_CREATED = "account_created"
    SESSION_KEY_REGISTERED = "session_key_registered"
    SESSION_KEY_REVOKED = "session_key_revoked"
    OWNERSHIP_PROPOSED = "ownership_proposed"
    OWNERSHIP_ACCEPTED = "ownership_accepted"
    RELAYER_UPDATED = "relayer_updated"
    REQUEST_SIGNED = "request_signed"
    REQUEST_SUBMITTED = "request_submitted"
    SIGNATURE_CHECKED = "signature_checked"
    OPERATION_DENIED = "operation_denied"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    account: Optional[str] = None
    actor: Optional[str] = None
    subject: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log.

    Account, actor and subject are Ethereum addresses and are stored
    lower-cased, so filtering by account matches however the address was
    typed. A value that is not an address is refused rather than logged.
    """

    def __init__(self, path: Path, key_path: Path, hmac_key: Optional[str] = None):
        self.path = path
        self.key_path = key_path

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        if hmac_key:
            self._hmac_key = hmac_key.encode()
        else:
            ensure_private_dir(self.key_path.parent)
            ensure_private_file(self.key_path)
            self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        if self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        account: Optional[str] = None,
        actor: Optional[str] = None,
        subject: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "account": _address_or_none(account),
            "actor": _address_or_none(actor),
            "subject": _address_or_none(subject),
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
        prev_hash = self._last_hash
        current_hash = self._event_hash(payload, prev_hash)

        event = AuditEvent(**payload, prev_hash=prev_hash or None, event_hash=current_hash)

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = current_hash
        return event

    def read_events(
        self,
        account: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        account = _address_or_none(account)
        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "event_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if account and raw.get("account") != account:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue
                events.append(
                    AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
                )

        self._last_hash = expected_prev
        return events[-limit:]


def _address_or_none(address: Optional[str]) -> Optional[str]:
    return normalize_address(address) if address else None
