"""
Audit trail for allowance changes, permits and subscription pulls.

Each line of the JSONL file records one outcome against one agreement.
Lines are chained with an HMAC over the previous line's hash, so an edited,
dropped or reordered line is reported when the trail is read back.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .agreement import AgreementKey
from .config import DEFAULT_HOME, ensure_private_dir, ensure_private_file
from .events import ApprovalForSubscription


DEFAULT_AUDIT_PATH = DEFAULT_HOME / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".subpermit-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "SUBPERMIT_AUDIT_HMAC_KEY"

_CHAIN_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    APPROVAL_FOR_SUBSCRIPTION = "approval_for_subscription"
    PERMIT_ACCEPTED = "permit_accepted"
    PERMIT_REJECTED = "permit_rejected"
    SPEND_COMPLETED = "spend_completed"
    SPEND_DENIED = "spend_denied"


@dataclass
class AuditEvent:
    """One outcome recorded against an agreement.

    ``amount`` is a decimal string; agreement terms (interval, expiry) and
    outcome specifics (recipient, period, error class) live in ``details``.
    """

    event_type: str
    timestamp: float
    owner: Optional[str] = None
    spender: Optional[str] = None
    amount: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @property
    def agreement(self) -> Optional[tuple[str, str, int, int]]:
        """(owner, spender, interval, expiry) when the entry names an agreement."""
        details = self.details or {}
        if not (self.owner and self.spender and "interval" in details and "expiry" in details):
            return None
        return (self.owner, self.spender, int(details["interval"]), int(details["expiry"]))

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


def agreement_details(key: AgreementKey, **extra: Any) -> dict[str, Any]:
    details = {"interval": str(key.interval), "expiry": str(key.expiry)}
    details.update({k: v for k, v in extra.items() if v is not None})
    return details


class AuditTrail:
    """Tamper-evident append-only audit log, safe to share between threads."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        # guards _last_hash from read through append to update
        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        for raw in self._raw_lines():
            last = raw.get("event_hash", "")
        return last

    def _raw_lines(self) -> Iterator[dict]:
        if not self.path.exists():
            return
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _append(self, payload: dict) -> AuditEvent:
        with self._lock:
            prev_hash = self._last_hash
            current_hash = self._event_hash(payload, prev_hash)
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )
            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._last_hash = current_hash
        ensure_private_file(self.path)
        return event

    def log(
        self,
        event_type: EventType,
        owner: Optional[str] = None,
        spender: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "owner": owner,
            "spender": spender,
            # uint256 values do not survive JSON numbers
            "amount": str(amount) if amount is not None else None,
            "success": success,
            "reason": reason,
            "details": details or None,
        }
        return self._append({k: v for k, v in payload.items() if v is not None})

    def log_agreement(
        self,
        event_type: EventType,
        key: AgreementKey,
        amount: Optional[int] = None,
        error: Optional[Exception] = None,
        **details: Any,
    ) -> AuditEvent:
        """Record an outcome for ``key``; passing ``error`` marks it a failure."""
        if error is not None:
            details["error"] = type(error).__name__
        return self.log(
            event_type,
            owner=key.owner,
            spender=key.spender,
            amount=amount,
            success=error is None,
            reason=str(error) if error is not None else None,
            details=agreement_details(key, **details),
        )

    def record_approval(self, event: ApprovalForSubscription) -> AuditEvent:
        """Listener for allowance notifications."""
        key = AgreementKey(event.owner, event.spender, event.interval, event.expiry)
        return self.log_agreement(EventType.APPROVAL_FOR_SUBSCRIPTION, key, amount=event.amount)

    def _verified(self) -> Iterator[dict]:
        expected_prev = ""
        for raw in self._raw_lines():
            payload = {k: v for k, v in raw.items() if k not in _CHAIN_FIELDS}
            prev_hash = raw.get("prev_hash", "") or ""
            event_hash = raw.get("event_hash", "") or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._event_hash(payload, prev_hash), event_hash):
                raise RuntimeError("Audit chain broken: event hash mismatch")
            expected_prev = event_hash
            yield raw

    def verify(self) -> int:
        """Check the whole chain and return the number of entries."""
        with self._lock:
            return sum(1 for _ in self._verified())

    def read_events(
        self,
        owner: Optional[str] = None,
        spender: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        with self._lock:
            for raw in self._verified():
                if owner and raw.get("owner") != owner.lower():
                    continue
                if spender and raw.get("spender") != spender.lower():
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue
                events.append(
                    AuditEvent(**{k: v for k, v in raw.items() if k in AuditEvent.__dataclass_fields__})
                )
        return events[-limit:]

    def summary(self, owner: Optional[str] = None) -> dict:
        events = self.read_events(owner=owner, limit=10000)
        by_type: dict[str, int] = {}
        pulled = 0
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.SPEND_COMPLETED.value and e.amount is not None:
                pulled += int(e.amount)
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "total_pulled": str(pulled),
            "last_event": events[-1].to_json() if events else None,
        }
