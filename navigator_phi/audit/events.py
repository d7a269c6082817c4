"""
Audit Events — immutable records of PHI access and key-lifecycle actions.

Events are chained: each carries the SHA-256 hash of its predecessor, and
its own hash covers a canonical (sorted-key orjson) rendering of every
field. Editing, deleting or reordering a stored event breaks the chain.

Security Note:
    Metadata is guarded at construction time. Keys that name secret or
    plaintext material are rejected, and so are values that look like
    ciphertext envelopes or raw 256-bit keys.
"""
import re
import uuid
import hashlib
from enum import Enum
from typing import Any, Iterable, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace

import orjson

from ..exceptions import ValidationError

GENESIS_HASH = "0" * 64
MAX_METADATA_STRING = 256


class AuditAction(str, Enum):
    PHI_READ = "PHI_READ"
    PHI_WRITE = "PHI_WRITE"
    PHI_DELETE = "PHI_DELETE"
    DECRYPTION_FAILURE = "DECRYPTION_FAILURE"
    KEY_ROTATION_STARTED = "KEY_ROTATION_STARTED"
    KEY_ROTATION_COMPLETED = "KEY_ROTATION_COMPLETED"
    KEY_ROTATION_FAILED = "KEY_ROTATION_FAILED"
    KEY_ROTATION_DRY_RUN = "KEY_ROTATION_DRY_RUN"
    KEY_ROTATION_OVERDUE = "KEY_ROTATION_OVERDUE"
    SESSION_SECRET_ROTATED = "SESSION_SECRET_ROTATED"
    SESSIONS_INVALIDATED = "SESSIONS_INVALIDATED"
    BACKUP_ENCRYPTED = "BACKUP_ENCRYPTED"
    BACKUP_DECRYPTED = "BACKUP_DECRYPTED"
    KEY_GRACE_ENDED = "KEY_GRACE_ENDED"
    AUDIT_RETENTION_ENFORCED = "AUDIT_RETENTION_ENFORCED"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


PHI_ACTIONS = frozenset({
    AuditAction.PHI_READ,
    AuditAction.PHI_WRITE,
    AuditAction.PHI_DELETE,
    AuditAction.DECRYPTION_FAILURE,
})

DEFAULT_SEVERITY: dict[AuditAction, Severity] = {
    AuditAction.PHI_READ: Severity.LOW,
    AuditAction.PHI_WRITE: Severity.MEDIUM,
    AuditAction.PHI_DELETE: Severity.HIGH,
    AuditAction.DECRYPTION_FAILURE: Severity.HIGH,
    AuditAction.KEY_ROTATION_STARTED: Severity.HIGH,
    AuditAction.KEY_ROTATION_COMPLETED: Severity.HIGH,
    AuditAction.KEY_ROTATION_FAILED: Severity.CRITICAL,
    AuditAction.KEY_ROTATION_DRY_RUN: Severity.LOW,
    AuditAction.KEY_ROTATION_OVERDUE: Severity.HIGH,
    AuditAction.SESSION_SECRET_ROTATED: Severity.HIGH,
    AuditAction.SESSIONS_INVALIDATED: Severity.MEDIUM,
    AuditAction.BACKUP_ENCRYPTED: Severity.MEDIUM,
    AuditAction.BACKUP_DECRYPTED: Severity.HIGH,
    AuditAction.KEY_GRACE_ENDED: Severity.HIGH,
    AuditAction.AUDIT_RETENTION_ENFORCED: Severity.HIGH,
}

# ---------------------------------------------------------------------------
# Metadata guard
# ---------------------------------------------------------------------------

FORBIDDEN_METADATA_KEYS = frozenset({
    "plaintext", "value", "decrypted", "secret", "password", "key",
    "raw_key", "new_key", "old_key", "token", "ciphertext",
})
_ENVELOPE = re.compile(r"^v\d+:[0-9a-fA-F]+:[0-9a-fA-F]+:[0-9a-fA-F]*$")
_RAW_KEY = re.compile(r"[0-9a-fA-F]{64}")
_SCALARS = (str, int, float, bool, type(None))


def _check_metadata_value(name: str, value: Any) -> None:
    if isinstance(value, str):
        if len(value) > MAX_METADATA_STRING:
            raise ValidationError(f"Audit metadata {name!r} is too long")
        if _ENVELOPE.match(value.strip()) or _RAW_KEY.search(value):
            raise ValidationError(
                f"Audit metadata {name!r} looks like ciphertext or key material"
            )
    elif not isinstance(value, _SCALARS):
        raise ValidationError(f"Audit metadata {name!r} must be a scalar")


def validate_metadata(metadata: Optional[dict]) -> dict[str, Any]:
    """Return a copy of ``metadata`` that passed the guard.

    Raises:
        ValidationError: On a forbidden key or a suspicious value.
    """
    if not metadata:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Audit metadata must be a mapping")
    clean: dict[str, Any] = {}
    for name, value in metadata.items():
        if not isinstance(name, str) or not name:
            raise ValidationError("Audit metadata keys must be non-empty strings")
        if name.lower() in FORBIDDEN_METADATA_KEYS:
            raise ValidationError(f"Audit metadata key {name!r} is not allowed")
        if isinstance(value, (list, tuple)):
            for item in value:
                _check_metadata_value(name, item)
            value = list(value)
        else:
            _check_metadata_value(name, value)
        clean[name] = value
    return clean


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    """One append-only audit record."""

    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    success: bool = True
    severity: Optional[Severity] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)
    sequence: Optional[int] = None
    previous_hash: Optional[str] = None
    hash: Optional[str] = None

    def __post_init__(self):
        action = AuditAction(self.action)
        object.__setattr__(self, "action", action)
        if self.severity is None:
            severity = DEFAULT_SEVERITY[action]
            if not self.success and severity in (Severity.LOW, Severity.MEDIUM):
                severity = Severity.HIGH
        else:
            severity = Severity(self.severity)
        object.__setattr__(self, "severity", severity)
        if not self.resource_type:
            raise ValidationError("Audit event resource_type is required")
        if self.resource_id is not None:
            object.__setattr__(self, "resource_id", str(self.resource_id))
        object.__setattr__(self, "metadata", validate_metadata(self.metadata))

    @property
    def is_phi_access(self) -> bool:
        return self.action in PHI_ACTIONS

    def with_correlation(self, cid: str) -> "AuditEvent":
        return replace(self, correlation_id=cid)

    def payload(self) -> dict[str, Any]:
        """Every field except ``hash``; the input of :meth:`compute_hash`."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "actor_id": self.actor_id,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "success": self.success,
            "severity": self.severity.value,
            "metadata": self.metadata,
            "sequence": self.sequence,
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self) -> str:
        canonical = orjson.dumps(self.payload(), option=orjson.OPT_SORT_KEYS)
        return hashlib.sha256(canonical).hexdigest()

    def chained(self, sequence: int, previous_hash: str) -> "AuditEvent":
        """Return a copy linked after ``previous_hash`` with its hash set."""
        linked = replace(
            self, sequence=sequence, previous_hash=previous_hash, hash=None
        )
        return replace(linked, hash=linked.compute_hash())

    def to_dict(self) -> dict[str, Any]:
        data = self.payload()
        data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEvent":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        metadata = data.get("metadata") or {}
        if isinstance(metadata, (str, bytes)):
            metadata = orjson.loads(metadata)
        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            correlation_id=data.get("correlation_id"),
            actor_id=data.get("actor_id"),
            action=AuditAction(data["action"]),
            resource_type=data["resource_type"],
            resource_id=data.get("resource_id"),
            success=bool(data.get("success", True)),
            severity=Severity(data["severity"]),
            metadata=metadata,
            sequence=data.get("sequence"),
            previous_hash=data.get("previous_hash"),
            hash=data.get("hash"),
        )


def verify_chain(events: Iterable[AuditEvent]) -> tuple[bool, Optional[int]]:
    """Check hashes and links of events ordered by sequence.

    Returns:
        (True, None) when intact, else (False, sequence of the first bad event).
    """
    previous = None
    for event in events:
        if event.hash is None or event.compute_hash() != event.hash:
            return False, event.sequence
        if previous is not None:
            if event.previous_hash != previous.hash:
                return False, event.sequence
            if event.sequence != previous.sequence + 1:
                return False, event.sequence
        previous = event
    return True, None
