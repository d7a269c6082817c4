"""
Rotation Ledger — Append-only history of key rotations.

Every rotation attempt is recorded with its outcome. The ledger is also the
single-flight lock: at most one ``in_progress`` record may exist per key
type, enforced atomically by the backend (``_insert_exclusive``).

Per-table checkpoints let an interrupted PHI-key rotation resume from the
last processed primary key instead of starting over.

Security Note:
    Records carry key fingerprints only, never key material.
"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, replace

from ..exceptions import LedgerStateError, ValidationError

logger = logging.getLogger("navigator.vault")


class KeyType(str, Enum):
    PHI_ENCRYPTION_KEY = "PHI_ENCRYPTION_KEY"
    SESSION_SECRET = "SESSION_SECRET"


class RotationReason(str, Enum):
    SCHEDULED = "scheduled"
    COMPROMISED = "compromised"
    MANUAL = "manual"


class RotationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_enum(enum_cls, value, what: str):
    """Accept an enum member or its value; raise ValidationError otherwise."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {what} {value!r} (expected one of: {allowed})") from None


@dataclass(frozen=True)
class RotationRecord:
    """One row of the rotation history."""

    id: int
    key_type: KeyType
    reason: RotationReason
    old_fingerprint: Optional[str]
    new_fingerprint: Optional[str] = None
    records_affected: int = 0
    status: RotationStatus = RotationStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    rotated_by: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RotationStatus.COMPLETED, RotationStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key_type": self.key_type.value,
            "reason": self.reason.value,
            "old_fingerprint": self.old_fingerprint,
            "new_fingerprint": self.new_fingerprint,
            "records_affected": self.records_affected,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "rotated_by": self.rotated_by,
            "error": self.error,
        }


@dataclass(frozen=True)
class RotationCheckpoint:
    """Last primary key processed for one encrypted column."""

    key_type: KeyType
    new_fingerprint: str
    table: str
    column: str
    last_pk: Any
    processed: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def location(self) -> str:
        return f"{self.table}.{self.column}"


class RotationLedger(ABC):
    """Rotation history and single-flight lock.

    Subclasses implement storage primitives; state rules live here so every
    backend enforces the same transitions.
    """

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _insert_exclusive(self, record: RotationRecord) -> RotationRecord:
        """Insert ``record`` as in_progress and assign its id.

        Raises:
            RotationInProgressError: If an in_progress record already exists
                for the key type. Must be atomic with the insert.
        """

    @abstractmethod
    async def get(self, record_id: int) -> Optional[RotationRecord]:
        ...

    @abstractmethod
    async def _update(
        self, record: RotationRecord, expected: RotationStatus
    ) -> bool:
        """Persist ``record`` only if the stored status is still ``expected``."""

    @abstractmethod
    async def history(
        self, key_type: Optional[KeyType] = None, limit: int = 50
    ) -> list[RotationRecord]:
        """Records newest first."""

    @abstractmethod
    async def save_checkpoint(self, checkpoint: RotationCheckpoint) -> None:
        ...

    @abstractmethod
    async def load_checkpoints(
        self, key_type: KeyType, new_fingerprint: str
    ) -> dict[tuple[str, str], RotationCheckpoint]:
        """Checkpoints keyed by (table, column)."""

    @abstractmethod
    async def clear_checkpoints(self, key_type: KeyType, new_fingerprint: str) -> None:
        ...

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def begin(
        self,
        key_type: KeyType,
        reason: RotationReason,
        old_fingerprint: Optional[str],
        *,
        new_fingerprint: Optional[str] = None,
        rotated_by: Optional[str] = None,
    ) -> RotationRecord:
        """Open a rotation, taking the per-key-type lock.

        Raises:
            RotationInProgressError: If a rotation for ``key_type`` is running.
        """
        key_type = coerce_enum(KeyType, key_type, "key type")
        reason = coerce_enum(RotationReason, reason, "rotation reason")
        pending = RotationRecord(
            id=0,
            key_type=key_type,
            reason=reason,
            old_fingerprint=old_fingerprint,
            new_fingerprint=new_fingerprint,
            rotated_by=rotated_by,
        )
        record = await self._insert_exclusive(
            replace(pending, status=RotationStatus.IN_PROGRESS)
        )
        logger.info(
            "Rotation #%s started: key_type=%s reason=%s old=%s",
            record.id, key_type.value, reason.value, old_fingerprint,
        )
        return record

    async def _require_in_progress(self, record_id: int) -> RotationRecord:
        record = await self.get(record_id)
        if record is None:
            raise LedgerStateError(f"Rotation record {record_id} not found")
        if record.status is not RotationStatus.IN_PROGRESS:
            raise LedgerStateError(
                f"Rotation record {record_id} is {record.status.value}; "
                "only in_progress records can change"
            )
        return record

    async def complete(
        self, record_id: int, new_fingerprint: str, records_affected: int
    ) -> RotationRecord:
        record = await self._require_in_progress(record_id)
        done = replace(
            record,
            status=RotationStatus.COMPLETED,
            new_fingerprint=new_fingerprint,
            records_affected=records_affected,
            completed_at=utcnow(),
        )
        if not await self._update(done, RotationStatus.IN_PROGRESS):
            raise LedgerStateError(f"Rotation record {record_id} changed concurrently")
        logger.info(
            "Rotation #%s completed: %d records, new=%s",
            record_id, records_affected, new_fingerprint,
        )
        return done

    async def fail(
        self, record_id: int, reason: str, records_affected: Optional[int] = None
    ) -> RotationRecord:
        record = await self._require_in_progress(record_id)
        failed = replace(
            record,
            status=RotationStatus.FAILED,
            error=reason,
            records_affected=(
                record.records_affected if records_affected is None else records_affected
            ),
            completed_at=utcnow(),
        )
        if not await self._update(failed, RotationStatus.IN_PROGRESS):
            raise LedgerStateError(f"Rotation record {record_id} changed concurrently")
        logger.warning("Rotation #%s failed: %s", record_id, reason)
        return failed

    async def release_stale(
        self, key_type: KeyType, older_than: timedelta
    ) -> list[RotationRecord]:
        """Fail in_progress records older than ``older_than`` (crashed runs)."""
        key_type = coerce_enum(KeyType, key_type, "key type")
        cutoff = utcnow() - older_than
        released = []
        for record in await self.history(key_type, limit=1000):
            if record.status is RotationStatus.IN_PROGRESS and record.started_at < cutoff:
                released.append(await self.fail(record.id, "abandoned"))
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def in_progress(self, key_type: KeyType) -> Optional[RotationRecord]:
        for record in await self.history(key_type, limit=1000):
            if record.status is RotationStatus.IN_PROGRESS:
                return record
        return None

    async def last_completed(self, key_type: KeyType) -> Optional[RotationRecord]:
        key_type = coerce_enum(KeyType, key_type, "key type")
        for record in await self.history(key_type, limit=1000):
            if record.status is RotationStatus.COMPLETED:
                return record
        return None

    async def time_since_last_rotation(
        self, key_type: KeyType, now: Optional[datetime] = None
    ) -> Optional[timedelta]:
        """Elapsed time since the last completed rotation, None if never."""
        record = await self.last_completed(key_type)
        if record is None or record.completed_at is None:
            return None
        return (now or utcnow()) - record.completed_at
