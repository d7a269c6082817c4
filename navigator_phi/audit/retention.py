"""
Audit Retention — archive, then purge audit events past the retention period.

Events older than the cutoff (now minus ``retention_years``, seven by
default) are written as one encrypted JSON-lines blob through
:class:`~navigator_phi.vault.BackupVault` and only then deleted from the
primary store. Purges remove a contiguous prefix of the hash chain and
never the newest chained event, so what remains still verifies with
``verify_chain`` and new events keep linking to it.

Usage::

    retention = AuditRetention(store, archive=backup_vault, audit=audit)
    stats = await retention.enforce_retention()
"""
import time
import logging
from typing import Any, Optional
from datetime import datetime, timezone
from dataclasses import dataclass

import orjson

from ..exceptions import ConfigurationError, ValidationError
from .events import AuditAction, AuditEvent

logger = logging.getLogger("navigator.audit")

DEFAULT_RETENTION_YEARS = 7


def years_before(moment: datetime, years: int) -> datetime:
    """Same calendar day ``years`` earlier; Feb 29 falls back to Feb 28."""
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


@dataclass(frozen=True)
class RetentionPolicy:
    """How long audit events are kept and whether they are archived first."""

    retention_years: int = DEFAULT_RETENTION_YEARS
    archive_before_delete: bool = True
    archive_prefix: str = "audit-archive"

    def __post_init__(self):
        if self.retention_years < 1:
            raise ValidationError("retention_years must be at least 1")
        if self.archive_before_delete and not self.archive_prefix:
            raise ValidationError("archive_prefix is required when archiving")

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return years_before(now or datetime.now(timezone.utc), self.retention_years)


@dataclass
class RetentionStats:
    """What one retention run did."""

    cutoff: datetime
    records_processed: int = 0
    records_archived: int = 0
    records_deleted: int = 0
    errors: int = 0
    duration: float = 0.0
    through_sequence: Optional[int] = None
    archive_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cutoff": self.cutoff.isoformat(),
            "records_processed": self.records_processed,
            "records_archived": self.records_archived,
            "records_deleted": self.records_deleted,
            "errors": self.errors,
            "duration": round(self.duration, 3),
            "through_sequence": self.through_sequence,
            "archive_name": self.archive_name,
        }


def dump_archive(events: list[AuditEvent]) -> bytes:
    return b"".join(orjson.dumps(event.to_dict()) + b"\n" for event in events)


def load_archive(data: bytes) -> list[AuditEvent]:
    """Parse the (decrypted) JSON-lines archive written by a retention run."""
    return [
        AuditEvent.from_dict(orjson.loads(line))
        for line in data.splitlines()
        if line.strip()
    ]


class AuditRetention:
    """Enforces a :class:`RetentionPolicy` on an audit store.

    Args:
        store: Audit store with ``query``, ``tail`` and ``purge_through``.
        archive: BackupVault receiving the encrypted archive blobs.
        audit: AuditLogger recording AUDIT_RETENTION_ENFORCED.
        policy: Default policy for :meth:`enforce_retention`.
    """

    def __init__(
        self,
        store: Any,
        archive: Any = None,
        audit: Any = None,
        policy: Optional[RetentionPolicy] = None,
    ):
        self._store = store
        self._archive = archive
        self._audit = audit
        self.policy = policy or RetentionPolicy()

    async def expired(self, cutoff: datetime) -> list[AuditEvent]:
        """Oldest contiguous run of chained events stamped before ``cutoff``.

        The run starts at the lowest stored sequence, stops at the first gap
        and never includes the newest chained event.
        """
        tail = await self._store.tail()
        if tail is None or tail.sequence is None:
            return []
        head = await self._store.query(limit=1)
        if not head or head[0].sequence is None:
            return []
        expected = head[0].sequence
        run: list[AuditEvent] = []
        for event in await self._store.query(end=cutoff):
            if event.sequence is None or event.sequence >= tail.sequence:
                break
            if event.sequence != expected:
                break
            run.append(event)
            expected += 1
        return run

    async def enforce_retention(
        self,
        policy: Optional[RetentionPolicy] = None,
        *,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> RetentionStats:
        """Archive, then delete, every event past the retention period.

        Nothing is deleted unless the archive upload succeeded.

        Raises:
            ConfigurationError: Archiving is enabled but no archive is set.
        """
        policy = policy or self.policy
        if policy.archive_before_delete and self._archive is None:
            raise ConfigurationError("Audit retention archiving requires a backup vault")
        started = time.monotonic()
        stats = RetentionStats(cutoff=policy.cutoff(now))
        logger.info(
            "Enforcing audit retention (%d years): cutoff %s",
            policy.retention_years, stats.cutoff.isoformat(),
        )
        try:
            events = await self.expired(stats.cutoff)
            stats.records_processed = len(events)
            if events:
                first, last = events[0].sequence, events[-1].sequence
                stats.through_sequence = last
                if policy.archive_before_delete:
                    stats.archive_name = (
                        f"{policy.archive_prefix}/audit-logs-{first:012d}-{last:012d}.jsonl"
                    )
                    await self._archive.store(
                        stats.archive_name, dump_archive(events), actor_id=actor_id,
                    )
                    stats.records_archived = len(events)
                stats.records_deleted = await self._store.purge_through(last)
        except Exception:
            stats.errors += 1
            logger.exception("Audit retention enforcement failed")
            raise
        finally:
            stats.duration = time.monotonic() - started

        if stats.records_processed and self._audit is not None:
            self._audit.record(
                AuditEvent(
                    action=AuditAction.AUDIT_RETENTION_ENFORCED,
                    resource_type="audit_log",
                    actor_id=actor_id,
                    metadata={
                        "cutoff": stats.cutoff.isoformat(),
                        "retention_years": policy.retention_years,
                        "records_archived": stats.records_archived,
                        "records_deleted": stats.records_deleted,
                        "through_sequence": stats.through_sequence,
                        "archive_name": stats.archive_name,
                    },
                )
            )
        logger.info(
            "Audit retention: %d processed, %d archived, %d deleted in %.2fs",
            stats.records_processed, stats.records_archived,
            stats.records_deleted, stats.duration,
        )
        return stats

    async def validate(self, *, now: Optional[datetime] = None) -> dict[str, Any]:
        """Report whether the store currently honours the policy."""
        now = now or datetime.now(timezone.utc)
        issues: list[str] = []
        overdue = await self.expired(self.policy.cutoff(now))
        if overdue:
            issues.append(f"{len(overdue)} audit event(s) exceed the retention period")
        head = await self._store.query(limit=1)
        oldest = head[0].timestamp if head else None
        if oldest is not None and oldest < years_before(now, self.policy.retention_years + 1):
            issues.append(f"Oldest audit event dates from {oldest.date().isoformat()}")
        return {
            "valid": not issues,
            "issues": issues,
            "oldest": oldest.isoformat() if oldest else None,
            "exceeding": len(overdue),
        }
