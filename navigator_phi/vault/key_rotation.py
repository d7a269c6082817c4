"""
Vault Key Rotation — Re-encrypt every registered PHI column under a new key.

PHI key:       PENDING → VALIDATING → REENCRYPTING → FINALIZING → COMPLETED
Session secret: PENDING → VALIDATING → INVALIDATING_SESSIONS → COMPLETED
Any stage after PENDING may end in FAILED. A dry run goes straight from
REENCRYPTING to COMPLETED without writes or a ledger record.

When re-encryption starts the key ring is promoted (new key active, old key
retired) so the application keeps writing under the new key and reading
under either while rows migrate. Columns are paged by primary key and each
page is checkpointed, so a failed or interrupted run resumes where it
stopped when re-run with the same new key. The operation is idempotent:
rows that the new key already opens are skipped.

Once a rotation completes, :meth:`RotationOrchestrator.end_grace` verifies
that no row still needs the retired key and drops it from the ring.

Security Note:
    Plaintext exists in memory only while a page is being re-encrypted.
    Never log plaintext or ciphertext values, only fingerprints and keys
    of rows.
"""
import time
import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Union
from datetime import datetime
from dataclasses import dataclass, field

from ..exceptions import (
    ConfigurationError,
    DecryptionError,
    PartialRotationFailure,
    RotationCancelled,
    RotationError,
    RotationInProgressError,
    ValidationError,
)
from ..audit.context import correlation_scope
from ..audit.events import AuditAction, AuditEvent
from .config import KeyRing, fingerprint, parse_hex_key
from .crypto import EncryptedValue, encrypt_field, open_envelope, search_hash
from .ledger import (
    KeyType,
    RotationCheckpoint,
    RotationLedger,
    RotationReason,
    RotationRecord,
    coerce_enum,
    utcnow,
)
from .registry import FieldRegistry, FieldRegistryEntry

logger = logging.getLogger("navigator.vault")


class RotationState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    REENCRYPTING = "REENCRYPTING"
    INVALIDATING_SESSIONS = "INVALIDATING_SESSIONS"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS: dict[RotationState, frozenset] = {
    RotationState.PENDING: frozenset({RotationState.VALIDATING}),
    RotationState.VALIDATING: frozenset({
        RotationState.REENCRYPTING,
        RotationState.INVALIDATING_SESSIONS,
        RotationState.FAILED,
    }),
    RotationState.REENCRYPTING: frozenset({
        RotationState.FINALIZING,
        RotationState.COMPLETED,  # dry run
        RotationState.FAILED,
    }),
    RotationState.INVALIDATING_SESSIONS: frozenset({
        RotationState.COMPLETED,
        RotationState.FAILED,
    }),
    RotationState.FINALIZING: frozenset({
        RotationState.COMPLETED,
        RotationState.FAILED,
    }),
}


class RotationStateMachine:
    """Tracks the current stage and refuses illegal transitions."""

    def __init__(self):
        self.state = RotationState.PENDING
        self.history: list[tuple[RotationState, datetime]] = [
            (RotationState.PENDING, utcnow())
        ]

    def advance(self, target: RotationState) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise RotationError(
                f"Illegal rotation transition {self.state.value} -> {target.value}"
            )
        self.state = target
        self.history.append((target, utcnow()))
        logger.debug("Rotation state: %s", target.value)

    def fail(self) -> None:
        if RotationState.FAILED in _TRANSITIONS.get(self.state, frozenset()):
            self.advance(RotationState.FAILED)


@dataclass
class TableProgress:
    """Outcome of one encrypted column."""

    table: str
    column: str
    scanned: int = 0
    reencrypted: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: list = field(default_factory=list)
    last_pk: Any = None
    resumed_from: Any = None
    cancelled: bool = False

    @property
    def location(self) -> str:
        return f"{self.table}.{self.column}"

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "column": self.column,
            "scanned": self.scanned,
            "reencrypted": self.reencrypted,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "failed": len(self.failed),
            "resumed_from": self.resumed_from,
        }


@dataclass
class RotationSummary:
    """What a rotation run did."""

    key_type: KeyType
    state: RotationState
    old_fingerprint: Optional[str]
    new_fingerprint: str
    record_id: Optional[int] = None
    dry_run: bool = False
    records_affected: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    duration: float = 0.0
    tables: list[TableProgress] = field(default_factory=list)
    history: list[tuple[RotationState, datetime]] = field(default_factory=list)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key_type": self.key_type.value,
            "state": self.state.value,
            "record_id": self.record_id,
            "dry_run": self.dry_run,
            "old_fingerprint": self.old_fingerprint,
            "new_fingerprint": self.new_fingerprint,
            "records_affected": self.records_affected,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "duration": round(self.duration, 3),
            "tables": [t.to_dict() for t in self.tables],
            "history": [
                {"state": state.value, "at": at.isoformat()} for state, at in self.history
            ],
            "correlation_id": self.correlation_id,
        }


# ---------------------------------------------------------------------------
# Page transformation (runs in a worker thread)
# ---------------------------------------------------------------------------

_SKIP = "skip"
_MIGRATE = "migrate"
_FAIL = "fail"


def _transform_page(
    rows: list[tuple[Any, Optional[str]]],
    keys: tuple[bytes, bytes],
    new_key: bytes,
    dry_run: bool,
    searchable: bool = False,
) -> list[tuple[Any, str, Optional[str], Optional[str]]]:
    """Classify each row and produce its replacement envelope.

    ``keys`` is (new, old). Rows the new key opens in the current envelope
    version are skipped; the others are re-encrypted under ``new_key``.
    With ``searchable`` the row's search hash is recomputed under
    ``new_key`` as well.
    """
    results = []
    for pk, stored in rows:
        if stored is None or not stored.strip():
            results.append((pk, _SKIP, None, None))
            continue
        try:
            envelope = EncryptedValue.parse(stored)
            plaintext, index = open_envelope(envelope, keys)
        except DecryptionError:
            results.append((pk, _FAIL, None, None))
            continue
        if index == 0 and envelope.is_current:
            results.append((pk, _SKIP, None, None))
        elif dry_run:
            results.append((pk, _MIGRATE, None, None))
        else:
            digest = search_hash(plaintext, new_key) if searchable else None
            results.append((pk, _MIGRATE, encrypt_field(plaintext, new_key), digest))
        del plaintext
    return results


class RotationOrchestrator:
    """Drives PHI-key and session-secret rotations.

    Args:
        registry: Encrypted columns to migrate.
        ledger: Rotation history, lock and checkpoints.
        key_ring: Live key material shared with the application.
        audit: AuditLogger receiving lifecycle and failure events.
        sessions: SessionAuthenticator, required for session-secret rotation.
        page_size: Rows fetched per page.
        max_workers: Columns processed concurrently.
    """

    def __init__(
        self,
        registry: FieldRegistry,
        ledger: RotationLedger,
        key_ring: KeyRing,
        audit: Any,
        sessions: Any = None,
        *,
        page_size: int = 500,
        max_workers: int = 2,
    ):
        if page_size < 1 or max_workers < 1:
            raise ValidationError("page_size and max_workers must be positive")
        self._registry = registry
        self._ledger = ledger
        self._ring = key_ring
        self._audit = audit
        self._sessions = sessions
        self._page_size = page_size
        self._max_workers = max_workers

    # ------------------------------------------------------------------
    # Audit helper
    # ------------------------------------------------------------------

    def _emit(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Any = None,
        *,
        actor: Optional[str] = None,
        success: bool = True,
        **metadata,
    ) -> None:
        self._audit.record(
            AuditEvent(
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                actor_id=actor,
                success=success,
                metadata=metadata,
            )
        )

    # ------------------------------------------------------------------
    # PHI key
    # ------------------------------------------------------------------

    async def rotate_phi_key(
        self,
        new_key: Union[str, bytes],
        reason: Union[RotationReason, str] = RotationReason.MANUAL,
        *,
        dry_run: bool = False,
        rotated_by: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RotationSummary:
        """Re-encrypt all registered PHI columns under ``new_key``.

        Args:
            new_key: 64 hex characters (or 32 raw bytes).
            reason: scheduled, compromised or manual.
            dry_run: Count rows needing migration; change nothing.
            rotated_by: Actor recorded in the ledger and audit trail.
            cancel: Set to stop at the next page boundary.

        Returns:
            RotationSummary of the run.

        Raises:
            ValidationError: Malformed key, or equal to the current key.
            RotationInProgressError: A PHI rotation is already running.
            PartialRotationFailure: Some rows could not be migrated; the
                ledger record is failed and a re-run resumes.
            RotationCancelled: ``cancel`` was set.
        """
        with correlation_scope() as cid:
            machine = RotationStateMachine()
            started = time.monotonic()
            machine.advance(RotationState.VALIDATING)
            reason = coerce_enum(RotationReason, reason, "rotation reason")
            new = parse_hex_key(new_key, "new PHI key")
            material = self._ring.current
            resume = material.active == new and material.retired is not None
            if resume:
                old = material.retired
            elif new == material.active:
                raise ValidationError("New PHI key must differ from the current key")
            else:
                old = material.active
            old_fp, new_fp = fingerprint(old), fingerprint(new)

            summary = RotationSummary(
                key_type=KeyType.PHI_ENCRYPTION_KEY,
                state=machine.state,
                old_fingerprint=old_fp,
                new_fingerprint=new_fp,
                dry_run=dry_run,
                correlation_id=cid,
            )

            if dry_run:
                machine.advance(RotationState.REENCRYPTING)
                await self._reencrypt_all(
                    old, new, {}, summary.tables, dry_run=True, cancel=cancel,
                )
                machine.advance(RotationState.COMPLETED)
                self._finish(summary, machine, started)
                self._emit(
                    AuditAction.KEY_ROTATION_DRY_RUN, "encryption_key",
                    actor=rotated_by,
                    key_type=KeyType.PHI_ENCRYPTION_KEY.value,
                    old_fingerprint=old_fp, new_fingerprint=new_fp,
                    rows_to_migrate=summary.records_affected,
                    rows_failed=summary.records_failed,
                )
                logger.info(
                    "Dry run: %d row(s) to migrate, %d undecryptable",
                    summary.records_affected, summary.records_failed,
                )
                return summary

            record = await self._ledger.begin(
                KeyType.PHI_ENCRYPTION_KEY, reason, old_fp,
                new_fingerprint=new_fp, rotated_by=rotated_by,
            )
            summary.record_id = record.id
            self._emit(
                AuditAction.KEY_ROTATION_STARTED, "encryption_key", record.id,
                actor=rotated_by,
                key_type=KeyType.PHI_ENCRYPTION_KEY.value,
                reason=reason.value, old_fingerprint=old_fp,
                new_fingerprint=new_fp, resumed=resume,
            )
            machine.advance(RotationState.REENCRYPTING)
            if not resume:
                self._ring.promote(new)

            try:
                checkpoints = await self._ledger.load_checkpoints(
                    KeyType.PHI_ENCRYPTION_KEY, new_fp
                )
                await self._reencrypt_all(
                    old, new, checkpoints, summary.tables,
                    dry_run=False, cancel=cancel,
                    record_id=record.id, actor=rotated_by,
                )
            except Exception as err:
                await self._abort(
                    record, machine, summary, started, rotated_by,
                    f"aborted: {type(err).__name__}",
                )
                raise PartialRotationFailure(
                    f"PHI key rotation aborted ({type(err).__name__}); re-run to resume",
                    record_id=record.id,
                    records_affected=summary.records_affected,
                ) from err

            self._tally(summary)
            failures = {
                t.location: list(t.failed) for t in summary.tables if t.failed
            }
            if any(t.cancelled for t in summary.tables):
                await self._abort(
                    record, machine, summary, started, rotated_by, "cancelled",
                )
                raise RotationCancelled(
                    "PHI key rotation cancelled; re-run to resume",
                    record_id=record.id,
                    records_affected=summary.records_affected,
                    failures=failures,
                )
            if failures:
                await self._abort(
                    record, machine, summary, started, rotated_by,
                    f"{summary.records_failed} undecryptable row(s)",
                )
                raise PartialRotationFailure(
                    f"{summary.records_failed} row(s) could not be re-encrypted",
                    record_id=record.id,
                    records_affected=summary.records_affected,
                    failures=failures,
                )

            machine.advance(RotationState.FINALIZING)
            try:
                await self._ledger.complete(record.id, new_fp, summary.records_affected)
            except Exception:
                machine.fail()
                self._finish(summary, machine, started)
                raise
            await self._ledger.clear_checkpoints(KeyType.PHI_ENCRYPTION_KEY, new_fp)
            machine.advance(RotationState.COMPLETED)
            self._finish(summary, machine, started)
            self._emit(
                AuditAction.KEY_ROTATION_COMPLETED, "encryption_key", record.id,
                actor=rotated_by,
                key_type=KeyType.PHI_ENCRYPTION_KEY.value,
                old_fingerprint=old_fp, new_fingerprint=new_fp,
                records_affected=summary.records_affected,
                records_skipped=summary.records_skipped,
                duration=round(summary.duration, 3),
            )
            logger.info(
                "PHI key rotation #%s complete: %d re-encrypted, %d skipped in %.2fs",
                record.id, summary.records_affected, summary.records_skipped,
                summary.duration,
            )
            return summary

    async def _abort(
        self,
        record: RotationRecord,
        machine: RotationStateMachine,
        summary: RotationSummary,
        started: float,
        actor: Optional[str],
        reason: str,
    ) -> None:
        self._tally(summary)
        await self._ledger.fail(record.id, reason, summary.records_affected)
        machine.fail()
        self._finish(summary, machine, started)
        self._emit(
            AuditAction.KEY_ROTATION_FAILED, "encryption_key", record.id,
            actor=actor, success=False,
            key_type=record.key_type.value,
            error=reason,
            records_affected=summary.records_affected,
            records_failed=summary.records_failed,
        )

    @staticmethod
    def _tally(summary: RotationSummary) -> None:
        summary.records_affected = sum(t.reencrypted for t in summary.tables)
        summary.records_skipped = sum(t.skipped for t in summary.tables)
        summary.records_failed = sum(len(t.failed) for t in summary.tables)

    def _finish(
        self, summary: RotationSummary, machine: RotationStateMachine, started: float
    ) -> None:
        self._tally(summary)
        summary.state = machine.state
        summary.history = list(machine.history)
        summary.duration = time.monotonic() - started

    async def _reencrypt_all(
        self,
        old: bytes,
        new: bytes,
        checkpoints: dict[tuple[str, str], RotationCheckpoint],
        tables: list[TableProgress],
        *,
        dry_run: bool,
        cancel: Optional[asyncio.Event],
        record_id: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> list[TableProgress]:
        """Migrate every PHI column, appending live progress to ``tables``.

        Progress objects are registered before any page is fetched, so
        rows already written are still counted when a column raises.
        """
        semaphore = asyncio.Semaphore(self._max_workers)

        async def worker(entry: FieldRegistryEntry, progress: TableProgress) -> None:
            async with semaphore:
                await self._reencrypt_column(
                    entry, old, new,
                    checkpoints.get((entry.table, entry.encrypted_column)),
                    progress,
                    dry_run=dry_run, cancel=cancel,
                    record_id=record_id, actor=actor,
                )

        entries = self._registry.entries_for(KeyType.PHI_ENCRYPTION_KEY)
        pending = [
            (entry, TableProgress(table=entry.table, column=entry.encrypted_column))
            for entry in entries
        ]
        tables.extend(progress for _, progress in pending)
        results = await asyncio.gather(
            *(worker(entry, progress) for entry, progress in pending),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return tables

    async def _reencrypt_column(
        self,
        entry: FieldRegistryEntry,
        old: bytes,
        new: bytes,
        checkpoint: Optional[RotationCheckpoint],
        progress: TableProgress,
        *,
        dry_run: bool,
        cancel: Optional[asyncio.Event],
        record_id: Optional[int],
        actor: Optional[str],
    ) -> TableProgress:
        repo = self._registry.repository_for(entry)
        searchable = entry.search_column is not None
        processed = 0
        if checkpoint is not None:
            progress.last_pk = progress.resumed_from = checkpoint.last_pk
            processed = checkpoint.processed
            logger.info(
                "Resuming %s after pk=%s", entry.location, checkpoint.last_pk,
            )
        after = progress.last_pk
        # After a failed row the checkpoint stays put so a re-run retries it
        frozen = False

        while True:
            if cancel is not None and cancel.is_set():
                progress.cancelled = True
                logger.warning("Rotation of %s cancelled after pk=%s", entry.location, after)
                break
            page = await repo.fetch_page(after, self._page_size)
            if not page:
                break
            results = await asyncio.to_thread(
                _transform_page, page, (new, old), new, dry_run, searchable,
            )
            stored = dict(page)
            for pk, outcome, replacement, digest in results:
                progress.scanned += 1
                if outcome == _SKIP:
                    progress.skipped += 1
                elif outcome == _FAIL:
                    progress.failed.append(pk)
                    frozen = True
                    if not dry_run:
                        logger.error(
                            "Cannot decrypt %s pk=%s with old or new key",
                            entry.location, pk,
                        )
                        self._emit(
                            AuditAction.DECRYPTION_FAILURE, entry.table, pk,
                            actor=actor, success=False,
                            column=entry.encrypted_column,
                            stage="key_rotation", rotation_id=record_id,
                        )
                elif dry_run:
                    progress.reencrypted += 1
                elif await self._swap(repo, pk, stored[pk], replacement, digest, searchable):
                    progress.reencrypted += 1
                else:
                    # Row rewritten concurrently, under the promoted key
                    progress.conflicts += 1
                    progress.skipped += 1
            after = page[-1][0]
            processed += len(page)
            if not frozen:
                progress.last_pk = after
                if not dry_run:
                    await self._ledger.save_checkpoint(
                        RotationCheckpoint(
                            key_type=entry.key_type,
                            new_fingerprint=fingerprint(new),
                            table=entry.table,
                            column=entry.encrypted_column,
                            last_pk=after,
                            processed=processed,
                        )
                    )
            if len(page) < self._page_size:
                break

        logger.info(
            "%s: scanned=%d reencrypted=%d skipped=%d failed=%d",
            entry.location, progress.scanned, progress.reencrypted,
            progress.skipped, len(progress.failed),
        )
        return progress

    @staticmethod
    async def _swap(
        repo: Any,
        pk: Any,
        expected: str,
        replacement: str,
        digest: Optional[str],
        searchable: bool,
    ) -> bool:
        if searchable:
            return await repo.compare_and_set(pk, expected, replacement, search=digest)
        return await repo.compare_and_set(pk, expected, replacement)

    # ------------------------------------------------------------------
    # Grace window
    # ------------------------------------------------------------------

    async def end_grace(self, *, rotated_by: Optional[str] = None) -> dict[str, Any]:
        """Drop the retired PHI key once no row depends on it.

        Scans every registered column (read-only) first; the key ring is
        only changed when every row opens with the active key in the
        current envelope version.

        Raises:
            ValidationError: No retired key, or rows still need it.
            RotationInProgressError: A PHI rotation is running.
        """
        material = self._ring.current
        if material.retired is None:
            raise ValidationError("No retired PHI key: the grace window is already closed")
        running = await self._ledger.in_progress(KeyType.PHI_ENCRYPTION_KEY)
        if running is not None:
            raise RotationInProgressError(KeyType.PHI_ENCRYPTION_KEY.value)
        retired_fp = material.retired_fingerprint
        tables = await self._reencrypt_all(
            material.retired, material.active, {}, [],
            dry_run=True, cancel=None,
        )
        pending = sum(t.reencrypted for t in tables)
        failed = sum(len(t.failed) for t in tables)
        if pending or failed:
            raise ValidationError(
                f"{pending + failed} row(s) are not yet under the active key; "
                "run rotate to finish the migration"
            )
        material = self._ring.end_grace()
        self._emit(
            AuditAction.KEY_GRACE_ENDED, "encryption_key",
            actor=rotated_by,
            key_type=KeyType.PHI_ENCRYPTION_KEY.value,
            retired_fingerprint=retired_fp,
            active_fingerprint=material.fingerprint,
            rows_checked=sum(t.scanned for t in tables),
        )
        logger.info("PHI key grace window ended: retired %s dropped", retired_fp)
        return {
            "key_type": KeyType.PHI_ENCRYPTION_KEY.value,
            "retired_fingerprint": retired_fp,
            "active_fingerprint": material.fingerprint,
            "rows_checked": sum(t.scanned for t in tables),
        }

    # ------------------------------------------------------------------
    # Session secret
    # ------------------------------------------------------------------

    async def rotate_session_secret(
        self,
        new_secret: Union[str, bytes],
        reason: Union[RotationReason, str] = RotationReason.MANUAL,
        *,
        rotated_by: Optional[str] = None,
    ) -> RotationSummary:
        """Invalidate every active session, then swap the signing secret.

        Raises:
            ConfigurationError: No session authenticator configured.
            ValidationError: Malformed secret, or equal to the current one.
            RotationInProgressError: A session rotation is already running.
            PartialRotationFailure: Invalidation failed; the ledger record
                is failed and the old secret stays in place.
        """
        if self._sessions is None:
            raise ConfigurationError("Session rotation requires a session authenticator")
        with correlation_scope() as cid:
            machine = RotationStateMachine()
            started = time.monotonic()
            machine.advance(RotationState.VALIDATING)
            reason = coerce_enum(RotationReason, reason, "rotation reason")
            new = parse_hex_key(new_secret, "new session secret")
            if self._sessions.is_current_secret(new):
                raise ValidationError("New session secret must differ from the current one")
            old_fp, new_fp = self._sessions.fingerprint, fingerprint(new)
            summary = RotationSummary(
                key_type=KeyType.SESSION_SECRET,
                state=machine.state,
                old_fingerprint=old_fp,
                new_fingerprint=new_fp,
                correlation_id=cid,
            )

            record = await self._ledger.begin(
                KeyType.SESSION_SECRET, reason, old_fp,
                new_fingerprint=new_fp, rotated_by=rotated_by,
            )
            summary.record_id = record.id
            self._emit(
                AuditAction.KEY_ROTATION_STARTED, "session_secret", record.id,
                actor=rotated_by,
                key_type=KeyType.SESSION_SECRET.value,
                reason=reason.value, old_fingerprint=old_fp, new_fingerprint=new_fp,
            )
            machine.advance(RotationState.INVALIDATING_SESSIONS)
            try:
                invalidated = await self._sessions.store.invalidate_all()
                self._sessions.rotate_secret(new)
            except Exception as err:
                await self._ledger.fail(record.id, f"aborted: {type(err).__name__}")
                machine.fail()
                self._finish_sessions(summary, machine, started, 0)
                self._emit(
                    AuditAction.KEY_ROTATION_FAILED, "session_secret", record.id,
                    actor=rotated_by, success=False,
                    key_type=KeyType.SESSION_SECRET.value,
                    error=type(err).__name__,
                )
                raise PartialRotationFailure(
                    "Session invalidation failed; the signing secret was not changed",
                    record_id=record.id,
                ) from err

            await self._ledger.complete(record.id, new_fp, invalidated)
            machine.advance(RotationState.COMPLETED)
            self._finish_sessions(summary, machine, started, invalidated)
            self._emit(
                AuditAction.SESSIONS_INVALIDATED, "session", None,
                actor=rotated_by, count=invalidated, rotation_id=record.id,
            )
            self._emit(
                AuditAction.SESSION_SECRET_ROTATED, "session_secret", record.id,
                actor=rotated_by,
                key_type=KeyType.SESSION_SECRET.value,
                old_fingerprint=old_fp, new_fingerprint=new_fp,
                records_affected=invalidated,
            )
            logger.info(
                "Session secret rotation #%s complete: %d session(s) invalidated",
                record.id, invalidated,
            )
            return summary

    @staticmethod
    def _finish_sessions(
        summary: RotationSummary,
        machine: RotationStateMachine,
        started: float,
        invalidated: int,
    ) -> None:
        summary.records_affected = invalidated
        summary.state = machine.state
        summary.history = list(machine.history)
        summary.duration = time.monotonic() - started
