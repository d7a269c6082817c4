"""
In-memory backends for development, tests and single-process tools.

Each backend serializes its mutations with an ``asyncio.Lock`` so the same
atomicity rules as the PostgreSQL backends hold: a conditional update either
applies fully or not at all.
"""
import asyncio
import itertools
from typing import Any, Optional
from datetime import datetime
from dataclasses import replace

from ..exceptions import RotationInProgressError
from ..audit.events import AuditAction, AuditEvent
from ..sessions import SessionData, SessionStore
from ..vault.ledger import (
    KeyType,
    RotationCheckpoint,
    RotationLedger,
    RotationRecord,
    RotationStatus,
    utcnow,
)
from ..vault.registry import FieldRegistryEntry


class MemoryFieldRepository:
    """One encrypted column held in a dict of ``pk -> stored value``."""

    def __init__(self, rows: Optional[dict[Any, Optional[str]]] = None):
        self.rows: dict[Any, Optional[str]] = dict(rows or {})
        self.search: dict[Any, Optional[str]] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    def __len__(self) -> int:
        return len(self.rows)

    async def fetch_page(
        self, after_pk: Optional[Any], limit: int
    ) -> list[tuple[Any, Optional[str]]]:
        keys = sorted(
            pk for pk, value in self.rows.items()
            if value is not None and (after_pk is None or pk > after_pk)
        )
        return [(pk, self.rows[pk]) for pk in keys[:limit]]

    async def compare_and_set(
        self, pk: Any, expected: str, new: str, search: Optional[str] = None
    ) -> bool:
        async with self._lock:
            if self.rows.get(pk) != expected:
                return False
            self.rows[pk] = new
            if search is not None:
                self.search[pk] = search
            self.writes += 1
            return True


class MemoryRepositoryFactory:
    """Registry factory that hands out (and remembers) memory repositories."""

    def __init__(self):
        self.repositories: dict[tuple[str, str], MemoryFieldRepository] = {}

    def __call__(self, entry: FieldRegistryEntry) -> MemoryFieldRepository:
        key = (entry.table, entry.encrypted_column)
        if key not in self.repositories:
            self.repositories[key] = MemoryFieldRepository()
        return self.repositories[key]

    def get(self, table: str, column: str) -> MemoryFieldRepository:
        return self.repositories.setdefault((table, column), MemoryFieldRepository())


class MemoryAuditStore:
    """Append-only list of audit events; only retention purges delete."""

    def __init__(self):
        self.events: list[AuditEvent] = []
        self._lock = asyncio.Lock()
        self.fail_writes = False

    async def insert(self, event: AuditEvent) -> None:
        if self.fail_writes:
            raise ConnectionError("audit store unavailable")
        async with self._lock:
            if any(e.id == event.id for e in self.events):
                return
            self.events.append(event)

    async def query(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        action: Any = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[AuditEvent]:
        if action is not None:
            action = AuditAction(action)
        result = [
            e for e in self.events
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp < end)
            and (action is None or e.action == action)
            and (actor_id is None or e.actor_id == actor_id)
            and (correlation_id is None or e.correlation_id == correlation_id)
            and (resource_type is None or e.resource_type == resource_type)
        ]
        result.sort(key=lambda e: (e.sequence is None, e.sequence or 0, e.timestamp))
        return result[:limit] if limit else result

    async def tail(self) -> Optional[AuditEvent]:
        chained = [e for e in self.events if e.sequence is not None]
        if not chained:
            return None
        return max(chained, key=lambda e: e.sequence)

    async def purge_through(self, sequence: int) -> int:
        """Delete chained events up to and including ``sequence`` (retention)."""
        async with self._lock:
            kept = [
                e for e in self.events
                if e.sequence is None or e.sequence > sequence
            ]
            purged = len(self.events) - len(kept)
            self.events = kept
        return purged


class MemorySessionStore(SessionStore):

    def __init__(self):
        self.sessions: dict[str, SessionData] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: SessionData) -> SessionData:
        async with self._lock:
            self.sessions[session.session_id] = session
        session.is_changed = False
        return session

    async def get(self, session_id: str) -> Optional[SessionData]:
        return self.sessions.get(session_id)

    async def count_valid(self) -> int:
        return sum(1 for s in self.sessions.values() if s.valid)

    async def invalidate_all(self) -> int:
        now = utcnow()
        count = 0
        async with self._lock:
            for session in self.sessions.values():
                if session.valid:
                    session.invalidate(now)
                    count += 1
        return count


class MemoryRotationLedger(RotationLedger):

    def __init__(self):
        self._records: dict[int, RotationRecord] = {}
        self._checkpoints: dict[tuple, RotationCheckpoint] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def _insert_exclusive(self, record: RotationRecord) -> RotationRecord:
        async with self._lock:
            for existing in self._records.values():
                if (
                    existing.key_type == record.key_type
                    and existing.status is RotationStatus.IN_PROGRESS
                ):
                    raise RotationInProgressError(record.key_type.value)
            record = replace(record, id=next(self._ids))
            self._records[record.id] = record
            return record

    async def get(self, record_id: int) -> Optional[RotationRecord]:
        return self._records.get(record_id)

    async def _update(self, record: RotationRecord, expected: RotationStatus) -> bool:
        async with self._lock:
            current = self._records.get(record.id)
            if current is None or current.status is not expected:
                return False
            self._records[record.id] = record
            return True

    async def history(
        self, key_type: Optional[KeyType] = None, limit: int = 50
    ) -> list[RotationRecord]:
        records = [
            r for r in self._records.values()
            if key_type is None or r.key_type == key_type
        ]
        records.sort(key=lambda r: r.id, reverse=True)
        return records[:limit]

    async def save_checkpoint(self, checkpoint: RotationCheckpoint) -> None:
        key = (
            checkpoint.key_type, checkpoint.new_fingerprint,
            checkpoint.table, checkpoint.column,
        )
        async with self._lock:
            self._checkpoints[key] = checkpoint

    async def load_checkpoints(
        self, key_type: KeyType, new_fingerprint: str
    ) -> dict[tuple[str, str], RotationCheckpoint]:
        return {
            (cp.table, cp.column): cp
            for (kt, fp, _, _), cp in self._checkpoints.items()
            if kt == key_type and fp == new_fingerprint
        }

    async def clear_checkpoints(self, key_type: KeyType, new_fingerprint: str) -> None:
        async with self._lock:
            for key in [
                k for k in self._checkpoints if k[0] == key_type and k[1] == new_fingerprint
            ]:
                del self._checkpoints[key]


class MemoryObjectStore:
    """Opaque blob storage with the ``put_object`` / ``get_object`` contract."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def put_object(self, name: str, data: bytes) -> None:
        self.objects[name] = bytes(data)

    async def get_object(self, name: str) -> bytes:
        try:
            return self.objects[name]
        except KeyError:
            raise FileNotFoundError(name) from None
