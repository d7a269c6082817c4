"""
PostgreSQL backends over an asyncpg-compatible connection pool.

Schema (created by ``create_schema``):
- ``rotation_history``: append-only ledger; a partial unique index on
  ``key_type WHERE status = 'in_progress'`` is the single-flight lock.
- ``rotation_checkpoints``: resumable per-column progress.
- ``audit_logs``: append-only. UPDATE is a rule to NOTHING; DELETE is too
  unless the transaction set ``navigator.audit_retention = on`` (retention
  purges only).
- ``sessions``: session rows; payload is jsonpickle text.

Encrypted PHI columns belong to the application tables and are reached
through ``PgFieldRepository`` with identifiers from the field registry.
"""
import logging
from typing import Any, Optional
from dataclasses import replace

import orjson

from ..exceptions import RotationInProgressError
from ..audit.events import AuditAction, AuditEvent
from ..sessions import SessionData, SessionStore
from ..vault.ledger import (
    KeyType,
    RotationCheckpoint,
    RotationLedger,
    RotationReason,
    RotationRecord,
    RotationStatus,
)
from ..vault.registry import FieldRegistryEntry

logger = logging.getLogger("navigator.vault")

SCHEMA = """
CREATE TABLE IF NOT EXISTS rotation_history (
    id BIGSERIAL PRIMARY KEY,
    key_type TEXT NOT NULL,
    reason TEXT NOT NULL,
    old_fingerprint TEXT,
    new_fingerprint TEXT,
    records_affected INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ,
    rotated_by TEXT,
    error TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS rotation_history_single_flight
    ON rotation_history (key_type) WHERE status = 'in_progress';

CREATE TABLE IF NOT EXISTS rotation_checkpoints (
    key_type TEXT NOT NULL,
    new_fingerprint TEXT NOT NULL,
    table_name TEXT NOT NULL,
    column_name TEXT NOT NULL,
    last_pk JSONB,
    processed BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (key_type, new_fingerprint, table_name, column_name)
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id UUID PRIMARY KEY,
    sequence BIGINT UNIQUE,
    timestamp TIMESTAMPTZ NOT NULL,
    correlation_id TEXT,
    actor_id TEXT,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    success BOOLEAN NOT NULL,
    severity TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    previous_hash TEXT,
    hash TEXT
);
CREATE INDEX IF NOT EXISTS audit_logs_timestamp_idx ON audit_logs (timestamp);
CREATE INDEX IF NOT EXISTS audit_logs_actor_idx ON audit_logs (actor_id, timestamp);
CREATE OR REPLACE RULE audit_logs_no_update AS ON UPDATE TO audit_logs DO INSTEAD NOTHING;
CREATE OR REPLACE RULE audit_logs_no_delete AS ON DELETE TO audit_logs
    WHERE current_setting('navigator.audit_retention', true) IS DISTINCT FROM 'on'
    DO INSTEAD NOTHING;

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    created TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    max_age INTEGER,
    valid BOOLEAN NOT NULL DEFAULT TRUE,
    invalidated_at TIMESTAMPTZ,
    data TEXT
);
CREATE INDEX IF NOT EXISTS sessions_valid_idx ON sessions (valid) WHERE valid;
"""


async def create_schema(db_pool: Any) -> None:
    async with db_pool.acquire() as conn:
        await conn.execute(SCHEMA)
    logger.info("navigator-phi schema ensured")


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Encrypted columns
# ---------------------------------------------------------------------------

class PgFieldRepository:
    """Pages one encrypted column of an application table.

    Identifiers come from a validated registry entry and are quoted.
    """

    def __init__(self, db_pool: Any, entry: FieldRegistryEntry):
        self._db = db_pool
        table, column, pk = (
            f'"{entry.table}"', f'"{entry.encrypted_column}"', f'"{entry.primary_key}"'
        )
        self._first_page = (
            f"SELECT {pk} AS pk, {column} AS value FROM {table} "
            f"WHERE {column} IS NOT NULL ORDER BY {pk} LIMIT $1"
        )
        self._next_page = (
            f"SELECT {pk} AS pk, {column} AS value FROM {table} "
            f"WHERE {column} IS NOT NULL AND {pk} > $1 ORDER BY {pk} LIMIT $2"
        )
        self._cas = (
            f"UPDATE {table} SET {column} = $3 WHERE {pk} = $1 AND {column} = $2"
        )
        if entry.search_column:
            search = f'"{entry.search_column}"'
            self._cas_search = (
                f"UPDATE {table} SET {column} = $3, {search} = $4 "
                f"WHERE {pk} = $1 AND {column} = $2"
            )

    async def fetch_page(
        self, after_pk: Optional[Any], limit: int
    ) -> list[tuple[Any, Optional[str]]]:
        async with self._db.acquire() as conn:
            if after_pk is None:
                rows = await conn.fetch(self._first_page, limit)
            else:
                rows = await conn.fetch(self._next_page, after_pk, limit)
        return [(row["pk"], row["value"]) for row in rows]

    async def compare_and_set(
        self, pk: Any, expected: str, new: str, search: Optional[str] = None
    ) -> bool:
        async with self._db.acquire() as conn:
            if search is not None:
                status = await conn.execute(self._cas_search, pk, expected, new, search)
            else:
                status = await conn.execute(self._cas, pk, expected, new)
        return _affected(status) == 1


def pg_repository_factory(db_pool: Any):
    """Registry factory producing ``PgFieldRepository`` instances."""
    def factory(entry: FieldRegistryEntry) -> PgFieldRepository:
        return PgFieldRepository(db_pool, entry)
    return factory


# ---------------------------------------------------------------------------
# Rotation ledger
# ---------------------------------------------------------------------------

_INSERT_ROTATION = """
INSERT INTO rotation_history
    (key_type, reason, old_fingerprint, new_fingerprint, records_affected,
     status, started_at, rotated_by)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
ON CONFLICT (key_type) WHERE status = 'in_progress' DO NOTHING
RETURNING id
"""

_UPDATE_ROTATION = """
UPDATE rotation_history
SET status = $2, new_fingerprint = $3, records_affected = $4,
    completed_at = $5, error = $6
WHERE id = $1 AND status = $7
"""

_SELECT_ROTATION = "SELECT * FROM rotation_history WHERE id = $1"

_SELECT_HISTORY = """
SELECT * FROM rotation_history
WHERE ($1::text IS NULL OR key_type = $1)
ORDER BY id DESC
LIMIT $2
"""

_UPSERT_CHECKPOINT = """
INSERT INTO rotation_checkpoints
    (key_type, new_fingerprint, table_name, column_name, last_pk, processed, updated_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
ON CONFLICT (key_type, new_fingerprint, table_name, column_name)
DO UPDATE SET last_pk = EXCLUDED.last_pk,
              processed = EXCLUDED.processed,
              updated_at = EXCLUDED.updated_at
"""

_SELECT_CHECKPOINTS = """
SELECT * FROM rotation_checkpoints WHERE key_type = $1 AND new_fingerprint = $2
"""

_DELETE_CHECKPOINTS = """
DELETE FROM rotation_checkpoints WHERE key_type = $1 AND new_fingerprint = $2
"""


def _record(row) -> RotationRecord:
    return RotationRecord(
        id=row["id"],
        key_type=KeyType(row["key_type"]),
        reason=RotationReason(row["reason"]),
        old_fingerprint=row["old_fingerprint"],
        new_fingerprint=row["new_fingerprint"],
        records_affected=row["records_affected"],
        status=RotationStatus(row["status"]),
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        rotated_by=row["rotated_by"],
        error=row["error"],
    )


class PgRotationLedger(RotationLedger):

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def _insert_exclusive(self, record: RotationRecord) -> RotationRecord:
        async with self._db.acquire() as conn:
            record_id = await conn.fetchval(
                _INSERT_ROTATION,
                record.key_type.value, record.reason.value,
                record.old_fingerprint, record.new_fingerprint,
                record.records_affected, record.status.value,
                record.started_at, record.rotated_by,
            )
        if record_id is None:
            raise RotationInProgressError(record.key_type.value)
        return replace(record, id=record_id)

    async def get(self, record_id: int) -> Optional[RotationRecord]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_ROTATION, record_id)
        return _record(row) if row else None

    async def _update(self, record: RotationRecord, expected: RotationStatus) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute(
                _UPDATE_ROTATION,
                record.id, record.status.value, record.new_fingerprint,
                record.records_affected, record.completed_at, record.error,
                expected.value,
            )
        return _affected(status) == 1

    async def history(
        self, key_type: Optional[KeyType] = None, limit: int = 50
    ) -> list[RotationRecord]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                _SELECT_HISTORY, key_type.value if key_type else None, limit,
            )
        return [_record(row) for row in rows]

    async def save_checkpoint(self, checkpoint: RotationCheckpoint) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _UPSERT_CHECKPOINT,
                checkpoint.key_type.value, checkpoint.new_fingerprint,
                checkpoint.table, checkpoint.column,
                orjson.dumps(checkpoint.last_pk).decode("utf-8"),
                checkpoint.processed, checkpoint.updated_at,
            )

    async def load_checkpoints(
        self, key_type: KeyType, new_fingerprint: str
    ) -> dict[tuple[str, str], RotationCheckpoint]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(_SELECT_CHECKPOINTS, key_type.value, new_fingerprint)
        return {
            (row["table_name"], row["column_name"]): RotationCheckpoint(
                key_type=KeyType(row["key_type"]),
                new_fingerprint=row["new_fingerprint"],
                table=row["table_name"],
                column=row["column_name"],
                last_pk=orjson.loads(row["last_pk"]) if row["last_pk"] else None,
                processed=row["processed"],
                updated_at=row["updated_at"],
            )
            for row in rows
        }

    async def clear_checkpoints(self, key_type: KeyType, new_fingerprint: str) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(_DELETE_CHECKPOINTS, key_type.value, new_fingerprint)


# ---------------------------------------------------------------------------
# Audit store
# ---------------------------------------------------------------------------

_INSERT_AUDIT = """
INSERT INTO audit_logs
    (id, sequence, timestamp, correlation_id, actor_id, action, resource_type,
     resource_id, success, severity, metadata, previous_hash, hash)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13)
ON CONFLICT (id) DO NOTHING
"""

_SELECT_AUDIT_TAIL = """
SELECT * FROM audit_logs WHERE sequence IS NOT NULL ORDER BY sequence DESC LIMIT 1
"""

_COUNT_AUDIT_THROUGH = """
SELECT COUNT(*) FROM audit_logs WHERE sequence IS NOT NULL AND sequence <= $1
"""

_DELETE_AUDIT_THROUGH = """
DELETE FROM audit_logs WHERE sequence IS NOT NULL AND sequence <= $1
"""


def _event(row) -> AuditEvent:
    return AuditEvent.from_dict({
        **dict(row),
        "id": str(row["id"]),
    })


class PgAuditStore:

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def insert(self, event: AuditEvent) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_AUDIT,
                event.id, event.sequence, event.timestamp, event.correlation_id,
                event.actor_id, event.action.value, event.resource_type,
                event.resource_id, event.success, event.severity.value,
                orjson.dumps(event.metadata).decode("utf-8"),
                event.previous_hash, event.hash,
            )

    async def query(
        self,
        *,
        start=None,
        end=None,
        action: Any = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[AuditEvent]:
        clauses, args = [], []
        filters = (
            ("timestamp >= ${}", start),
            ("timestamp < ${}", end),
            ("action = ${}", AuditAction(action).value if action is not None else None),
            ("actor_id = ${}", actor_id),
            ("correlation_id = ${}", correlation_id),
            ("resource_type = ${}", resource_type),
        )
        for clause, value in filters:
            if value is not None:
                args.append(value)
                clauses.append(clause.format(len(args)))
        sql = "SELECT * FROM audit_logs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY sequence NULLS LAST, timestamp"
        if limit:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"
        async with self._db.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_event(row) for row in rows]

    async def tail(self) -> Optional[AuditEvent]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_AUDIT_TAIL)
        return _event(row) if row else None

    async def purge_through(self, sequence: int) -> int:
        """Delete chained events up to and including ``sequence`` (retention).

        The delete rule only lets rows through while the transaction-local
        ``navigator.audit_retention`` setting is on.
        """
        async with self._db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SET LOCAL navigator.audit_retention = 'on'")
                count = await conn.fetchval(_COUNT_AUDIT_THROUGH, sequence)
                await conn.execute(_DELETE_AUDIT_THROUGH, sequence)
        logger.info("Purged %d audit event(s) through sequence %d", count, sequence)
        return count


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

_INSERT_SESSION = """
INSERT INTO sessions (session_id, identity, created, max_age, valid, data)
VALUES ($1, $2, $3, $4, $5, $6)
"""

_SELECT_SESSION = "SELECT * FROM sessions WHERE session_id = $1"

_COUNT_VALID = "SELECT COUNT(*) FROM sessions WHERE valid"

_INVALIDATE_ALL = """
UPDATE sessions SET valid = FALSE, invalidated_at = NOW(), data = NULL
WHERE valid
"""


class PgSessionStore(SessionStore):

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def create(self, session: SessionData) -> SessionData:
        async with self._db.acquire() as conn:
            await conn.execute(
                _INSERT_SESSION,
                session.session_id, str(session.identity), session.created,
                session.max_age, session.valid, session.encode(),
            )
        session.is_changed = False
        return session

    async def get(self, session_id: str) -> Optional[SessionData]:
        async with self._db.acquire() as conn:
            row = await conn.fetchrow(_SELECT_SESSION, session_id)
        if row is None:
            return None
        return SessionData.decode(
            row["data"],
            id=row["session_id"],
            identity=row["identity"],
            created=row["created"],
            max_age=row["max_age"],
            valid=row["valid"],
            invalidated_at=row["invalidated_at"],
        )

    async def count_valid(self) -> int:
        async with self._db.acquire() as conn:
            return await conn.fetchval(_COUNT_VALID)

    async def invalidate_all(self) -> int:
        async with self._db.acquire() as conn:
            status = await conn.execute(_INVALIDATE_ALL)
        count = _affected(status)
        logger.info("Invalidated %d session(s)", count)
        return count
