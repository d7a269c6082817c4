"""
PHIVault — Audited field encryption for application CRUD code.

Provides the public API used by request handlers:
- ``encrypt(table, field, value)`` — envelope a PHI value for storage
- ``decrypt(table, field, stored)`` — open a stored envelope
- ``encrypt_record`` / ``decrypt_record`` — the same for a whole row
- ``encrypt_json`` / ``decrypt_json`` — structured values
- ``search_hash`` / ``search_terms`` — keyed hashes for equality lookups

Every call that touches PHI emits exactly one audit event, stamped with the
current correlation ID. Failed decryptions are audited as
DECRYPTION_FAILURE and re-raised.

Security Note:
    Never log plaintext or ciphertext values. Only log table/field names,
    record ids and actors.
"""
import logging
from typing import Any, Optional

from ..exceptions import DecryptionError
from ..audit.events import AuditAction, AuditEvent
from .config import KeyRing
from .crypto import (
    decrypt_field,
    encrypt_field,
    search_hash,
    search_hashes,
    serialize_value,
    deserialize_value,
)
from .registry import FieldRegistry

logger = logging.getLogger("navigator.vault")


class PHIVault:
    """Encrypts and decrypts registered PHI fields with the live key ring.

    The key material is read from the ring on every call, so a rotation in
    progress is picked up immediately: new writes use the promoted key and
    reads accept either key of the grace window.
    """

    def __init__(
        self,
        key_ring: KeyRing,
        audit: Any,
        registry: Optional[FieldRegistry] = None,
    ):
        self._ring = key_ring
        self._audit = audit
        self._registry = registry
        self.stats = {"reads": 0, "writes": 0, "failures": 0}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _column(self, table: str, field: str) -> str:
        if self._registry is None:
            return field
        return self._registry.lookup(table, field).encrypted_column

    def _search_column(self, table: str, field: str) -> Optional[str]:
        if self._registry is None:
            return None
        return self._registry.lookup(table, field).search_column

    def _audit_event(
        self,
        action: AuditAction,
        table: str,
        record_id: Any,
        actor_id: Optional[str],
        fields: list[str],
        success: bool = True,
    ) -> None:
        self._audit.record(
            AuditEvent(
                action=action,
                resource_type=table,
                resource_id=record_id,
                actor_id=actor_id,
                success=success,
                metadata={"fields": fields},
            )
        )

    # ------------------------------------------------------------------
    # Single field
    # ------------------------------------------------------------------

    def encrypt(
        self,
        table: str,
        field: str,
        value: Optional[str],
        *,
        record_id: Any = None,
        actor_id: Optional[str] = None,
    ) -> Optional[str]:
        """Encrypt one value; empty values map to None and are not audited."""
        stored = encrypt_field(value, self._ring.current)
        if stored is not None:
            self.stats["writes"] += 1
            self._audit_event(AuditAction.PHI_WRITE, table, record_id, actor_id, [field])
        return stored

    def decrypt(
        self,
        table: str,
        field: str,
        stored: Optional[str],
        *,
        record_id: Any = None,
        actor_id: Optional[str] = None,
    ) -> Optional[str]:
        """Decrypt one stored envelope.

        Raises:
            DecryptionError: If no current key opens the envelope.
        """
        if stored is None or not stored.strip():
            return None
        try:
            value = decrypt_field(stored, self._ring.current)
        except DecryptionError:
            self.stats["failures"] += 1
            logger.warning(
                "PHI decryption failed: %s.%s id=%s", table, field, record_id,
            )
            self._audit_event(
                AuditAction.DECRYPTION_FAILURE, table, record_id, actor_id,
                [field], success=False,
            )
            raise
        self.stats["reads"] += 1
        self._audit_event(AuditAction.PHI_READ, table, record_id, actor_id, [field])
        return value

    # ------------------------------------------------------------------
    # Whole record
    # ------------------------------------------------------------------

    def encrypt_record(
        self,
        table: str,
        values: dict[str, Optional[str]],
        *,
        record_id: Any = None,
        actor_id: Optional[str] = None,
    ) -> dict[str, Optional[str]]:
        """Encrypt logical fields into ``{encrypted_column: envelope}``.

        Fields registered with a search column also get
        ``{search_column: hash}``. Blank values are stored as None and are
        not listed in the audit event.
        """
        material = self._ring.current
        row = {}
        for name, value in values.items():
            row[self._column(table, name)] = encrypt_field(value, material)
            search_column = self._search_column(table, name)
            if search_column is not None:
                row[search_column] = search_hash(value, material)
        written = [
            name for name, value in values.items()
            if value is not None and value.strip()
        ]
        if written:
            self.stats["writes"] += 1
            self._audit_event(AuditAction.PHI_WRITE, table, record_id, actor_id, written)
        return row

    def decrypt_record(
        self,
        table: str,
        row: dict[str, Optional[str]],
        fields: Optional[list[str]] = None,
        *,
        record_id: Any = None,
        actor_id: Optional[str] = None,
    ) -> dict[str, Optional[str]]:
        """Decrypt ``fields`` (logical names) of a stored row.

        One PHI_READ event covers the whole row.
        """
        material = self._ring.current
        if fields is None:
            if self._registry is None:
                fields = list(row)
            else:
                fields = [
                    e.field for e in self._registry
                    if e.table == table and e.encrypted_column in row
                ]
        result: dict[str, Optional[str]] = {}
        try:
            for name in fields:
                result[name] = decrypt_field(row.get(self._column(table, name)), material)
        except DecryptionError:
            self.stats["failures"] += 1
            logger.warning("PHI decryption failed: %s id=%s", table, record_id)
            self._audit_event(
                AuditAction.DECRYPTION_FAILURE, table, record_id, actor_id,
                list(fields), success=False,
            )
            raise
        self.stats["reads"] += 1
        self._audit_event(AuditAction.PHI_READ, table, record_id, actor_id, list(fields))
        return result

    # ------------------------------------------------------------------
    # Structured values
    # ------------------------------------------------------------------

    def encrypt_json(self, table: str, field: str, value: Any, **kwargs) -> Optional[str]:
        if value is None:
            return None
        return self.encrypt(table, field, serialize_value(value), **kwargs)

    def decrypt_json(self, table: str, field: str, stored: Optional[str], **kwargs) -> Any:
        text = self.decrypt(table, field, stored, **kwargs)
        return deserialize_value(text) if text is not None else None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_hash(self, value: Optional[str]) -> Optional[str]:
        """Hash to store next to a newly written envelope."""
        return search_hash(value, self._ring.current)

    def search_terms(self, value: Optional[str]) -> tuple[str, ...]:
        """Hashes to match when looking a value up.

        Inside a grace window rows not yet migrated carry the hash of the
        retired key, so both are returned.
        """
        return search_hashes(value, self._ring.current)
