"""
Backup encryption — opaque blobs sealed before they reach object storage.

The object store only sees ciphertext. Blobs are sealed with the active PHI
key and opened with the active or retired key, so backups taken just before
a rotation stay readable during the grace window.
"""
import logging
from typing import Any, Optional

from ..audit.events import AuditAction, AuditEvent
from .config import KeyRing
from .crypto import decrypt_blob, encrypt_blob

logger = logging.getLogger("navigator.vault")


class BackupVault:
    """Seals blobs for an object store exposing ``put_object``/``get_object``."""

    def __init__(self, client: Any, key_ring: KeyRing, audit: Any):
        self._client = client
        self._ring = key_ring
        self._audit = audit

    async def store(
        self, name: str, data: bytes, *, actor_id: Optional[str] = None
    ) -> int:
        """Encrypt and upload; returns the stored size in bytes."""
        material = self._ring.current
        blob = encrypt_blob(data, material)
        await self._client.put_object(name, blob)
        self._audit.record(
            AuditEvent(
                action=AuditAction.BACKUP_ENCRYPTED,
                resource_type="backup",
                resource_id=name,
                actor_id=actor_id,
                metadata={"size": len(blob), "key_fingerprint": material.fingerprint},
            )
        )
        logger.info("Backup %s stored (%d bytes)", name, len(blob))
        return len(blob)

    async def fetch(self, name: str, *, actor_id: Optional[str] = None) -> bytes:
        """Download and decrypt.

        Raises:
            DecryptionError: If neither current key opens the blob.
        """
        blob = await self._client.get_object(name)
        try:
            data = decrypt_blob(blob, self._ring.current)
        except Exception:
            self._audit.record(
                AuditEvent(
                    action=AuditAction.DECRYPTION_FAILURE,
                    resource_type="backup",
                    resource_id=name,
                    actor_id=actor_id,
                    success=False,
                )
            )
            raise
        self._audit.record(
            AuditEvent(
                action=AuditAction.BACKUP_DECRYPTED,
                resource_type="backup",
                resource_id=name,
                actor_id=actor_id,
                metadata={"size": len(data)},
            )
        )
        return data
