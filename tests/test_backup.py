"""
Tests for backup encryption.
"""
import os

import pytest

from navigator_phi.audit.events import AuditAction
from navigator_phi.exceptions import DecryptionError
from navigator_phi.storage.memory import MemoryObjectStore
from navigator_phi.vault.backup import BackupVault
from navigator_phi.vault.config import KeyMaterial, KeyRing


@pytest.fixture
def objects():
    return MemoryObjectStore()


@pytest.fixture
def backups(objects, ring, audit):
    return BackupVault(objects, ring, audit)


class TestBackupVault:
    """The object store only ever sees ciphertext."""

    async def test_store_fetch(self, backups, objects, audit, audit_store, ring):
        dump = b"COPY patients (id, ssn) FROM stdin;\n" + os.urandom(2048)
        size = await backups.store("nightly/2026-10-18.sql", dump, actor_id="backup-job")
        stored = objects.objects["nightly/2026-10-18.sql"]
        assert size == len(stored)
        assert b"COPY patients" not in stored
        assert await backups.fetch("nightly/2026-10-18.sql") == dump

        await audit.flush()
        actions = [e.action for e in audit_store.events]
        assert actions == [AuditAction.BACKUP_ENCRYPTED, AuditAction.BACKUP_DECRYPTED]
        encrypted = audit_store.events[0]
        assert encrypted.metadata["key_fingerprint"] == ring.current.fingerprint
        assert encrypted.actor_id == "backup-job"

    async def test_readable_during_grace_window(self, backups, ring, key_b2):
        await backups.store("before-rotation", b"payload")
        ring.promote(key_b2)
        assert await backups.fetch("before-rotation") == b"payload"

    async def test_unreadable_after_grace_window(self, backups, ring, key_b2, audit, audit_store):
        await backups.store("old", b"payload")
        ring.promote(key_b2)
        ring.end_grace()
        with pytest.raises(DecryptionError):
            await backups.fetch("old")
        await audit.flush()
        assert audit_store.events[-1].action is AuditAction.DECRYPTION_FAILURE

    async def test_missing_object(self, backups):
        with pytest.raises(FileNotFoundError):
            await backups.fetch("missing")

    async def test_other_deployment_key(self, objects, audit, key_c3, backups):
        other = BackupVault(objects, KeyRing(KeyMaterial(active=key_c3)), audit)
        await other.store("foreign", b"payload")
        with pytest.raises(DecryptionError):
            await backups.fetch("foreign")
