"""Shared fixtures: fixed test keys, key ring, in-memory backends."""
import os

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from navigator_phi.audit.logger import AuditLogger
from navigator_phi.sessions import SessionAuthenticator
from navigator_phi.storage.memory import (
    MemoryAuditStore,
    MemoryRepositoryFactory,
    MemoryRotationLedger,
    MemorySessionStore,
)
from navigator_phi.vault.config import KeyMaterial, KeyRing
from navigator_phi.vault.crypto import encrypt_field
from navigator_phi.vault.key_rotation import RotationOrchestrator
from navigator_phi.vault.registry import FieldRegistry

KEY_A1 = "a1" * 32
KEY_B2 = "b2" * 32
KEY_C3 = "c3" * 32
SESSION_SECRET_1 = "5e" * 32
SESSION_SECRET_2 = "7f" * 32

TEST_FIELDS = {
    "patients": {
        "ssn": "patient_ssn_encrypted",
        "dob": "patient_dob_encrypted",
    },
    "clinical_sessions_hipaa": {
        "session_notes": "session_notes_encrypted",
    },
}


def legacy_v1(plaintext: str, key: bytes) -> str:
    """Envelope as written by the previous format: raw key, 16-byte IV, no AAD."""
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return f"v1:{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"


def seed_column(repository, count: int, key: bytes, start: int = 1, prefix: str = "phi"):
    """Fill a memory repository with ``count`` envelopes under ``key``."""
    for pk in range(start, start + count):
        repository.rows[pk] = encrypt_field(f"{prefix}-{pk}", key)


@pytest.fixture
def key_a1() -> bytes:
    return bytes.fromhex(KEY_A1)


@pytest.fixture
def key_b2() -> bytes:
    return bytes.fromhex(KEY_B2)


@pytest.fixture
def key_c3() -> bytes:
    return bytes.fromhex(KEY_C3)


@pytest.fixture
def ring(key_a1) -> KeyRing:
    return KeyRing(KeyMaterial(active=key_a1))


@pytest.fixture
def repositories() -> MemoryRepositoryFactory:
    return MemoryRepositoryFactory()


@pytest.fixture
def registry(repositories) -> FieldRegistry:
    return FieldRegistry.from_mapping(TEST_FIELDS, repositories)


@pytest.fixture
def ledger() -> MemoryRotationLedger:
    return MemoryRotationLedger()


@pytest.fixture
def audit_store() -> MemoryAuditStore:
    return MemoryAuditStore()


@pytest_asyncio.fixture
async def audit(audit_store):
    logger = AuditLogger(audit_store, max_attempts=3, backoff_min=0, backoff_max=0)
    await logger.start()
    yield logger
    await logger.close()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def authenticator(session_store) -> SessionAuthenticator:
    return SessionAuthenticator(session_store, SESSION_SECRET_1)


@pytest.fixture
def orchestrator(registry, ledger, ring, audit, authenticator) -> RotationOrchestrator:
    return RotationOrchestrator(
        registry, ledger, ring, audit, authenticator,
        page_size=100, max_workers=2,
    )
