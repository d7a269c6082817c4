"""
Navigator PHI exceptions.

Messages are generic on purpose: no exception raised from this package
carries plaintext, ciphertext or key material.
"""
from typing import Optional


class PHIError(Exception):
    """Base class for all navigator_phi errors."""


class ConfigurationError(PHIError):
    """Secret material or settings failed validation at startup.

    Fatal: the process must refuse to serve PHI operations.
    """


class ValidationError(PHIError):
    """Bad caller input (key format, metadata, arguments). No side effects."""


class CryptoError(PHIError):
    """Base class for cryptographic failures."""


class EncryptionError(CryptoError):
    """A value could not be encrypted."""


class DecryptionError(CryptoError):
    """A value could not be authenticated/decrypted with any known key."""

    def __init__(self, message: str = "decryption failed"):
        super().__init__(message)


class RotationError(PHIError):
    """Base class for key rotation errors."""


class RotationInProgressError(RotationError):
    """Another rotation for the same key type holds the ledger lock."""

    def __init__(self, key_type: str):
        self.key_type = key_type
        super().__init__(f"A {key_type} rotation is already in progress")


class PartialRotationFailure(RotationError):
    """Some rows or batches failed; the rotation is marked failed and resumable.

    Attributes:
        record_id: Ledger record of the failed run (None for dry runs).
        records_affected: Rows re-encrypted before the failure.
        failures: Mapping of ``table.column`` to the primary keys that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        record_id: Optional[int] = None,
        records_affected: int = 0,
        failures: Optional[dict[str, list]] = None,
    ):
        self.record_id = record_id
        self.records_affected = records_affected
        self.failures = failures or {}
        super().__init__(message)


class RotationCancelled(PartialRotationFailure):
    """Rotation stopped at a page boundary after a cancellation request."""


class LedgerStateError(RotationError):
    """Illegal transition of a rotation record (e.g. mutating a completed one)."""


class AuditWriteFailure(PHIError):
    """The primary audit store is unreachable; events were buffered.

    Never raised to callers of ``AuditLogger.record``; handed to alert
    handlers instead.
    """


class InvalidSessionError(PHIError):
    """A session token is unsigned, forged, expired or invalidated."""
