"""Navigator PHI.

Field-level encryption of protected health information, online key
rotation and a tamper-evident compliance audit trail.
"""
from .version import __version__
from .exceptions import (
    PHIError,
    ConfigurationError,
    ValidationError,
    EncryptionError,
    DecryptionError,
    RotationInProgressError,
    PartialRotationFailure,
    RotationCancelled,
    LedgerStateError,
    AuditWriteFailure,
    InvalidSessionError,
)

__all__ = [
    "__version__",
    "PHIError",
    "ConfigurationError",
    "ValidationError",
    "EncryptionError",
    "DecryptionError",
    "RotationInProgressError",
    "PartialRotationFailure",
    "RotationCancelled",
    "LedgerStateError",
    "AuditWriteFailure",
    "InvalidSessionError",
]
