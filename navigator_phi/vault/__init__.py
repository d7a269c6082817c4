"""PHI Vault — Envelope encryption of PHI fields and key rotation.

Security Note (Threat Model):
    Key material lives in process memory for the lifetime of the process,
    and plaintext exists in memory while a field is being read or
    re-encrypted. A memory dump of the application process could expose
    both. This is an accepted limitation: mitigation requires HSM/KMS
    integration which is out of scope.
"""

from .config import VaultConfig, KeyMaterial, KeyRing, generate_key, fingerprint
from .crypto import (
    EncryptedValue,
    encrypt_value,
    decrypt_value,
    encrypt_field,
    decrypt_field,
    search_hash,
)
from .registry import FieldRegistry, FieldRegistryEntry, default_registry
from .ledger import KeyType, RotationReason, RotationStatus, RotationRecord
from .phi_vault import PHIVault
from .backup import BackupVault
from .key_rotation import RotationOrchestrator, RotationState, RotationSummary

__all__ = [
    "VaultConfig",
    "KeyMaterial",
    "KeyRing",
    "generate_key",
    "fingerprint",
    "EncryptedValue",
    "encrypt_value",
    "decrypt_value",
    "encrypt_field",
    "decrypt_field",
    "search_hash",
    "FieldRegistry",
    "FieldRegistryEntry",
    "default_registry",
    "KeyType",
    "RotationReason",
    "RotationStatus",
    "RotationRecord",
    "PHIVault",
    "BackupVault",
    "RotationOrchestrator",
    "RotationState",
    "RotationSummary",
]
