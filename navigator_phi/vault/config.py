"""
Vault Configuration — Secret loading, key material and validated settings.

Reads operator-supplied secrets from environment variables:
    PHI_ENCRYPTION_KEY = <64 hex chars, 32 bytes>
    PHI_ENCRYPTION_KEY_PREVIOUS = <64 hex chars> (optional grace-window key)
    SESSION_SECRET = <64 hex chars>

Security Note:
    Never log key material. Only log key fingerprints.
"""
import os
import re
import hmac
import secrets
import hashlib
import logging
import threading
from typing import Optional, Union
from dataclasses import dataclass, field

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
    ValidationError as PydanticValidationError,
)

from ..exceptions import ConfigurationError, ValidationError

logger = logging.getLogger("navigator.vault")

KEY_LENGTH = 32  # AES-256
_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_FINGERPRINT_LABEL = b"navigator-phi/key-fingerprint/v1"
FINGERPRINT_LENGTH = 16


def parse_hex_key(value: Union[str, bytes, None], name: str = "key") -> bytes:
    """Decode and validate a 256-bit key given as 64 hex characters.

    Raw 32-byte values are accepted as-is.

    Raises:
        ValidationError: If the value is missing or not exactly 32 bytes.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != KEY_LENGTH:
            raise ValidationError(
                f"{name} must be exactly {KEY_LENGTH} bytes"
            )
        return bytes(value)
    if not value or not value.strip():
        raise ValidationError(f"{name} is required")
    value = value.strip()
    if not _HEX_KEY_PATTERN.match(value):
        # Never echo the value back
        raise ValidationError(
            f"{name} must be 64 hex characters ({KEY_LENGTH} bytes)"
        )
    return bytes.fromhex(value)


def fingerprint(key: bytes) -> str:
    """Return a short one-way identifier for a key.

    HMAC-SHA256 of a fixed label keyed with the secret, truncated to 16 hex
    characters. The fingerprint reveals nothing about the key bytes.
    """
    digest = hmac.new(key, _FINGERPRINT_LABEL, hashlib.sha256).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def generate_key() -> str:
    """Generate a random 256-bit key and return it as 64 hex characters.

    This is a utility for operators to generate new keys and secrets.
    """
    return secrets.token_hex(KEY_LENGTH)


@dataclass(frozen=True, repr=False)
class KeyMaterial:
    """Immutable snapshot of the keys accepted for PHI decryption.

    ``active`` encrypts everything new. ``retired`` is the previous key,
    kept only during a rotation grace window.
    """

    active: bytes
    retired: Optional[bytes] = field(default=None)

    def __post_init__(self):
        if not isinstance(self.active, (bytes, bytearray)) or len(self.active) != KEY_LENGTH:
            raise ValidationError(f"active key must be {KEY_LENGTH} bytes")
        if self.retired is not None and len(self.retired) != KEY_LENGTH:
            raise ValidationError(f"retired key must be {KEY_LENGTH} bytes")

    def __repr__(self) -> str:
        retired = fingerprint(self.retired) if self.retired else None
        return (
            f"<KeyMaterial active={fingerprint(self.active)} "
            f"retired={retired}>"
        )

    @classmethod
    def from_hex(cls, active: str, retired: Optional[str] = None) -> "KeyMaterial":
        return cls(
            active=parse_hex_key(active, "active key"),
            retired=parse_hex_key(retired, "retired key") if retired else None,
        )

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.active)

    @property
    def retired_fingerprint(self) -> Optional[str]:
        return fingerprint(self.retired) if self.retired else None

    def candidates(self) -> tuple[bytes, ...]:
        """Keys to try for decryption, active first."""
        if self.retired is None or self.retired == self.active:
            return (self.active,)
        return (self.active, self.retired)

    def rotated(self, new_key: bytes) -> "KeyMaterial":
        """Return material with ``new_key`` active and the current key retired."""
        return KeyMaterial(active=new_key, retired=self.active)

    def without_retired(self) -> "KeyMaterial":
        return KeyMaterial(active=self.active)


class KeyRing:
    """Thread-safe holder of the current :class:`KeyMaterial` snapshot.

    Request handlers read ``current`` and work on that immutable snapshot;
    only rotation swaps it.
    """

    def __init__(self, material: KeyMaterial):
        self._material = material
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<KeyRing {self._material!r}>"

    @property
    def current(self) -> KeyMaterial:
        return self._material

    def promote(self, new_key: bytes) -> KeyMaterial:
        """Make ``new_key`` active and retain the previous key as retired."""
        with self._lock:
            self._material = self._material.rotated(new_key)
            material = self._material
        logger.info(
            "Key ring promoted: active=%s retired=%s",
            material.fingerprint, material.retired_fingerprint,
        )
        return material

    def end_grace(self) -> KeyMaterial:
        """Drop the retired key, closing the grace window.

        Cached ciphers and derived keys are cleared so retired key bytes are
        no longer held by the crypto module.
        """
        from .crypto import clear_key_cache  # crypto imports this module

        with self._lock:
            self._material = self._material.without_retired()
            material = self._material
        clear_key_cache()
        logger.info("Key ring grace window closed: active=%s", material.fingerprint)
        return material

    def replace(self, material: KeyMaterial) -> None:
        with self._lock:
            self._material = material

    def self_test(self) -> None:
        """Encrypt/decrypt round trip with every configured key.

        Raises:
            ConfigurationError: If any key fails the round-trip.
        """
        from .crypto import verify_key_material  # crypto imports this module

        if not verify_key_material(self._material):
            raise ConfigurationError("PHI encryption self-test failed")
        logger.info(
            "PHI encryption self-test passed: active=%s", self._material.fingerprint
        )


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    phi_encryption_key: SecretStr
    phi_encryption_key_previous: Optional[SecretStr] = None
    session_secret: SecretStr
    rotation_page_size: int = Field(default=500, ge=1, le=10000)
    rotation_workers: int = Field(default=2, ge=1, le=16)
    audit_fallback_path: Optional[str] = None
    audit_max_attempts: int = Field(default=5, ge=1, le=20)
    audit_backoff_min: float = Field(default=0.5, ge=0)
    audit_backoff_max: float = Field(default=30.0, gt=0)
    audit_queue_size: int = Field(default=10000, ge=1)

    @field_validator(
        "phi_encryption_key", "phi_encryption_key_previous", "session_secret"
    )
    @classmethod
    def validate_hex_secret(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        """Secrets must be 64 hex characters."""
        if v is None:
            return v
        if not _HEX_KEY_PATTERN.match(v.get_secret_value().strip()):
            raise ValueError("must be 64 hex characters (32 bytes)")
        return SecretStr(v.get_secret_value().strip())

    @model_validator(mode="after")
    def validate_previous_differs(self) -> "VaultConfig":
        """The grace-window key must not equal the active key."""
        previous = self.phi_encryption_key_previous
        if previous is not None and (
            previous.get_secret_value().lower()
            == self.phi_encryption_key.get_secret_value().lower()
        ):
            raise ValueError(
                "PHI_ENCRYPTION_KEY_PREVIOUS must differ from PHI_ENCRYPTION_KEY"
            )
        return self

    def key_material(self) -> KeyMaterial:
        previous = self.phi_encryption_key_previous
        return KeyMaterial.from_hex(
            self.phi_encryption_key.get_secret_value(),
            previous.get_secret_value() if previous else None,
        )

    def session_secret_bytes(self) -> bytes:
        return parse_hex_key(self.session_secret.get_secret_value(), "SESSION_SECRET")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Raises:
            ConfigurationError: If a secret is missing or malformed. The
                process must not serve PHI operations in that case.
        """
        env = os.environ if environ is None else environ
        values = {
            "phi_encryption_key": env.get("PHI_ENCRYPTION_KEY"),
            "phi_encryption_key_previous": env.get("PHI_ENCRYPTION_KEY_PREVIOUS") or None,
            "session_secret": env.get("SESSION_SECRET"),
            "rotation_page_size": env.get("PHI_ROTATION_PAGE_SIZE", 500),
            "rotation_workers": env.get("PHI_ROTATION_WORKERS", 2),
            "audit_fallback_path": env.get("AUDIT_FALLBACK_PATH") or None,
            "audit_max_attempts": env.get("AUDIT_MAX_ATTEMPTS", 5),
            "audit_backoff_min": env.get("AUDIT_BACKOFF_MIN", 0.5),
            "audit_backoff_max": env.get("AUDIT_BACKOFF_MAX", 30.0),
            "audit_queue_size": env.get("AUDIT_QUEUE_SIZE", 10000),
        }
        for required in ("phi_encryption_key", "session_secret"):
            if not values[required]:
                raise ConfigurationError(
                    f"{required.upper()} environment variable is required"
                )
        try:
            config = cls(**values)
        except PydanticValidationError as err:
            # Only field names, never input values
            fields = sorted({".".join(map(str, e["loc"])) for e in err.errors()})
            raise ConfigurationError(
                f"Invalid vault configuration: {', '.join(fields) or 'model'}"
            ) from None
        material = config.key_material()
        logger.debug(
            "Vault configuration loaded: active=%s previous=%s",
            material.fingerprint, material.retired_fingerprint,
        )
        return config
