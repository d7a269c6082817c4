"""
Vault Crypto Core — Envelope encryption of PHI values.

Envelope text format (fits a single text column):
    v<version>:<iv hex>:<tag hex>:<ciphertext hex>

Versions:
- v2 (written): HKDF(PHI key, "navigator-phi/envelope/v2") → AES-256-GCM,
  96-bit random nonce, version label bound as associated data.
- v1 (read-only): AES-256-GCM with the raw key, 128-bit IV, no associated
  data. Rows in this format are upgraded to v2 by key rotation.

Binary blobs (backups) use [version 1B][nonce 12B][ciphertext + tag 16B].

Search hashes: HMAC-SHA256 of the normalized value (trimmed, lower-cased)
under HKDF(PHI key, "navigator-phi/search/v1"). Deterministic, so an
encrypted email or phone number can be found by equality; keyed, so the
hash column cannot be brute-forced without the PHI key. Search columns are
re-hashed together with their envelopes during key rotation.

Security Note:
    Never log plaintext, ciphertext or key bytes. Error messages are generic.
"""
import os
import hmac
import hashlib
import base64
import logging
from typing import Any, Optional, Sequence, Union
from dataclasses import dataclass
from functools import lru_cache

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionError, EncryptionError
from .config import KEY_LENGTH, KeyMaterial

logger = logging.getLogger("navigator.vault")

TAG_SIZE = 16  # GCM tag
CURRENT_VERSION = 2
BLOB_VERSION = 2
SEARCH_CONTEXT = "navigator-phi/search/v1"

_BYTES_WRAPPER_KEY = "__phi_bytes_b64__"


@dataclass(frozen=True)
class EnvelopeParams:
    """Algorithm parameters selected by the envelope version."""

    iv_size: int
    bind_version: bool
    derive_context: Optional[str]


_PARAMS: dict[int, EnvelopeParams] = {
    1: EnvelopeParams(iv_size=16, bind_version=False, derive_context=None),
    2: EnvelopeParams(
        iv_size=12, bind_version=True, derive_context="navigator-phi/envelope/v2"
    ),
}


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (the PHI key).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: the same PHI key must open old rows
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


@lru_cache(maxsize=32)
def _cipher(key: bytes, version: int) -> AESGCM:
    params = _PARAMS[version]
    if params.derive_context:
        return AESGCM(derive_key(key, params.derive_context))
    return AESGCM(key)


@lru_cache(maxsize=8)
def _search_key(key: bytes) -> bytes:
    return derive_key(key, SEARCH_CONTEXT)


def clear_key_cache() -> None:
    """Drop cached ciphers and derived keys (run when a key is retired)."""
    _cipher.cache_clear()
    _search_key.cache_clear()


def _aad(version: int, label: str = "envelope") -> Optional[bytes]:
    if not _PARAMS[version].bind_version:
        return None
    return f"navigator-phi:{label}:v{version}".encode("ascii")


def _key_bytes(key: Union[bytes, KeyMaterial]) -> bytes:
    if isinstance(key, KeyMaterial):
        return key.active
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise EncryptionError("encryption key must be 32 bytes")
    return bytes(key)


def _candidates(keys: Union[KeyMaterial, bytes, Sequence[bytes]]) -> tuple[bytes, ...]:
    if isinstance(keys, KeyMaterial):
        return keys.candidates()
    if isinstance(keys, (bytes, bytearray)):
        return (bytes(keys),)
    return tuple(keys)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(frozen=True, repr=False)
class EncryptedValue:
    """Versioned, self-describing ciphertext of a single PHI value."""

    version: int
    iv: bytes
    ciphertext: bytes
    tag: bytes

    def __repr__(self) -> str:
        return f"<EncryptedValue v{self.version} {len(self.ciphertext)}B>"

    def __str__(self) -> str:
        return self.to_storage()

    def to_storage(self) -> str:
        return (
            f"v{self.version}:{self.iv.hex()}:"
            f"{self.tag.hex()}:{self.ciphertext.hex()}"
        )

    @classmethod
    def parse(cls, data: str) -> "EncryptedValue":
        """Parse the storage format.

        Raises:
            DecryptionError: If the envelope is malformed or its version unknown.
        """
        parts = data.strip().split(":")
        if len(parts) != 4 or not parts[0].startswith("v"):
            raise DecryptionError("malformed ciphertext envelope")
        try:
            version = int(parts[0][1:])
            iv = bytes.fromhex(parts[1])
            tag = bytes.fromhex(parts[2])
            ciphertext = bytes.fromhex(parts[3])
        except ValueError:
            raise DecryptionError("malformed ciphertext envelope") from None
        params = _PARAMS.get(version)
        if params is None:
            raise DecryptionError("unsupported ciphertext version")
        if len(iv) != params.iv_size or len(tag) != TAG_SIZE:
            raise DecryptionError("malformed ciphertext envelope")
        return cls(version=version, iv=iv, ciphertext=ciphertext, tag=tag)

    @property
    def is_current(self) -> bool:
        return self.version == CURRENT_VERSION


def is_envelope(data: Any) -> bool:
    """True if ``data`` parses as an envelope (does not authenticate it)."""
    if isinstance(data, EncryptedValue):
        return True
    if not isinstance(data, str):
        return False
    try:
        EncryptedValue.parse(data)
    except DecryptionError:
        return False
    return True


def encrypt_value(
    plaintext: Optional[str], key: Union[bytes, KeyMaterial]
) -> Optional[EncryptedValue]:
    """Encrypt a PHI string into a fresh envelope.

    Empty, blank or None plaintext maps to None: nothing is encrypted.

    Args:
        plaintext: Value to protect.
        key: Raw 32-byte key or a KeyMaterial (its active key is used).

    Returns:
        EncryptedValue, or None for empty input.

    Raises:
        EncryptionError: On non-string input or a bad key.
    """
    if plaintext is None:
        return None
    if not isinstance(plaintext, str):
        raise EncryptionError("plaintext must be a string")
    if not plaintext.strip():
        return None
    raw_key = _key_bytes(key)
    version = CURRENT_VERSION
    params = _PARAMS[version]
    nonce = os.urandom(params.iv_size)
    try:
        sealed = _cipher(raw_key, version).encrypt(
            nonce, plaintext.encode("utf-8"), _aad(version),
        )
    except (ValueError, OverflowError):
        raise EncryptionError("encryption failed") from None
    return EncryptedValue(
        version=version,
        iv=nonce,
        ciphertext=sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:],
    )


def open_envelope(
    envelope: Union[EncryptedValue, str],
    keys: Union[KeyMaterial, bytes, Sequence[bytes]],
) -> tuple[str, int]:
    """Authenticate and decrypt an envelope with the first key that opens it.

    Returns:
        Tuple of (plaintext, index of the key that succeeded).

    Raises:
        DecryptionError: If no key authenticates the envelope.
    """
    if not isinstance(envelope, EncryptedValue):
        envelope = EncryptedValue.parse(envelope)
    sealed = envelope.ciphertext + envelope.tag
    aad = _aad(envelope.version)
    for index, key in enumerate(_candidates(keys)):
        try:
            data = _cipher(key, envelope.version).decrypt(envelope.iv, sealed, aad)
        except InvalidTag:
            continue
        try:
            return data.decode("utf-8"), index
        except UnicodeDecodeError:
            raise DecryptionError() from None
    raise DecryptionError()


def decrypt_value(
    envelope: Union[EncryptedValue, str, None],
    key_material: Union[KeyMaterial, bytes],
) -> Optional[str]:
    """Decrypt an envelope, trying the active key then the retired key.

    None or empty input returns None.

    Raises:
        DecryptionError: If neither key authenticates the envelope, or the
            envelope is malformed. Never returns unauthenticated data.
    """
    if envelope is None:
        return None
    if isinstance(envelope, str) and not envelope.strip():
        return None
    plaintext, _ = open_envelope(envelope, key_material)
    return plaintext


def encrypt_field(
    plaintext: Optional[str], key: Union[bytes, KeyMaterial]
) -> Optional[str]:
    """Encrypt for a text column; returns the envelope string or None."""
    envelope = encrypt_value(plaintext, key)
    return envelope.to_storage() if envelope is not None else None


def decrypt_field(
    stored: Optional[str], key_material: Union[KeyMaterial, bytes]
) -> Optional[str]:
    return decrypt_value(stored, key_material)


# ---------------------------------------------------------------------------
# Search hashes
# ---------------------------------------------------------------------------

def search_hash(
    value: Optional[str], key: Union[bytes, KeyMaterial]
) -> Optional[str]:
    """Deterministic keyed hash of a PHI value for equality lookups.

    Empty, blank or None input maps to None. Case and surrounding
    whitespace are ignored.

    Raises:
        EncryptionError: On non-string input or a bad key.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise EncryptionError("search value must be a string")
    normalized = value.strip().lower()
    if not normalized:
        return None
    mac = hmac.new(
        _search_key(_key_bytes(key)), normalized.encode("utf-8"), hashlib.sha256
    )
    return mac.hexdigest()


def search_hashes(
    value: Optional[str], key_material: Union[KeyMaterial, bytes]
) -> tuple[str, ...]:
    """Search hashes of ``value`` under every candidate key, active first.

    During a grace window rows may still carry the hash of the retired key;
    query with ``= ANY(...)`` over this tuple.
    """
    result = []
    for key in _candidates(key_material):
        digest = search_hash(value, key)
        if digest is not None and digest not in result:
            result.append(digest)
    return tuple(result)


def verify_key_material(material: KeyMaterial) -> bool:
    """Encrypt/decrypt round trip run at startup with every configured key."""
    sample = "navigator-phi-self-test"
    for key in material.candidates():
        envelope = encrypt_value(sample, key)
        if decrypt_value(envelope, key) != sample:
            return False
    return True


# ---------------------------------------------------------------------------
# Binary blobs (backups)
# ---------------------------------------------------------------------------

def encrypt_blob(data: bytes, key: Union[bytes, KeyMaterial]) -> bytes:
    """Encrypt an opaque byte string.

    Format: [version 1B][nonce 12B][ciphertext + tag 16B]
    """
    if not isinstance(data, (bytes, bytearray)):
        raise EncryptionError("blob must be bytes")
    raw_key = _key_bytes(key)
    params = _PARAMS[BLOB_VERSION]
    nonce = os.urandom(params.iv_size)
    sealed = _cipher(raw_key, BLOB_VERSION).encrypt(
        nonce, bytes(data), _aad(BLOB_VERSION, "blob"),
    )
    return bytes([BLOB_VERSION]) + nonce + sealed


def decrypt_blob(blob: bytes, key_material: Union[KeyMaterial, bytes]) -> bytes:
    """Decrypt a blob produced by :func:`encrypt_blob`.

    Raises:
        DecryptionError: If the blob is malformed or no key authenticates it.
    """
    if not blob:
        raise DecryptionError("malformed blob")
    version = blob[0]
    params = _PARAMS.get(version)
    if params is None or not params.bind_version:
        raise DecryptionError("unsupported blob version")
    _min = 1 + params.iv_size + TAG_SIZE
    if len(blob) < _min:
        raise DecryptionError("malformed blob")
    nonce = blob[1:1 + params.iv_size]
    sealed = blob[1 + params.iv_size:]
    aad = _aad(version, "blob")
    for key in _candidates(key_material):
        try:
            return _cipher(key, version).decrypt(nonce, sealed, aad)
        except InvalidTag:
            continue
    raise DecryptionError()


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> str:
    """Serialize a structured PHI value to a string before encryption.

    bytes values are wrapped as {"__phi_bytes_b64__": "<base64>"} for a
    safe JSON round-trip.
    """
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped).decode("utf-8")
    return orjson.dumps(value).decode("utf-8")


def deserialize_value(data: str) -> Any:
    """Deserialize a string produced by :func:`serialize_value`."""
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed and len(parsed) == 1:
        return base64.b64decode(parsed[_BYTES_WRAPPER_KEY])
    return parsed
