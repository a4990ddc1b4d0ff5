"""
Intake package encryption.

AES-256-GCM with a random 96-bit nonce per package. The authentication tag
is stored separately from the ciphertext so the clinical side can verify it
before touching the data.

SECURITY NOTES:
- Master keys are 32 bytes supplied as 64 hex characters
- Keys live in an append-only KeyRing; new packages use the current key,
  existing packages are decrypted with the key id recorded alongside them
- A failed tag check is always fatal; no partial plaintext is returned
- Key bytes are never logged
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from clinicflow.config import HEX_KEY_PATTERN, Settings

logger = logging.getLogger(__name__)

# Constants
NONCE_SIZE = 12  # 96 bits for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256
TAG_SIZE = 16    # 128-bit GCM tag


class EncryptionError(Exception):
    """Encryption could not be performed."""


class KeyUnavailable(EncryptionError):
    """Master key is missing, malformed or unknown."""


class IntegrityError(Exception):
    """Authentication tag or checksum verification failed."""


@dataclass(frozen=True)
class MasterKey:
    """A 256-bit master key and the id recorded with packages it encrypts."""

    key_id: str
    key: bytes

    def __post_init__(self):
        if len(self.key) != KEY_SIZE:
            raise KeyUnavailable(f"Master key {self.key_id} must be {KEY_SIZE} bytes")

    @classmethod
    def from_hex(cls, key_id: str, key_hex: Optional[str]) -> "MasterKey":
        """Parse a 64-character hex key."""
        if not key_hex:
            raise KeyUnavailable(f"Master key {key_id} is not configured")
        if not HEX_KEY_PATTERN.match(key_hex):
            raise KeyUnavailable(f"Master key {key_id} must be 64 hex characters")
        return cls(key_id=key_id, key=bytes.fromhex(key_hex))

    def __repr__(self) -> str:
        return f"MasterKey(key_id={self.key_id!r})"


class KeyRing:
    """
    Append-only registry of master keys.

    Encryption always uses the current key; decryption looks keys up by
    the id stored in package metadata. Keys are never replaced in place.
    """

    def __init__(self, keys: tuple[MasterKey, ...] = (), current_key_id: Optional[str] = None):
        self._keys: dict[str, MasterKey] = {}
        for key in keys:
            self.add(key)
        self._current_key_id = current_key_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyRing":
        """
        Build the key ring from configuration.

        Malformed keys raise immediately; a missing current key only fails
        when something tries to encrypt.
        """
        ring = cls(current_key_id=settings.encryption_key_id)
        for key_id, key_hex in settings.retired_encryption_keys.items():
            ring.add(MasterKey.from_hex(key_id, key_hex))
        if settings.encryption_key:
            ring.add(MasterKey.from_hex(settings.encryption_key_id, settings.encryption_key))
        return ring

    def add(self, key: MasterKey) -> None:
        if key.key_id in self._keys:
            raise ValueError(f"Key id {key.key_id} is already registered")
        self._keys[key.key_id] = key
        logger.info(f"Registered master key {key.key_id}")

    def rotate(self, key: MasterKey) -> None:
        """Add a new key and make it current. Older keys stay available."""
        self.add(key)
        self._current_key_id = key.key_id

    @property
    def current_key_id(self) -> Optional[str]:
        return self._current_key_id

    def current(self) -> MasterKey:
        if self._current_key_id is None:
            raise KeyUnavailable("No current master key id configured")
        return self.get(self._current_key_id)

    def get(self, key_id: str) -> MasterKey:
        try:
            return self._keys[key_id]
        except KeyError:
            raise KeyUnavailable(f"Master key {key_id} is not available") from None

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._keys

    def __iter__(self) -> Iterator[str]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)


@dataclass(frozen=True)
class EncryptedBlob:
    """Ciphertext plus the metadata required to decrypt it."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    key_id: str

    @property
    def iv_hex(self) -> str:
        return self.iv.hex()

    @property
    def auth_tag_hex(self) -> str:
        return self.auth_tag.hex()

    @classmethod
    def from_hex(cls, ciphertext: bytes, iv_hex: str, auth_tag_hex: str, key_id: str) -> "EncryptedBlob":
        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(auth_tag_hex)
        except ValueError as e:
            raise IntegrityError("Malformed IV or authentication tag") from e
        return cls(ciphertext=ciphertext, iv=iv, auth_tag=tag, key_id=key_id)


def encrypt(plaintext: bytes, key: MasterKey) -> EncryptedBlob:
    """
    Encrypt with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Bytes to encrypt
        key: Master key

    Returns:
        EncryptedBlob with the tag split from the ciphertext
    """
    nonce = os.urandom(NONCE_SIZE)
    try:
        sealed = AESGCM(key.key).encrypt(nonce, plaintext, None)
    except Exception as e:
        logger.error(f"Encryption failed: {type(e).__name__}")
        raise EncryptionError("Encryption failed") from e
    return EncryptedBlob(
        ciphertext=sealed[:-TAG_SIZE],
        iv=nonce,
        auth_tag=sealed[-TAG_SIZE:],
        key_id=key.key_id,
    )


def decrypt(blob: EncryptedBlob, key: MasterKey) -> bytes:
    """
    Decrypt and authenticate.

    Raises:
        IntegrityError: tag mismatch, wrong key or tampered ciphertext
    """
    if blob.key_id != key.key_id:
        raise IntegrityError(f"Blob was encrypted with {blob.key_id}, not {key.key_id}")
    if len(blob.iv) != NONCE_SIZE or len(blob.auth_tag) != TAG_SIZE:
        raise IntegrityError("Malformed IV or authentication tag")
    try:
        return AESGCM(key.key).decrypt(blob.iv, blob.ciphertext + blob.auth_tag, None)
    except InvalidTag as e:
        logger.warning(f"Authentication failed for blob under key {blob.key_id}")
        raise IntegrityError("Authentication tag verification failed") from e


def checksum_sha256(data: bytes) -> str:
    """Hex SHA-256 digest."""
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, expected: str) -> bool:
    """Constant-time comparison of ``data``'s digest against ``expected``."""
    return hmac.compare_digest(checksum_sha256(data), expected.lower())


def decrypt_package(
    ciphertext: bytes,
    *,
    iv_hex: str,
    auth_tag_hex: str,
    key_id: str,
    checksum: str,
    key_ring: KeyRing,
) -> bytes:
    """
    Verify and decrypt a downloaded intake package.

    The checksum is checked before decryption; the key is resolved from
    the key ring by the id recorded with the package.
    """
    if not verify_checksum(ciphertext, checksum):
        raise IntegrityError("Package checksum does not match")
    blob = EncryptedBlob.from_hex(ciphertext, iv_hex, auth_tag_hex, key_id)
    return decrypt(blob, key_ring.get(key_id))
