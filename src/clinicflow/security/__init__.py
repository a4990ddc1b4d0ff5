"""
Security module for clinicflow.

Provides:
- AES-256-GCM package encryption with an append-only key ring
- SHA-256 checksums with constant-time verification
"""

from clinicflow.security.encryption import (
    KEY_SIZE,
    NONCE_SIZE,
    EncryptedBlob,
    EncryptionError,
    IntegrityError,
    KeyRing,
    KeyUnavailable,
    MasterKey,
    checksum_sha256,
    decrypt,
    decrypt_package,
    encrypt,
    verify_checksum,
)

__all__ = [
    "KEY_SIZE",
    "NONCE_SIZE",
    "EncryptedBlob",
    "EncryptionError",
    "IntegrityError",
    "KeyRing",
    "KeyUnavailable",
    "MasterKey",
    "checksum_sha256",
    "decrypt",
    "decrypt_package",
    "encrypt",
    "verify_checksum",
]
