"""
Unit tests for intake package encryption.
"""

import os

import pytest

from clinicflow.config import Settings
from clinicflow.security.encryption import (
    NONCE_SIZE,
    TAG_SIZE,
    EncryptedBlob,
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

KEY_V1 = MasterKey.from_hex("master-key-v1", "11" * 32)
KEY_V2 = MasterKey.from_hex("master-key-v2", "22" * 32)


def flip_bit(data: bytes, byte_index: int, bit: int) -> bytes:
    flipped = bytearray(data)
    flipped[byte_index] ^= 1 << bit
    return bytes(flipped)


class TestMasterKey:
    """Tests for MasterKey parsing."""

    def test_from_hex(self):
        assert KEY_V1.key == bytes([0x11]) * 32

    @pytest.mark.parametrize("value", [None, "", "abc", "zz" * 32, "11" * 31])
    def test_rejects_bad_keys(self, value):
        with pytest.raises(KeyUnavailable):
            MasterKey.from_hex("k", value)

    def test_repr_hides_key(self):
        assert "11" * 4 not in repr(KEY_V1)


class TestEncryptDecrypt:
    """Tests for encrypt()/decrypt()."""

    def test_decrypts_to_plaintext(self):
        blob = encrypt(b"referral archive", KEY_V1)

        assert len(blob.iv) == NONCE_SIZE
        assert len(blob.auth_tag) == TAG_SIZE
        assert blob.key_id == "master-key-v1"
        assert decrypt(blob, KEY_V1) == b"referral archive"

    def test_fresh_nonce_each_time(self):
        first = encrypt(b"same", KEY_V1)
        second = encrypt(b"same", KEY_V1)

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    @pytest.mark.parametrize("byte_index,bit", [(0, 0), (0, 7), (5, 3), (-1, 0), (-1, 7)])
    def test_tampered_ciphertext_fails(self, byte_index, bit):
        blob = encrypt(b"referral archive", KEY_V1)
        tampered = EncryptedBlob(flip_bit(blob.ciphertext, byte_index, bit), blob.iv, blob.auth_tag, blob.key_id)

        with pytest.raises(IntegrityError):
            decrypt(tampered, KEY_V1)

    @pytest.mark.parametrize("byte_index,bit", [(0, 0), (0, 7), (7, 4), (TAG_SIZE - 1, 0), (TAG_SIZE - 1, 7)])
    def test_flipped_tag_bit_fails(self, byte_index, bit):
        blob = encrypt(b"referral archive", KEY_V1)
        tampered = EncryptedBlob(blob.ciphertext, blob.iv, flip_bit(blob.auth_tag, byte_index, bit), blob.key_id)

        with pytest.raises(IntegrityError):
            decrypt(tampered, KEY_V1)

    @pytest.mark.parametrize("bit", [0, 7])
    def test_flipped_iv_bit_fails(self, bit):
        blob = encrypt(b"referral archive", KEY_V1)
        tampered = EncryptedBlob(blob.ciphertext, flip_bit(blob.iv, 0, bit), blob.auth_tag, blob.key_id)

        with pytest.raises(IntegrityError):
            decrypt(tampered, KEY_V1)

    def test_tampered_tag_fails(self):
        blob = encrypt(b"referral archive", KEY_V1)
        tampered = EncryptedBlob(blob.ciphertext, blob.iv, os.urandom(TAG_SIZE), blob.key_id)

        with pytest.raises(IntegrityError):
            decrypt(tampered, KEY_V1)

    def test_wrong_key_fails(self):
        blob = encrypt(b"referral archive", KEY_V1)
        with pytest.raises(IntegrityError):
            decrypt(blob, KEY_V2)

    def test_empty_plaintext(self):
        blob = encrypt(b"", KEY_V1)
        assert blob.ciphertext == b""
        assert decrypt(blob, KEY_V1) == b""


class TestKeyRing:
    """Tests for key rotation."""

    def test_rotation_keeps_old_keys(self):
        ring = KeyRing((KEY_V1,), current_key_id="master-key-v1")
        old_blob = encrypt(b"old", ring.current())

        ring.rotate(KEY_V2)
        new_blob = encrypt(b"new", ring.current())

        assert new_blob.key_id == "master-key-v2"
        assert decrypt(old_blob, ring.get(old_blob.key_id)) == b"old"
        assert list(ring) == ["master-key-v1", "master-key-v2"]

    def test_keys_cannot_be_replaced(self):
        ring = KeyRing((KEY_V1,), current_key_id="master-key-v1")
        with pytest.raises(ValueError):
            ring.add(MasterKey.from_hex("master-key-v1", "33" * 32))

    def test_missing_current_key(self):
        with pytest.raises(KeyUnavailable):
            KeyRing(current_key_id="master-key-v1").current()
        with pytest.raises(KeyUnavailable):
            KeyRing().current()

    def test_unknown_key_id(self):
        with pytest.raises(KeyUnavailable):
            KeyRing((KEY_V1,)).get("master-key-v9")

    def test_from_settings_includes_retired_keys(self):
        config = Settings(
            _env_file=None,
            encryption_key="22" * 32,
            encryption_key_id="master-key-v2",
            retired_encryption_keys={"master-key-v1": "11" * 32},
        )

        ring = KeyRing.from_settings(config)

        assert ring.current_key_id == "master-key-v2"
        assert ring.current().key == KEY_V2.key
        assert "master-key-v1" in ring
        assert len(ring) == 2


class TestChecksumAndPackage:
    """Tests for checksums and full package decryption."""

    def test_checksum(self):
        digest = checksum_sha256(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert verify_checksum(b"abc", digest.upper())
        assert not verify_checksum(b"abd", digest)

    def test_decrypt_package(self):
        ring = KeyRing((KEY_V1,), current_key_id="master-key-v1")
        blob = encrypt(b"package", ring.current())

        plaintext = decrypt_package(
            blob.ciphertext,
            iv_hex=blob.iv_hex,
            auth_tag_hex=blob.auth_tag_hex,
            key_id=blob.key_id,
            checksum=checksum_sha256(blob.ciphertext),
            key_ring=ring,
        )

        assert plaintext == b"package"

    def test_decrypt_package_checks_checksum_first(self):
        ring = KeyRing((KEY_V1,), current_key_id="master-key-v1")
        blob = encrypt(b"package", ring.current())

        with pytest.raises(IntegrityError):
            decrypt_package(
                blob.ciphertext,
                iv_hex=blob.iv_hex,
                auth_tag_hex=blob.auth_tag_hex,
                key_id=blob.key_id,
                checksum="0" * 64,
                key_ring=ring,
            )

    def test_malformed_iv(self):
        with pytest.raises(IntegrityError):
            EncryptedBlob.from_hex(b"", "not-hex", "00" * 16, "k")
