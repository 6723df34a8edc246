"""Tests for encryption module."""

import os
import stat

import pytest
from cryptography.exceptions import InvalidTag

from notesync.encryption import (
    EncryptionManager,
    generate_encryption_key,
    write_encryption_key,
)


def test_generate_encryption_key():
    """Test encryption key generation."""
    key = generate_encryption_key()
    assert len(key) == 32
    assert isinstance(key, bytes)


def test_encryption_manager_encrypt_decrypt():
    """Test basic encryption and decryption."""
    manager = EncryptionManager(generate_encryption_key())

    encrypted = manager.encrypt("refresh-token")

    assert encrypted != b"refresh-token"
    assert manager.decrypt(encrypted) == "refresh-token"


def test_encryption_uses_fresh_nonce():
    manager = EncryptionManager(generate_encryption_key())
    assert manager.encrypt("same") != manager.encrypt("same")


def test_short_key_is_rejected():
    with pytest.raises(ValueError):
        EncryptionManager(b"too short")


def test_wrong_key_cannot_decrypt():
    encrypted = EncryptionManager(generate_encryption_key()).encrypt("secret")

    with pytest.raises(InvalidTag):
        EncryptionManager(generate_encryption_key()).decrypt(encrypted)


def test_truncated_data_is_rejected():
    with pytest.raises(ValueError):
        EncryptionManager(generate_encryption_key()).decrypt(b"short")


def test_write_encryption_key(tmp_path):
    path = tmp_path / "secrets" / "encryption.key"

    key = write_encryption_key(str(path))

    assert path.read_bytes() == key
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
