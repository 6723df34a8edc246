"""Encryption of OAuth secrets stored in the settings database."""

import os
import secrets
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
KEY_SIZE = 32


class EncryptionManager:
    """AES-256-GCM encryption; ciphertexts are stored as nonce + ciphertext."""

    def __init__(self, key: bytes):
        if len(key) < KEY_SIZE:
            raise ValueError(f"Encryption key must be at least {KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key[:KEY_SIZE])

    def encrypt(self, plaintext: Union[str, bytes]) -> bytes:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt(self, encrypted_data: bytes) -> str:
        if len(encrypted_data) < NONCE_SIZE:
            raise ValueError("Invalid encrypted data: too short")
        nonce, ciphertext = encrypted_data[:NONCE_SIZE], encrypted_data[NONCE_SIZE:]
        return self._aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(KEY_SIZE)


def write_encryption_key(path: str) -> bytes:
    """Create a key file with owner-only permissions and return the key."""
    key = generate_encryption_key()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "wb") as f:
        f.write(key)
    os.chmod(path, 0o600)
    return key


_encryption_manager: Optional[EncryptionManager] = None


def get_encryption_manager() -> EncryptionManager:
    """Get the global encryption manager, loading the key file on first use."""
    global _encryption_manager
    if _encryption_manager is None:
        from notesync.config import get_encryption_key
        _encryption_manager = EncryptionManager(get_encryption_key())
    return _encryption_manager


def init_encryption_manager(key: bytes) -> EncryptionManager:
    """Initialize the global encryption manager with a specific key."""
    global _encryption_manager
    _encryption_manager = EncryptionManager(key)
    return _encryption_manager


def encrypt_value(value: str) -> bytes:
    return get_encryption_manager().encrypt(value)


def decrypt_value(encrypted: bytes) -> str:
    return get_encryption_manager().decrypt(encrypted)
