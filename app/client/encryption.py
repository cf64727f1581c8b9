"""
Client-side encryption for workspace sync and table sharing.
Uses AES-256-GCM for authenticated encryption.

Formats (all base64):
- workspace / owner-wrapped key: salt(16) || iv(12) || ciphertext, key from
  PBKDF2-HMAC-SHA256 over the user's passphrase
- table data / recipient-wrapped key: iv(12) || ciphertext
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
DEK_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
SHARING_INFO = b"shared-table-dek-wrap"


class DecryptionError(Exception):
    """Ciphertext is malformed or the key does not match."""


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (ValueError, TypeError) as e:
        raise DecryptionError(f"Invalid base64 payload: {e}") from e


def derive_key(passphrase: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """
    Derive a 256-bit AES key from a passphrase.

    Args:
        passphrase: User password or custom encryption key
        salt: Random 16-byte salt stored alongside the ciphertext
        iterations: PBKDF2 rounds (defaults to PBKDF2_ITERATIONS)

    Returns:
        Raw 32-byte key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations or PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _seal_with_passphrase(plaintext: bytes, passphrase: str) -> str:
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(derive_key(passphrase, salt)).encrypt(iv, plaintext, None)
    return _b64encode(salt + iv + ciphertext)


def _open_with_passphrase(sealed: str, passphrase: str) -> bytes:
    combined = _b64decode(sealed)
    if len(combined) <= SALT_LENGTH + IV_LENGTH:
        raise DecryptionError("Ciphertext too short")
    salt = combined[:SALT_LENGTH]
    iv = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    ciphertext = combined[SALT_LENGTH + IV_LENGTH:]
    try:
        return AESGCM(derive_key(passphrase, salt)).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Wrong encryption key - cannot decrypt data") from e


def _seal_with_key(plaintext: bytes, key: bytes) -> str:
    iv = os.urandom(IV_LENGTH)
    return _b64encode(iv + AESGCM(key).encrypt(iv, plaintext, None))


def _open_with_key(sealed: str, key: bytes) -> bytes:
    combined = _b64decode(sealed)
    if len(combined) <= IV_LENGTH:
        raise DecryptionError("Ciphertext too short")
    try:
        return AESGCM(key).decrypt(combined[:IV_LENGTH], combined[IV_LENGTH:], None)
    except InvalidTag as e:
        raise DecryptionError("Wrong key - cannot decrypt data") from e


def encrypt_workspace(data: Any, passphrase: str) -> str:
    """Encrypt a workspace snapshot (any JSON-serializable value)."""
    return _seal_with_passphrase(json.dumps(data).encode("utf-8"), passphrase)


def decrypt_workspace(encrypted: str, passphrase: str) -> Any:
    """
    Decrypt a workspace produced by encrypt_workspace.

    Raises:
        DecryptionError: wrong passphrase or corrupted payload
    """
    plaintext = _open_with_passphrase(encrypted, passphrase)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted workspace is not valid JSON: {e}") from e


def generate_table_dek() -> bytes:
    """New random 256-bit table key."""
    return AESGCM.generate_key(bit_length=DEK_LENGTH * 8)


def encrypt_table_with_dek(table: Any, dek: bytes) -> str:
    return _seal_with_key(json.dumps(table).encode("utf-8"), dek)


def decrypt_table_with_dek(encrypted: str, dek: bytes) -> Any:
    plaintext = _open_with_key(encrypted, dek)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted table is not valid JSON: {e}") from e


def generate_key_pair() -> Tuple[str, str]:
    """
    New X25519 key pair for table sharing.

    Returns:
        Tuple of (public_key_b64, private_key_b64), both raw 32-byte keys
    """
    private_key = X25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return _b64encode(public_raw), _b64encode(private_raw)


def derive_shared_secret(private_key_b64: str, other_public_key_b64: str) -> bytes:
    """X25519 agreement stretched through HKDF-SHA256 into an AES key."""
    private_key = X25519PrivateKey.from_private_bytes(_b64decode(private_key_b64))
    public_key = X25519PublicKey.from_public_bytes(_b64decode(other_public_key_b64))
    shared = private_key.exchange(public_key)
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=SHARING_INFO,
    ).derive(shared)


def wrap_dek_for_recipient(dek: bytes, recipient_public_key_b64: str, owner_private_key_b64: str) -> str:
    return _seal_with_key(dek, derive_shared_secret(owner_private_key_b64, recipient_public_key_b64))


def unwrap_dek_from_owner(wrapped: str, owner_public_key_b64: str, recipient_private_key_b64: str) -> bytes:
    return _open_with_key(wrapped, derive_shared_secret(recipient_private_key_b64, owner_public_key_b64))


def wrap_dek_for_owner(dek: bytes, passphrase: str) -> str:
    return _seal_with_passphrase(dek, passphrase)


def unwrap_dek_for_owner(wrapped: str, passphrase: str) -> bytes:
    return _open_with_passphrase(wrapped, passphrase)


class EncryptionKeyManager:
    """
    Holds the session's encryption passphrase in memory only.

    A custom key, when set, replaces the login-derived one.
    """

    def __init__(self, key: Optional[str] = None):
        self._login_key = key
        self._custom_key: Optional[str] = None

    def set_key(self, key: str) -> None:
        self._login_key = key

    def set_custom_key(self, key: str) -> None:
        self._custom_key = key

    def clear(self) -> None:
        self._login_key = None
        self._custom_key = None

    @property
    def key(self) -> Optional[str]:
        return self._custom_key or self._login_key

    @property
    def is_custom(self) -> bool:
        return self._custom_key is not None

    def has_key(self) -> bool:
        return self.key is not None
