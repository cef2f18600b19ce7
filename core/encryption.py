"""
core/encryption.py -- Field-level encryption for stored account passwords.

Account passwords must be recoverable (operators read them back to hand over
an iCloud login), so they are encrypted, not hashed. Fernet gives
authenticated symmetric encryption (AES-128-CBC + HMAC-SHA256).

Storage format:
  "enc:<fernet token>" -- the prefix marks ciphertext so already-encrypted
  values are never double-encrypted and rows written before encryption was
  introduced (plain text, no prefix) remain readable.

Layer rule: core/ is the kernel. Imports only from core/.
"""

from __future__ import annotations

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from core.config import get_settings

ENCRYPTED_PREFIX = "enc:"


class DecryptionError(ValueError):
    """Raised when a prefixed value cannot be decrypted with the current key."""


@lru_cache
def get_fernet() -> Fernet:
    """Return the Fernet instance built from ENCRYPTION_KEY (validated in Settings)."""
    return Fernet(get_settings().encryption_key.encode())


def is_encrypted(value: str | None) -> bool:
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


def encrypt_value(value: str | None) -> str | None:
    """Encrypt a secret for storage. None and "" pass through unchanged."""
    if value is None or value == "":
        return value
    if value.startswith(ENCRYPTED_PREFIX):
        return value
    token = get_fernet().encrypt(value.encode("utf-8")).decode("ascii")
    return f"{ENCRYPTED_PREFIX}{token}"


def decrypt_value(value: str | None) -> str | None:
    """Decrypt a stored secret.

    Values without the prefix are legacy plain text and are returned as-is.
    Raises DecryptionError when a prefixed value was produced under a
    different key or has been tampered with.
    """
    if value is None or value == "":
        return value
    if not value.startswith(ENCRYPTED_PREFIX):
        return value
    token = value[len(ENCRYPTED_PREFIX) :]
    try:
        return get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise DecryptionError("Invalid or corrupted encrypted value") from exc
