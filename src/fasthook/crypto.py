"""Encryption of webhook secrets at rest.

Secrets are stored as Fernet tokens when an encryption key is configured and
as-is otherwise. The configured key may be any string; it is stretched to a
Fernet key with SHA-256.
"""

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken


class SecretDecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted with the configured key."""


@lru_cache(maxsize=8)
def _fernet(key: str) -> Fernet:
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(secret: str, key: str | None) -> str:
    """Encrypt a webhook secret for storage (passthrough without a key)."""
    if key is None:
        return secret
    return _fernet(key).encrypt(secret.encode("utf-8")).decode("ascii")


def decrypt_secret(stored: str, key: str | None) -> str:
    """Recover the plaintext of a stored webhook secret.

    Raises:
        SecretDecryptionError: If the key is wrong or the token is corrupted
    """
    if key is None:
        return stored
    try:
        return _fernet(key).decrypt(stored.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise SecretDecryptionError("Stored webhook secret could not be decrypted") from e
