"""Provider token encryption.

WHAT:
    Symmetric encryption (Fernet) for provider access and refresh tokens
    stored in the `tokens` table.

WHY:
    - Keeps provider credentials out of plaintext storage and logs.
    - The cipher is built once per process, on first use, so importing this
      module never requires the key to be configured.

REFERENCES:
    - adsync/services/token_service.py (decrypts tokens before sync)
    - https://cryptography.io/en/latest/fernet/
"""

import base64
import binascii
import logging
import threading
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .deps import get_settings


logger = logging.getLogger(__name__)

_cipher: Optional[Fernet] = None
_cipher_lock = threading.Lock()


def _build_cipher(key: str) -> Fernet:
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
            "or add it to backend/.env."
        )
    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError, binascii.Error) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def get_cipher() -> Fernet:
    """Return the process-wide Fernet cipher, creating it on first access."""
    global _cipher
    if _cipher is None:
        with _cipher_lock:
            if _cipher is None:
                _cipher = _build_cipher(get_settings().TOKEN_ENCRYPTION_KEY)
    return _cipher


def reset_cipher() -> None:
    """Drop the cached cipher (key rotation, tests)."""
    global _cipher
    with _cipher_lock:
        _cipher = None


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Meta access token).
        context:   Friendly label for logs (provider/tenant).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Args:
        ciphertext: Encrypted token retrieved from DB.
        context:    Friendly label for logs (provider/tenant).

    Returns:
        Plaintext secret string.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
