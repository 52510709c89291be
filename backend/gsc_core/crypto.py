"""
Field-level encryption for OAuth tokens.

Uses Fernet symmetric encryption from the `cryptography` package. A Fernet
token is an opaque blob that already carries its own IV (nonce), timestamp
and HMAC, so one column per token is enough.

The key is sourced from the ENCRYPTION_KEY env var. In development, when no
key is configured, a key is derived from SECRET_KEY so tokens are never
stored in plaintext.
"""

import base64
import hashlib
import logging
from cryptography.fernet import Fernet, InvalidToken
from gsc_core.config import get_settings
from gsc_core.errors import CorruptCredential

logger = logging.getLogger(__name__)

_fernet = None
_DERIVED_KEY_WARNING_EMITTED = False


def _derive_dev_key(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())


def _get_fernet() -> Fernet:
    """Lazy-init the Fernet instance from the configured key."""
    global _fernet, _DERIVED_KEY_WARNING_EMITTED
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    key = settings.encryption_key

    if not key:
        if settings.is_production:
            raise RuntimeError(
                "ENCRYPTION_KEY must be set in production. "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        if not _DERIVED_KEY_WARNING_EMITTED:
            logger.warning(
                "ENCRYPTION_KEY not set — deriving a token key from SECRET_KEY. "
                "This is acceptable for local development only."
            )
            _DERIVED_KEY_WARNING_EMITTED = True
        _fernet = Fernet(_derive_dev_key(settings.secret_key))
        return _fernet

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    except Exception as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc

    return _fernet


def reset_fernet() -> None:
    """Drop the cached cipher (tests and key rotation)."""
    global _fernet
    _fernet = None


def encrypt_value(plaintext: str | None) -> str | None:
    """Encrypt a string value. None passes through."""
    if plaintext is None:
        return None
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str | None) -> str | None:
    """
    Decrypt a string value. None passes through.
    Raises CorruptCredential when the blob is tampered, truncated or was
    written under a different key.
    """
    if ciphertext is None:
        return None
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except (InvalidToken, ValueError, UnicodeError) as exc:
        logger.error("Failed to decrypt stored credential blob.")
        raise CorruptCredential("Stored credential could not be decrypted") from exc
