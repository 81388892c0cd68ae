"""Encryption utilities for sensitive partner columns.

Bot tokens and service-account credential blobs are stored encrypted with
Fernet symmetric encryption and decrypted transparently on load.
"""

import base64
import logging
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from postback_tracker.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_encryption_key() -> bytes:
    """
    Resolve the Fernet key from settings.encryption_key.

    Returns:
        Fernet key as bytes (process-wide, resolved once)
    """
    key_str = settings.encryption_key
    if not key_str:
        # Values written with a temporary key are unreadable after restart
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
        return Fernet.generate_key()

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return key_str.encode()
    except (ValueError, TypeError):
        pass
    # Passphrase-style key: pad/truncate to 32 bytes
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


def _fernet() -> Fernet:
    return Fernet(get_encryption_key())


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        token: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None
        return decrypt_value(value)


def encrypt_value(value: str) -> str:
    """
    Encrypt a value for storage.

    Args:
        value: Plaintext value to encrypt

    Returns:
        Encrypted value as base64 string
    """
    if not value:
        return value

    encrypted = _fernet().encrypt(value.encode())
    return base64.urlsafe_b64encode(encrypted).decode()


def decrypt_value(value: str) -> str | None:
    """
    Decrypt a value from storage.

    Args:
        value: Encrypted value as base64 string

    Returns:
        Decrypted plaintext value or None on failure
    """
    if not value:
        return value

    try:
        encrypted = base64.urlsafe_b64decode(value.encode())
        return _fernet().decrypt(encrypted).decode()
    except (InvalidToken, ValueError) as e:
        # Key rotation, corruption, or legacy plaintext rows
        logger.error(
            "Decryption failed: %s (value_length=%d)", type(e).__name__, len(value)
        )
        return None
