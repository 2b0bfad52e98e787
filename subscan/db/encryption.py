"""Fernet encryption for the stored mailbox access tokens."""

import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from subscan import metrics
from subscan.config import settings

logger = logging.getLogger(__name__)

_generated_key: bytes | None = None


class EncryptionKeyError(RuntimeError):
    """Raised when no usable ENCRYPTION_KEY is configured."""
    pass


def get_encryption_key() -> bytes:
    """
    Return the Fernet key from ``ENCRYPTION_KEY``.

    With ``DEBUG`` on and no key configured, one throwaway key is generated
    per process; tokens written with it cannot be read after a restart.

    Raises:
        EncryptionKeyError: The key is missing outside debug mode, or is not
            a urlsafe base64-encoded 32-byte Fernet key
    """
    global _generated_key

    key = settings.encryption_key.strip()
    if not key:
        if not settings.debug:
            raise EncryptionKeyError("ENCRYPTION_KEY is not set")
        if _generated_key is None:
            logger.warning("ENCRYPTION_KEY not set, generating a temporary key for this process")
            _generated_key = Fernet.generate_key()
        return _generated_key

    try:
        Fernet(key)
    except ValueError as e:
        raise EncryptionKeyError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e
    return key.encode()


class EncryptedString(TypeDecorator):
    """
    String column stored as a Fernet token.

    Values that no longer decrypt (rotated key, corrupt row) read back as
    None, so the owning user looks like one without a token.
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 256, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        if value is None:
            return None
        return self._get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        if value is None:
            return None
        try:
            return self._get_fernet().decrypt(value.encode()).decode()
        except (InvalidToken, ValueError) as e:
            exception_type = type(e).__name__
            metrics.record_decryption_failure(exception_type)
            logger.error(f"Token decryption failed: {exception_type} (value_length={len(value)})")
            return None
