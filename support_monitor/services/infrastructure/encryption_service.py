"""
Encryption service for session credentials.
Uses Fernet symmetric encryption for secure storage at rest.
"""

from cryptography.fernet import Fernet, InvalidToken

from support_monitor.config import settings
from support_monitor.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_data(data: str) -> bytes:
    """
    Encrypt a string for database storage.

    Args:
        data: Plain text to encrypt

    Returns:
        bytes: Encrypted data (ready for BYTEA storage)

    Raises:
        EncryptionError: If encryption fails
    """
    if not isinstance(data, str):
        raise EncryptionError("Data must be a string")

    try:
        return _get_fernet().encrypt(data.encode("utf-8"))
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt data", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_data(encrypted_data: bytes) -> str:
    """
    Decrypt data from database storage.

    Raises:
        EncryptionError: If decryption fails or the token is invalid
    """
    if not encrypted_data or not isinstance(encrypted_data, bytes):
        raise EncryptionError("Encrypted data must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_data).decode("utf-8")
    except EncryptionError:
        raise
    except InvalidToken as e:
        logger.error("Decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted data") from e
    except Exception as e:
        logger.error("Failed to decrypt data", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def validate_encryption_config() -> bool:
    """
    Validate that encryption is properly configured.

    Returns:
        bool: True if encryption is configured and working
    """
    try:
        sample = "credential_check_12345"
        is_valid = decrypt_data(encrypt_data(sample)) == sample

        if is_valid:
            logger.info("Encryption configuration validated successfully")
        else:
            logger.error("Encryption validation failed - data mismatch")

        return is_valid

    except Exception as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Store the result in ENCRYPTION_KEY.
    """
    return Fernet.generate_key().decode("utf-8")
