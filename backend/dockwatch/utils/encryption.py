"""Encryption utilities for credentials stored in the database.

Portainer passwords, registry tokens and other secrets are stored with Fernet
symmetric encryption (AES-128-CBC + HMAC) from the cryptography library.
The key comes from the DOCKWATCH_ENCRYPTION_KEY environment variable.
"""

import os
import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "DOCKWATCH_ENCRYPTION_KEY"

# Fernet tokens always start with version byte 0x80, "gAAAAA" once base64 encoded
FERNET_TOKEN_PREFIX = "gAAAAA"


class EncryptionService:
    """Encrypt and decrypt secrets with a Fernet key.

    Key Generation:
        python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            encryption_key: Base64-encoded Fernet key (default: from env var)

        Raises:
            ValueError: If encryption key is not configured or invalid
        """
        key_str = encryption_key or os.getenv(ENCRYPTION_KEY_ENV)

        if not key_str:
            raise ValueError(
                f"Encryption key not configured. Set {ENCRYPTION_KEY_ENV} environment variable."
            )

        try:
            self.cipher = Fernet(key_str.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Invalid encryption key format: {e}. "
                "Key must be a valid base64-encoded Fernet key (44 characters)."
            )

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string. Empty strings are stored as-is."""
        if plaintext is None:
            raise ValueError("Cannot encrypt None value")
        if plaintext == "":
            return ""
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt an encrypted string.

        Raises:
            ValueError: If ciphertext is None, tampered with, or encrypted with another key
        """
        if ciphertext is None:
            raise ValueError("Cannot decrypt None value")
        if ciphertext == "":
            return ""

        try:
            return self.cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or tampered data)")
            raise ValueError(
                "Failed to decrypt data. The encryption key may have changed; "
                "re-enter this value in Settings."
            )

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        """Heuristic check whether a value looks like a Fernet token."""
        return bool(value) and len(value) >= 7 and value.startswith(FERNET_TOKEN_PREFIX)


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get or create the global encryption service instance."""
    global _encryption_service

    if _encryption_service is None:
        _encryption_service = EncryptionService()

    return _encryption_service


def is_encryption_configured() -> bool:
    """Check if encryption is configured (key present in environment)."""
    return bool(os.getenv(ENCRYPTION_KEY_ENV))


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a secret for storage when a key is configured, otherwise store plain."""
    if plaintext is None:
        return None
    if not is_encryption_configured():
        logger.warning(
            f"{ENCRYPTION_KEY_ENV} is not configured; storing credential in plain text"
        )
        return plaintext
    return get_encryption_service().encrypt(plaintext)


def decrypt_secret(stored: Optional[str]) -> Optional[str]:
    """Reverse of encrypt_secret. Plain values written before a key existed pass through."""
    if stored is None:
        return None
    if not is_encryption_configured() or not EncryptionService.is_encrypted(stored):
        return stored
    return get_encryption_service().decrypt(stored)
