"""
Encryption utilities for secure API key storage.
Uses Fernet symmetric encryption.
"""

import logging
import base64
import hashlib
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

from chatkeep.config import get_settings

logger = logging.getLogger(__name__)


def _get_fernet(encryption_key: Optional[str] = None) -> Fernet:
    """
    Get Fernet instance using the given key or the configured one.
    Derives a valid Fernet key from any string.
    """
    secret = encryption_key or get_settings().encryption_key

    # Derive a 32-byte key from the configured key
    key_bytes = hashlib.sha256(secret.encode()).digest()

    # Fernet requires base64-encoded 32-byte key
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def encrypt_api_key(api_key: Optional[str], encryption_key: Optional[str] = None) -> str:
    """
    Encrypt an API key for storage.

    Args:
        api_key: Plain text API key
        encryption_key: Secret to derive the Fernet key from; defaults to settings

    Returns:
        Encrypted API key as base64 string, or "" for an empty key
    """
    if not api_key:
        return ""

    fernet = _get_fernet(encryption_key)
    return fernet.encrypt(api_key.encode()).decode()


def decrypt_api_key(encrypted_key: Optional[str], encryption_key: Optional[str] = None) -> str:
    """
    Decrypt an encrypted API key.

    Args:
        encrypted_key: Encrypted API key string
        encryption_key: Secret to derive the Fernet key from; defaults to settings

    Returns:
        Decrypted plain text API key, or "" for an empty value

    Raises:
        ValueError: If the value was encrypted with a different key or is corrupted
    """
    if not encrypted_key:
        return ""

    try:
        fernet = _get_fernet(encryption_key)
        return fernet.decrypt(encrypted_key.encode()).decode()
    except InvalidToken as e:
        logger.error("Failed to decrypt API key: token invalid for the configured key")
        raise ValueError("Decryption failed - key may be corrupted") from e


def mask_api_key(api_key: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask an API key for display, showing only last few characters.

    Args:
        api_key: API key to mask
        visible_chars: Number of characters to show at end

    Returns:
        Masked API key like "sk-...abc123"
    """
    if not api_key:
        return ""

    if len(api_key) <= visible_chars:
        return "*" * len(api_key)

    prefix = api_key[:3] if api_key.startswith(("sk-", "key")) else ""
    suffix = api_key[-visible_chars:]

    return f"{prefix}...{suffix}"
