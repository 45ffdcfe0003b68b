"""
Utility modules package.
"""

from chatkeep.utils.encryption import encrypt_api_key, decrypt_api_key, mask_api_key
from chatkeep.utils.validators import validate_base_url

__all__ = [
    "encrypt_api_key",
    "decrypt_api_key",
    "mask_api_key",
    "validate_base_url",
]
