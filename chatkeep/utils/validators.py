"""
Input validation utilities.
"""

from typing import Tuple
from urllib.parse import urlparse


def validate_base_url(url: str) -> Tuple[bool, str]:
    """
    Validate an inference endpoint override.

    Args:
        url: Base URL such as http://localhost:11434/v1

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not url:
        return True, ""  # No override

    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        return False, "Base URL must start with http:// or https://"

    if not parsed.netloc:
        return False, "Base URL must include a host"

    return True, ""


def normalize_base_url(url: str) -> str:
    """Strip whitespace, matching outer quotes and trailing slashes."""
    cleaned = (url or "").strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ("'", '"'):
        cleaned = cleaned[1:-1].strip()
    return cleaned.rstrip("/")
