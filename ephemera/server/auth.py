"""
API key authentication for the sandbox endpoints.
"""

import hmac
from typing import Optional

from fastapi import Header

from ephemera.server.config import get_settings
from ephemera.server.exceptions import AuthenticationError


def verify_api_key(api_key: str) -> bool:
    """
    Verify an API key against the configured key (constant-time).

    Returns:
        True if valid or no key is configured.
    """
    settings = get_settings()
    if settings.api_key is None:
        return True

    return hmac.compare_digest(api_key, settings.api_key)


def get_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    FastAPI dependency to extract and validate API key.

    Raises:
        AuthenticationError: If auth is required but key is missing or invalid.
    """
    settings = get_settings()

    if not settings.auth_required:
        return None

    if x_api_key is None:
        raise AuthenticationError("Missing X-API-Key header")

    if not verify_api_key(x_api_key):
        raise AuthenticationError("Invalid API key")

    return x_api_key
