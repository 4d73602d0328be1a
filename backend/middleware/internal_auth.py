"""
Internal Service Authentication

API key authentication for the precision search endpoints. Callers are
other backend services (mail sync, transaction import, dashboard backend),
never end users.

Environment Variables:
    INTERNAL_API_KEY: Primary API key
    INTERNAL_API_KEYS: Comma-separated additional keys (for key rotation)

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
"""

import os
import secrets
import logging
from typing import Optional, Set
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"

INTERNAL_API_KEYS_ENV = "INTERNAL_API_KEYS"


@dataclass
class InternalService:
    """Authenticated calling service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging


@lru_cache(maxsize=1)
def _get_valid_api_keys() -> Set[str]:
    """
    Valid keys from settings plus the rotation list.
    Cached; call _get_valid_api_keys.cache_clear() after changing the environment.
    """
    from config import get_settings

    keys = set()

    primary_key = get_settings().INTERNAL_API_KEY
    if primary_key:
        keys.add(primary_key.strip())

    for key in os.environ.get(INTERNAL_API_KEYS_ENV, "").split(","):
        key = key.strip()
        if key:
            keys.add(key)

    if not keys:
        logger.warning("No internal API keys configured - precision search API is closed")

    return keys


def validate_internal_key(api_key: Optional[str]) -> bool:
    """Constant-time check of api_key against the configured keys."""
    if not api_key:
        return False

    for valid_key in _get_valid_api_keys():
        if secrets.compare_digest(api_key, valid_key):
            return True
    return False


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def require_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency authenticating internal service requests.

    Raises:
        HTTPException 401: key missing or invalid
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return InternalService(name=service_name, api_key_hash=f"...{api_key[-8:]}")
