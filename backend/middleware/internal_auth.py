"""
Internal Service Authentication

API key authentication for the booking, address and login services
that call the identity API. There are no end-user sessions here.

Settings:
    INTERNAL_API_KEY: Primary API key for internal services
    INTERNAL_API_KEYS: Comma-separated list of valid keys (for key rotation)

Usage:
    from middleware.internal_auth import require_internal_service

    @router.post("/resolve")
    async def resolve(
        data: ResolveRequest,
        caller: InternalService = Depends(require_internal_service)
    ):
        # caller.name contains the authenticated service name
        pass

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
"""

import secrets
import logging
from typing import Optional, Set
from dataclasses import dataclass

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import APIKeyHeader

from config import get_settings

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """Represents an authenticated internal service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging
    is_authenticated: bool = True


def get_valid_api_keys() -> Set[str]:
    """
    Get set of valid API keys from settings.

    Returns:
        Set of valid API key strings
    """
    settings = get_settings()
    keys = set()

    if settings.INTERNAL_API_KEY:
        keys.add(settings.INTERNAL_API_KEY.strip())

    for key in settings.INTERNAL_API_KEYS.split(","):
        key = key.strip()
        if key:
            keys.add(key)

    return keys


def validate_internal_key(api_key: Optional[str]) -> bool:
    """
    Validate an internal API key.

    Args:
        api_key: The API key to validate

    Returns:
        True if valid, False otherwise
    """
    if not api_key:
        return False

    valid_keys = get_valid_api_keys()

    if not valid_keys:
        logger.warning("No internal API keys configured - rejecting internal call")
        return False

    # Constant-time comparison
    for valid_key in valid_keys:
        if secrets.compare_digest(api_key, valid_key):
            return True

    return False


# FastAPI dependency for API key header
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency to authenticate internal service requests.

    Raises:
        HTTPException: 401 if the key is missing or invalid
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

    logger.debug(f"Internal service authenticated: {service_name}")

    return InternalService(
        name=service_name,
        api_key_hash=f"...{api_key[-8:]}"
    )


# Convenience alias - use directly as dependency
require_internal_service = get_internal_service
