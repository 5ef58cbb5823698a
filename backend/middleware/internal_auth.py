"""
Internal Service Authentication

API key authentication for the services that call the deadline engine (the
administrative back office and the filing/compliance services). End-user
authentication and role checks happen in those callers; the engine only
verifies that the caller is a known service.

Environment Variables:
    INTERNAL_API_KEY: Primary API key for internal services
    INTERNAL_API_KEYS: Comma-separated list of valid keys (for key rotation)

Usage:
    from middleware.internal_auth import require_internal_service, InternalService

    @router.post("/calculate")
    async def calculate(
        data: DeadlineRequest,
        service: InternalService = Depends(require_internal_service)
    ):
        ...

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

from logging_config import set_request_context

logger = logging.getLogger(__name__)

# Header names
API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"

# Environment variable names
INTERNAL_API_KEY_ENV = "INTERNAL_API_KEY"
INTERNAL_API_KEYS_ENV = "INTERNAL_API_KEYS"  # Comma-separated for rotation


@dataclass
class InternalService:
    """Represents an authenticated internal service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging
    is_authenticated: bool = True


@lru_cache(maxsize=1)
def _get_valid_api_keys() -> Set[str]:
    """
    Get set of valid API keys from environment.
    Cached; call _get_valid_api_keys.cache_clear() after rotating keys.
    """
    keys = set()

    primary_key = os.environ.get(INTERNAL_API_KEY_ENV)
    if primary_key:
        keys.add(primary_key.strip())

    additional_keys = os.environ.get(INTERNAL_API_KEYS_ENV, "")
    for key in additional_keys.split(","):
        key = key.strip()
        if key:
            keys.add(key)

    if not keys:
        logger.warning("No internal API keys configured - all deadline engine calls will be rejected")

    return keys


def is_internal_auth_configured() -> bool:
    """Check if internal authentication is configured."""
    return len(_get_valid_api_keys()) > 0


def validate_internal_key(api_key: Optional[str]) -> bool:
    """
    Validate an internal API key.

    Returns:
        True if valid, False otherwise
    """
    if not api_key:
        return False

    # Constant-time comparison to prevent timing attacks
    for valid_key in _get_valid_api_keys():
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
        HTTPException 401: missing or invalid API key
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

    set_request_context(service_name=service_name)
    logger.debug(f"Internal service authenticated: {service_name}")

    return InternalService(
        name=service_name,
        api_key_hash=f"...{api_key[-8:]}"
    )


# Convenience alias - use directly as dependency
require_internal_service = get_internal_service
