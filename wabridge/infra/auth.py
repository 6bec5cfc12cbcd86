"""Admin API authentication."""

import hmac
from typing import Optional
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader, APIKeyQuery

from wabridge.infra.config import config

# API key header
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
api_key_query = APIKeyQuery(name="api_key", auto_error=False)


async def verify_admin_key(
    api_key: Optional[str] = Security(api_key_header),
    api_key_query_param: Optional[str] = Security(api_key_query),
) -> str:
    """
    Verify the admin API key.

    Supports both header (X-API-Key) and query parameter (api_key).

    Raises:
        HTTPException: 503 if no admin key is configured, 401 if the key
            is missing or wrong
    """
    expected = config.ADMIN_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled. Set ADMIN_API_KEY to enable it.",
        )

    key = api_key or api_key_query_param
    if not key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header or api_key query parameter.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Constant-time comparison
    if not hmac.compare_digest(key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return key
