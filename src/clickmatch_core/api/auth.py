"""FastAPI authentication dependencies for the clickmatch API."""
import hmac
import os
from typing import Annotated

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer


# User-facing API key header
api_key_header = APIKeyHeader(name="X-CLICKMATCH-API-KEY", auto_error=False)

# Scheduler secret: dedicated header, or "Authorization: Bearer <secret>"
cron_secret_header = APIKeyHeader(name="X-CLICKMATCH-CRON-SECRET", auto_error=False)
cron_bearer = HTTPBearer(auto_error=False)


async def require_api_key(
    api_key: Annotated[str | None, Security(api_key_header)] = None
) -> str:
    """Validate API key from request header.

    Args:
        api_key: API key from X-CLICKMATCH-API-KEY header (optional)

    Returns:
        Validated API key

    Raises:
        HTTPException: 401 if API key is missing or invalid
    """
    expected_key = os.getenv("CLICKMATCH_API_KEY")

    if not expected_key:
        raise RuntimeError("CLICKMATCH_API_KEY environment variable not configured")

    # Return 401 for both missing AND invalid keys
    if not api_key or not hmac.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )

    return api_key


async def require_cron_secret(
    secret: Annotated[str | None, Security(cron_secret_header)] = None,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Security(cron_bearer)] = None,
) -> str:
    """Validate the shared scheduler secret.

    Raises:
        HTTPException: 401 if the secret is missing or invalid
    """
    expected_secret = os.getenv("CLICKMATCH_CRON_SECRET")

    if not expected_secret:
        raise RuntimeError("CLICKMATCH_CRON_SECRET environment variable not configured")

    provided = secret or (bearer.credentials if bearer else None)
    if not provided or not hmac.compare_digest(provided, expected_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )

    return provided
