"""
Trigger authentication for sync endpoints.

Scheduled callers identify themselves with `Authorization: Bearer <SYNC_CRON_SECRET>`.
Interactive callers (the dashboard) send no Authorization header and are let through;
a header that is present but does not carry the configured secret is rejected.
"""
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import Request

from app.core.config import settings

logger = logging.getLogger(__name__)

# auto_error=False so requests without the header reach verify_cron_secret
bearer_scheme = HTTPBearer(auto_error=False)


def verify_cron_secret(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Optional[str]:
    """
    Validate the cron bearer token when one is supplied.

    Args:
        request: The incoming request
        credentials: Parsed Authorization header, if any

    Returns:
        "cron" for an authenticated scheduled call, None for an interactive call

    Raises:
        HTTPException: If an Authorization header is present but invalid
    """
    if request.headers.get("Authorization") is None:
        return None

    if not settings.SYNC_CRON_SECRET:
        logger.warning("Authorization header sent but SYNC_CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

    token = credentials.credentials if credentials else ""
    if not hmac.compare_digest(token, settings.SYNC_CRON_SECRET):
        logger.warning(f"Invalid cron secret from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

    return "cron"
