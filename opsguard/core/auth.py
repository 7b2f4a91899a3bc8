"""Shared-secret authentication for the HTTP surface.

Two secrets guard the API: ``CRON_SECRET`` (sent as a Bearer token by the
external cron that drives ticks) and ``API_KEY`` (sent as ``X-API-Key`` by
operators managing policies and incidents). An unset secret means the
deployment is misconfigured, which is reported as 500 rather than silently
opening the routes.
"""

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from opsguard.config import settings
from opsguard.logging_config import get_logger

logger = get_logger(__name__)


def _secret_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        HTTPException 500: If CRON_SECRET is not configured
        HTTPException 401: If the header is missing or wrong
    """
    if not settings.cron_secret:
        logger.error("CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cron secret not configured",
        )

    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token or not _secret_matches(token, settings.cron_secret):
        logger.warning("Rejected cron request with invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_api_key(
    x_api_key: Annotated[str | None, Header()] = None,
) -> None:
    """Require ``X-API-Key: <API_KEY>``.

    Raises:
        HTTPException 500: If API_KEY is not configured
        HTTPException 401: If the header is missing or wrong
    """
    if not settings.api_key:
        logger.error("API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API key not configured",
        )

    if not x_api_key or not _secret_matches(x_api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )


CronAuth = Depends(verify_cron_secret)
ApiKeyAuth = Depends(verify_api_key)
