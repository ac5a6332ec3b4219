"""Admin authentication for mutating catalog endpoints.

The catalog UI stores a shared access token in a cookie; requests that
change records must present a cookie whose value matches
CATALOG_ACCESS_TOKEN. Read-only endpoints are public.
"""
import logging
import secrets

from fastapi import HTTPException, Request, status

from app.core.config import settings

logger = logging.getLogger(__name__)


def require_admin(request: Request) -> None:
    """
    FastAPI dependency that rejects requests without a valid admin cookie.

    Raises:
        HTTPException: 500 if no access token is configured,
            401 if the cookie is missing or wrong
    """
    expected = settings.CATALOG_ACCESS_TOKEN
    if not expected:
        logger.error("CATALOG_ACCESS_TOKEN is not set, refusing admin request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Backend configuration error: access token not set",
        )

    provided = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
