"""FastAPI dependencies: service container access and endpoint authentication."""
import secrets
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from eventpay.services import ServiceContainer

logger = structlog.get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    """The service container attached to the application."""
    return request.app.state.container


async def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    """
    Authenticate the scheduled settlement trigger.

    Expects ``Authorization: Bearer <cron_secret>``.
    """
    scheme, _, token = (authorization or "").partition(" ")
    expected = container.settings.cron_secret
    if scheme.lower() != "bearer" or not token or not secrets.compare_digest(token, expected):
        logger.warning("cron_auth_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_key(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> None:
    """Authenticate admin calls by API key header."""
    expected = container.settings.admin_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is not enabled"
        )
    provided = request.headers.get(container.settings.api_key_header)
    if not provided or not secrets.compare_digest(provided, expected):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
