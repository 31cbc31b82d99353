"""FastAPI dependencies for authentication and dispatch service access."""

import os

from fastapi import Depends, Header, HTTPException, Request, status

from server.utils import redact_sensitive_headers
from utils.logger import get_logger

logger = get_logger(__name__)


def _configured_keys(env_var: str) -> list[str]:
    return [k.strip() for k in os.getenv(env_var, "").split(",") if k.strip()]


async def get_api_key(request: Request, x_api_key: str | None = Header(None)):
    """Validate API key from X-API-Key header."""
    valid_keys = _configured_keys("API_KEYS")
    redacted_headers = redact_sensitive_headers(dict(request.headers))

    if not valid_keys:
        logger.error(
            "API authentication not configured",
            extra={"extra_fields": {"path": request.url.path, "headers": redacted_headers}},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API authentication not configured",
        )

    if not x_api_key or x_api_key not in valid_keys:
        logger.warning(
            "API authentication failed",
            extra={"extra_fields": {"path": request.url.path, "headers": redacted_headers}},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")

    return x_api_key


async def get_admin_key(request: Request, api_key: str = Depends(get_api_key)):
    """Require an X-API-Key that is also listed in ADMIN_API_KEYS."""
    if api_key not in _configured_keys("ADMIN_API_KEYS"):
        logger.warning(
            "Admin access denied",
            extra={"extra_fields": {"path": request.url.path, "method": request.method}},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API key required")
    return api_key


def get_services():
    """Dependency to get the wired dispatch services (singleton pattern)."""
    from dispatch.factory import build_services

    if not hasattr(get_services, "_instance"):
        get_services._instance = build_services()
    return get_services._instance


def get_engine(services=Depends(get_services)):
    return services.engine


def get_ledger(services=Depends(get_services)):
    return services.ledger


def get_admin(services=Depends(get_services)):
    return services.admin
