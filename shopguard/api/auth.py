"""Bearer API key check for the gateway's own admin endpoints."""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from shopguard.config.loader import get_settings

logger = structlog.get_logger()

_authorization = APIKeyHeader(name="Authorization", auto_error=False)


def _bearer_token(header: str) -> str:
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return header.strip()


async def require_admin_key(
    request: Request, authorization: str | None = Security(_authorization)
) -> str:
    """Accept ``Authorization: Bearer <SHOPGUARD_API_KEY>``.

    Admin endpoints are disabled (503) until an API key is configured.
    """
    configured = get_settings().api_key
    if not configured:
        raise HTTPException(status_code=503, detail="Admin API disabled: no API key configured")

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    if not hmac.compare_digest(_bearer_token(authorization).encode(), configured.encode()):
        client_ip = request.client.host if request.client else ""
        logger.warning("admin_api_key_rejected", client_ip=client_ip, path=request.url.path)
        raise HTTPException(status_code=403, detail="Invalid API key")

    return configured
