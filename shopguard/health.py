"""Health and readiness endpoints."""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from shopguard.config.loader import get_settings
from shopguard.store import redis as redis_store

logger = structlog.get_logger()
router = APIRouter()


async def _check_upstream() -> bool:
    """Check if the upstream API answers a HEAD request."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.head(settings.upstream_url)
            return resp.status_code < 500
    except httpx.HTTPError:
        return False


async def _redis_status() -> str:
    """Redis only matters when it backs the rate limiter; otherwise report it as optional."""
    if await redis_store.ping():
        return "up"
    return "down" if get_settings().rate_limit_backend == "redis" else "unused"


@router.get("/health")
async def health():
    """Liveness: gateway status plus its dependencies. Never counted by rate limits."""
    redis_status = await _redis_status()
    upstream_ok = await _check_upstream()

    return {
        "status": "healthy" if (redis_status != "down" and upstream_ok) else "degraded",
        "gateway": "up",
        "redis": redis_status,
        "upstream": "up" if upstream_ok else "down",
    }


@router.get("/ready")
async def ready():
    """Readiness: 200 only when the upstream and any required store are reachable."""
    redis_status = await _redis_status()
    upstream_ok = await _check_upstream()

    if redis_status != "down" and upstream_ok:
        return {"status": "ready"}

    return JSONResponse(
        status_code=503,
        content={
            "status": "not_ready",
            "redis": redis_status,
            "upstream": "up" if upstream_ok else "down",
        },
    )
