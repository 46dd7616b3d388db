"""Redis async connection pool with retry and graceful degradation."""

from __future__ import annotations

import asyncio
import re

import redis.asyncio as aioredis
import structlog

from shopguard.store.ratelimit import MemoryRateLimitStore, RateLimitStore, RedisRateLimitStore

logger = structlog.get_logger()

# Pattern to redact passwords from Redis URLs
_REDIS_URL_PASSWORD = re.compile(r"(rediss?://[^:]*:)[^@]+(@)")

_pool: aioredis.Redis | None = None
_MAX_RETRIES = 5
_BASE_DELAY = 0.5


def _redact_url(url: str) -> str:
    """Redact password from Redis URL for safe logging."""
    return _REDIS_URL_PASSWORD.sub(r"\1***\2", url)


async def init_redis(url: str, pool_size: int = 10, max_retries: int = _MAX_RETRIES) -> aioredis.Redis | None:
    """Initialize Redis connection pool with exponential backoff retry.

    Returns None when Redis stays unreachable; callers degrade (anonymous
    sessions, in-memory rate limiting) instead of failing startup.
    """
    global _pool
    for attempt in range(1, max_retries + 1):
        try:
            _pool = aioredis.from_url(
                url,
                max_connections=pool_size,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await _pool.ping()
            logger.info("redis_connected", url=_redact_url(url), pool_size=pool_size)
            return _pool
        except (aioredis.ConnectionError, OSError) as exc:
            delay = _BASE_DELAY * (2 ** (attempt - 1))
            logger.warning(
                "redis_connect_retry",
                attempt=attempt,
                max_retries=max_retries,
                delay=delay,
                error=str(exc),
            )
            if attempt == max_retries:
                logger.error("redis_connect_failed", url=_redact_url(url), error=str(exc))
                _pool = None
                return None
            await asyncio.sleep(delay)
    return None


def get_redis() -> aioredis.Redis | None:
    """Return the current Redis connection pool, or None if unavailable."""
    return _pool


def build_rate_limit_store(backend: str) -> RateLimitStore:
    """Pick the counter store for rate limiting and slow-down.

    ``redis`` shares windows across gateway processes; without a live pool it
    falls back to the in-memory store so one process still enforces limits.
    """
    if backend == "redis":
        if _pool is not None:
            return RedisRateLimitStore(_pool)
        logger.warning("rate_limit_store_fallback", requested="redis", using="memory")
    return MemoryRateLimitStore()


async def ping() -> bool:
    """Check if Redis is reachable."""
    if _pool is None:
        return False
    try:
        return await _pool.ping()
    except Exception:
        return False


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
        logger.info("redis_closed")
