"""Read-only access to sessions the upstream application writes to Redis.

Each session is a hash at ``session:<token>`` with ``user_id``, ``role``
and ``csrf_token`` fields.
"""

from __future__ import annotations

import re

import structlog

from shopguard.store.redis import get_redis

logger = structlog.get_logger()

# Redis key prefix for sessions
_KEY_PREFIX = "session"

# Accept opaque tokens only: URL-safe characters, bounded length
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]{16,512}$")


def _session_key(token: str) -> str:
    """Build the Redis key for a session."""
    return f"{_KEY_PREFIX}:{token}"


def is_valid_token(token: str) -> bool:
    """Check that a token has a plausible format before it reaches Redis."""
    return bool(_TOKEN_PATTERN.match(token))


async def load_session(token: str) -> dict[str, str] | None:
    """Load session data from Redis.

    Returns:
        Session data dict if found, None if not found, invalid token, or Redis unavailable.
    """
    # Validate token format before touching Redis: prevents oversized/malicious keys
    if not is_valid_token(token):
        logger.warning("session_invalid_token_format", token_length=len(token))
        return None

    redis = get_redis()
    if redis is None:
        return None

    try:
        data = await redis.hgetall(_session_key(token))
        return data if data else None
    except Exception as exc:
        logger.error("session_load_error", error=str(exc))
        return None
