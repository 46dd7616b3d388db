"""Progressive delay governor: slows clients down instead of rejecting them."""

from __future__ import annotations

import asyncio

import structlog
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response

from shopguard.config.loader import SlowDownSettings
from shopguard.config.rate_limit_defaults import SKIP_PATHS
from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.middleware.rate_limiter import client_key
from shopguard.store.ratelimit import RateLimitStore

logger = structlog.get_logger()

_KEY_PREFIX = "slowdown"
# How often a held request checks whether the client went away
_POLL_SECONDS = 0.25
# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


def compute_delay(count: int, settings: SlowDownSettings) -> float:
    """Seconds to hold the ``count``-th request of the window."""
    if count <= settings.delay_after:
        return 0.0
    return min(settings.delay_ms, settings.max_delay_ms) / 1000


async def _buffer_body(request: Request | None) -> bool:
    """Read the body before the hold. Returns False if the client went away mid-upload.

    ``is_disconnected()`` consumes the next ASGI message, which would be the
    body if it had not been read yet; once cached, later stages get it from
    ``request.body()``.
    """
    if request is None:
        return True
    try:
        await request.body()
    except ClientDisconnect:
        return False
    return True


async def _client_gone(request: Request | None) -> bool:
    if request is None:
        return False
    return await request.is_disconnected()


class SpeedLimiter(Middleware):
    """Hold each request past ``delay_after`` in a window for a fixed delay.

    Never rejects on its own. The wait is a cooperative ``asyncio.sleep``
    so other requests keep flowing. Store errors are logged and the request
    passes undelayed.
    """

    def __init__(self, settings: SlowDownSettings, store: RateLimitStore, skip_paths=SKIP_PATHS) -> None:
        self._settings = settings
        self._store = store
        self._skip_paths = frozenset(skip_paths)

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if context.path in self._skip_paths:
            return None

        key = f"{_KEY_PREFIX}:{client_key(context, 'ip')}"
        try:
            state = await self._store.hit(key, self._settings.window_seconds)
        except Exception as exc:
            logger.error("speed_limiter_store_error", error=str(exc), action="fail_open")
            return None

        delay = compute_delay(state.count, self._settings)
        if delay <= 0:
            return None

        context.extra["slow_down_delay_ms"] = int(delay * 1000)
        logger.info(
            "request_delayed",
            client_ip=context.client_ip,
            count=state.count,
            delay_ms=int(delay * 1000),
            request_id=context.request_id,
        )

        if not await _buffer_body(request):
            logger.info("client_disconnected_during_delay", request_id=context.request_id)
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        remaining = delay
        while remaining > 0:
            step = min(_POLL_SECONDS, remaining)
            await asyncio.sleep(step)
            remaining -= step
            if await _client_gone(request):
                logger.info("client_disconnected_during_delay", request_id=context.request_id)
                return Response(status_code=CLIENT_CLOSED_REQUEST)
        return None
