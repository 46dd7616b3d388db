"""Fixed-window rate limiter middleware."""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import RateLimitProfile
from shopguard.config.rate_limit_defaults import SKIP_PATHS
from shopguard.errors import RATE_LIMIT_EXCEEDED, SERVICE_UNAVAILABLE, security_error
from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.monitor import RATE_LIMIT_HIT, get_monitor
from shopguard.store.ratelimit import RateLimitStore

logger = structlog.get_logger()

# Redis/memory key prefix
_KEY_PREFIX = "ratelimit"


def _always(path: str) -> bool:
    return True


def client_key(context: RequestContext, key_by: str) -> str:
    """Identity id for identity-keyed profiles with a known caller, else the client IP."""
    if key_by == "identity" and context.identity and context.identity.id:
        return f"user:{context.identity.id}"
    return f"ip:{context.client_ip or 'unknown'}"


class RateLimiter(Middleware):
    """Fixed-window limiter for one named profile.

    - Only counts requests whose path satisfies ``applies_to``
    - Paths in ``skip_paths`` (health checks) are never counted
    - The (max+1)th request in a window is rejected with 429
    - Fail-closed when the store errors (returns 503)
    - Injects RateLimit-* response headers (and Retry-After when limited)
    """

    def __init__(
        self,
        name: str,
        profile: RateLimitProfile,
        store: RateLimitStore,
        applies_to: Callable[[str], bool] = _always,
        skip_paths: Iterable[str] = SKIP_PATHS,
    ) -> None:
        self._name = name
        self._profile = profile
        self._store = store
        self._applies_to = applies_to
        self._skip_paths = frozenset(skip_paths)

    @property
    def name(self) -> str:
        return self._name

    @property
    def profile(self) -> RateLimitProfile:
        return self._profile

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if context.path in self._skip_paths or not self._applies_to(context.path):
            return None

        profile = self._profile
        key = f"{_KEY_PREFIX}:{self._name}:{client_key(context, profile.key_by)}"

        try:
            state = await self._store.hit(key, profile.window_seconds)
        except Exception as exc:
            # Fail-closed: no counting backend = reject requests
            logger.error("rate_limiter_store_error", limiter=self._name, error=str(exc), action="fail_closed")
            return security_error(503, "Service temporarily unavailable", SERVICE_UNAVAILABLE)

        reset = max(1, math.ceil(state.reset_after))
        remaining = max(0, profile.max - state.count)

        if state.count <= profile.max:
            current = context.extra.get("rate_limit")
            # Report the tightest limit when several profiles apply
            if current is None or remaining < current["remaining"]:
                context.extra["rate_limit"] = {"limit": profile.max, "remaining": remaining, "reset": reset}
            return None

        logger.warning(
            "rate_limit_exceeded",
            limiter=self._name,
            client_ip=context.client_ip,
            path=context.path,
            current=state.count,
            max=profile.max,
            request_id=context.request_id,
        )
        get_monitor().record(RATE_LIMIT_HIT, limiter=self._name, client_ip=context.client_ip)

        context.extra["rate_limit"] = {"limit": profile.max, "remaining": 0, "reset": reset}
        return security_error(
            429,
            profile.message,
            RATE_LIMIT_EXCEEDED,
            headers={
                "Retry-After": str(reset),
                "RateLimit-Limit": str(profile.max),
                "RateLimit-Remaining": "0",
                "RateLimit-Reset": str(reset),
            },
        )

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Inject RateLimit-* headers into responses."""
        info = context.extra.get("rate_limit")
        if info and "RateLimit-Limit" not in response.headers:
            response.headers["RateLimit-Limit"] = str(info["limit"])
            response.headers["RateLimit-Remaining"] = str(info["remaining"])
            response.headers["RateLimit-Reset"] = str(info["reset"])
        return response
