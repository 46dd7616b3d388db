"""CSRF token check for state-changing requests."""

from __future__ import annotations

import hmac

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import CSRFSettings
from shopguard.config.rate_limit_defaults import path_matches
from shopguard.errors import CSRF_TOKEN_INVALID, security_error
from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.monitor import BLOCKED_REQUEST, get_monitor

logger = structlog.get_logger()

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class CSRFProtection(Middleware):
    """Require the session-bound CSRF token on every non-safe method.

    - GET/HEAD/OPTIONS always pass without a token
    - The token is read from a configurable header (default ``X-CSRF-Token``)
      and compared in constant time to ``identity.csrf_token``
    - Missing header, missing identity or mismatch returns 403
    - Exempt paths (login/registration by default) are skipped
    """

    def __init__(self, config: CSRFSettings) -> None:
        self._header = config.header_name.lower()
        self._exempt = tuple(config.exempt_paths)

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if context.method in SAFE_METHODS:
            return None
        if path_matches(context.path, self._exempt):
            return None

        supplied = context.headers.get(self._header, "")
        expected = context.identity.csrf_token if context.identity else ""

        if supplied and expected and hmac.compare_digest(supplied.encode(), expected.encode()):
            return None

        logger.error(
            "csrf_token_invalid",
            reason="missing" if not supplied else ("no_session" if not expected else "mismatch"),
            client_ip=context.client_ip,
            method=context.method,
            path=context.path,
            user=context.user_label,
            request_id=context.request_id,
        )
        get_monitor().record(BLOCKED_REQUEST, reason=CSRF_TOKEN_INVALID, client_ip=context.client_ip)
        return security_error(403, "Invalid CSRF token", CSRF_TOKEN_INVALID)
