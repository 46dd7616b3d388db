"""Identity loader middleware: attaches the session's caller to the context."""

from __future__ import annotations

import dataclasses

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.middleware.pipeline import Identity, Middleware, RequestContext
from shopguard.store.session import load_session

logger = structlog.get_logger()


class IdentityLoader(Middleware):
    """Resolve ``{id, role, csrf_token}`` from a session the upstream app stored.

    - Token comes from the session cookie, else the ``token`` header
    - Passes through anonymously when no token is present or it is unknown
    - Never rejects: authorization stays with the upstream app
    """

    def __init__(self, cookie_name: str = "session", header_name: str = "token") -> None:
        self._cookie_name = cookie_name
        self._header_name = header_name.lower()

    def _token(self, request: Request, context: RequestContext) -> str:
        token = ""
        if request is not None:
            token = request.cookies.get(self._cookie_name, "")
        return token or context.headers.get(self._header_name, "")

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        if context.identity is not None:
            return None

        token = self._token(request, context)
        if not token:
            return None

        session = await load_session(token)
        if session is None:
            logger.info("session_not_found", request_id=context.request_id, client_ip=context.client_ip)
            return None

        identity = Identity(
            id=session.get("user_id", ""),
            role=session.get("role", ""),
            csrf_token=session.get("csrf_token", ""),
        )
        structlog.contextvars.bind_contextvars(user=identity.id or "anonymous")
        return dataclasses.replace(context, identity=identity)
