"""Request-size and content-type gates, evaluated before the body is read."""

from __future__ import annotations

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import RequestPolicy
from shopguard.errors import (
    INVALID_CONTENT_LENGTH,
    PAYLOAD_TOO_LARGE,
    UNSUPPORTED_MEDIA_TYPE,
    security_error,
)
from shopguard.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()


def media_type(content_type: str) -> str:
    """``application/json; charset=utf-8`` -> ``application/json``."""
    return content_type.split(";", 1)[0].strip().lower()


class RequestSizeLimit(Middleware):
    """Reject requests whose declared Content-Length exceeds the ceiling."""

    def __init__(self, policy: RequestPolicy) -> None:
        self._max_size = policy.max_size

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        raw = context.headers.get("content-length")
        if not raw:
            return None
        try:
            length = int(raw)
        except (ValueError, OverflowError):
            logger.info("invalid_content_length", value=raw[:32], request_id=context.request_id)
            return security_error(400, "Invalid Content-Length header", INVALID_CONTENT_LENGTH)
        if length < 0:
            return security_error(400, "Invalid Content-Length header", INVALID_CONTENT_LENGTH)
        if length > self._max_size:
            logger.info(
                "payload_too_large",
                content_length=length,
                max=self._max_size,
                client_ip=context.client_ip,
                request_id=context.request_id,
            )
            return security_error(413, "Request entity too large", PAYLOAD_TOO_LARGE)
        return None


class ContentTypeValidator(Middleware):
    """Allow-list the media type of every non-GET request.

    Multipart form data is accepted whenever it is on the allow-list,
    whatever its boundary parameter.
    """

    def __init__(self, policy: RequestPolicy) -> None:
        self._allowed = frozenset(t.lower() for t in policy.allowed_content_types)

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if context.method == "GET":
            return None

        content_type = context.headers.get("content-type", "")
        if content_type and media_type(content_type) in self._allowed:
            return None

        logger.info(
            "unsupported_media_type",
            content_type=content_type[:128],
            method=context.method,
            path=context.path,
            request_id=context.request_id,
        )
        return security_error(415, "Unsupported media type", UNSUPPORTED_MEDIA_TYPE)
