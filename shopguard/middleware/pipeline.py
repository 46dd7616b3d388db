"""Ordered middleware chain framework."""

from __future__ import annotations

import abc
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.errors import PROXY_ERROR, security_error

logger = structlog.get_logger()


@dataclass(frozen=True)
class Identity:
    """Authenticated caller attached by the identity loader."""

    id: str = ""
    role: str = ""
    csrf_token: str = ""


@dataclass(frozen=True)
class UploadedFile:
    """A file attached to a multipart request, kept so it can be re-encoded upstream."""

    filename: str
    mimetype: str
    size: int
    field: str = ""
    content: bytes = dataclasses.field(default=b"", repr=False, compare=False)


@dataclass
class RequestContext:
    """Request state passed through the middleware pipeline.

    Sanitizing stages return a copy (``dataclasses.replace``) instead of
    mutating body/query/params in place; the pipeline substitutes it.
    """

    request_id: str = ""
    method: str = "GET"
    path: str = "/"
    client_ip: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    files: list[UploadedFile] = field(default_factory=list)
    identity: Identity | None = None
    started_at: float = field(default_factory=time.monotonic)
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid4().hex[:8]
        self.method = self.method.upper()

    @property
    def user_label(self) -> str:
        return self.identity.id if self.identity and self.identity.id else "anonymous"


def _client_ip(request: Request, trusted_proxy_hops: int) -> str:
    """Resolve the client IP, honouring X-Forwarded-For only for trusted hops."""
    peer = request.client.host if request.client else ""
    if trusted_proxy_hops <= 0:
        return peer
    xff = request.headers.get("x-forwarded-for", "")
    hops = [h.strip() for h in xff.split(",") if h.strip()]
    if len(hops) < trusted_proxy_hops:
        return peer
    return hops[-trusted_proxy_hops]


def _query_dict(request: Request) -> dict[str, Any]:
    """Collect query params; repeated keys become lists."""
    query: dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key not in query:
            query[key] = value
        elif isinstance(query[key], list):
            query[key].append(value)
        else:
            query[key] = [query[key], value]
    return query


def build_context(request: Request, trusted_proxy_hops: int = 0) -> RequestContext:
    """Build a RequestContext from an incoming Starlette request.

    The body is not read here; BodyParser fills it once the size gate passed.
    """
    params = {k: v for k, v in request.path_params.items() if k != "path"}
    return RequestContext(
        method=request.method,
        path=request.url.path,
        client_ip=_client_ip(request, trusted_proxy_hops),
        headers={k.lower(): v for k, v in request.headers.items()},
        query=_query_dict(request),
        params=params,
    )


class Middleware(abc.ABC):
    """Base class for middleware in the pipeline."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abc.abstractmethod
    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        """Process an incoming request.

        Return None to continue unchanged, a new RequestContext to continue
        with a transformed context, or a Response to short-circuit.
        """
        ...

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Process an outgoing response. Override if needed."""
        return response


class MiddlewarePipeline:
    """Ordered list of middleware. Executes request handlers forward, response handlers in reverse."""

    def __init__(self) -> None:
        self._middleware: list[Middleware] = []
        self._enabled: dict[str, bool] = {}

    def add(self, middleware: Middleware, enabled: bool = True) -> None:
        """Add a middleware to the end of the pipeline."""
        self._middleware.append(middleware)
        self._enabled[middleware.name] = enabled
        logger.info("middleware_registered", name=middleware.name, enabled=enabled)

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable a middleware by name."""
        if name in self._enabled:
            self._enabled[name] = enabled

    def get_middleware(self, name: str) -> Middleware | None:
        """Return the registered middleware with the given name, if any."""
        for mw in self._middleware:
            if mw.name == name:
                return mw
        return None

    @property
    def names(self) -> list[str]:
        return [mw.name for mw in self._middleware]

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> tuple[RequestContext, Response | None]:
        """Run request through all enabled middleware in order.

        Returns the final context together with a Response if any middleware
        short-circuits (None otherwise). A middleware exception is turned
        into a 502 JSON error so nothing escapes the pipeline.
        """
        for mw in self._middleware:
            if not self._enabled.get(mw.name, True):
                continue
            try:
                result = await mw.process_request(request, context)
            except Exception:
                logger.exception("middleware_request_error", middleware=mw.name)
                return context, security_error(502, "Internal proxy error", PROXY_ERROR)
            if isinstance(result, RequestContext):
                context = result
            elif isinstance(result, Response):
                logger.info("middleware_short_circuit", middleware=mw.name, status=result.status_code)
                return context, result
        return context, None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Run response through all enabled middleware in reverse order.

        Individual middleware exceptions are caught so one broken middleware
        doesn't corrupt the response.
        """
        for mw in reversed(self._middleware):
            if not self._enabled.get(mw.name, True):
                continue
            try:
                response = await mw.process_response(response, context)
            except Exception:
                logger.exception("middleware_response_error", middleware=mw.name)
        return response
