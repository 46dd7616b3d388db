"""Middleware pipeline chain order and context substitution tests."""

from __future__ import annotations

import dataclasses
import json

import pytest
from starlette.responses import Response

from shopguard.errors import security_error
from shopguard.middleware.pipeline import Middleware, MiddlewarePipeline, RequestContext, build_context
from tests.helpers.requests import make_request


class TrackingMiddleware(Middleware):
    """Middleware that records its execution order."""

    def __init__(self, name: str, order_log: list[str]):
        self._name = name
        self._order_log = order_log

    @property
    def name(self) -> str:
        return self._name

    async def process_request(self, request, context):
        self._order_log.append(f"req:{self._name}")
        return None

    async def process_response(self, response, context):
        self._order_log.append(f"resp:{self._name}")
        return response


class ShortCircuitMiddleware(Middleware):
    """Middleware that short-circuits the pipeline."""

    async def process_request(self, request, context):
        return security_error(403, "blocked", "IP_BLACKLISTED")


class BodyRewriter(Middleware):
    """Returns a transformed copy of the context."""

    async def process_request(self, request, context):
        return dataclasses.replace(context, body={"rewritten": True})


@pytest.mark.asyncio
async def test_middleware_executes_in_order():
    """Request middleware runs forward, response middleware runs reverse."""
    order_log: list[str] = []
    pipeline = MiddlewarePipeline()
    pipeline.add(TrackingMiddleware("first", order_log))
    pipeline.add(TrackingMiddleware("second", order_log))
    pipeline.add(TrackingMiddleware("third", order_log))

    context = RequestContext()
    await pipeline.process_request(None, context)
    assert order_log == ["req:first", "req:second", "req:third"]

    order_log.clear()
    await pipeline.process_response(Response(content="ok"), context)
    assert order_log == ["resp:third", "resp:second", "resp:first"]


@pytest.mark.asyncio
async def test_middleware_can_be_disabled():
    """Disabled middleware is skipped, and can be toggled at runtime."""
    order_log: list[str] = []
    pipeline = MiddlewarePipeline()
    pipeline.add(TrackingMiddleware("first", order_log))
    pipeline.add(TrackingMiddleware("second", order_log), enabled=False)

    await pipeline.process_request(None, RequestContext())
    assert order_log == ["req:first"]

    order_log.clear()
    pipeline.set_enabled("second", True)
    await pipeline.process_request(None, RequestContext())
    assert order_log == ["req:first", "req:second"]


@pytest.mark.asyncio
async def test_short_circuit_stops_pipeline():
    """A middleware returning a Response stops further processing."""
    order_log: list[str] = []
    pipeline = MiddlewarePipeline()
    pipeline.add(TrackingMiddleware("first", order_log))
    pipeline.add(ShortCircuitMiddleware())
    pipeline.add(TrackingMiddleware("third", order_log))

    _, result = await pipeline.process_request(None, RequestContext())
    assert result.status_code == 403
    assert json.loads(result.body) == {"success": False, "message": "blocked", "error": "IP_BLACKLISTED"}
    assert order_log == ["req:first"]


@pytest.mark.asyncio
async def test_returned_context_is_substituted():
    """A stage returning a new context replaces it for every later stage."""
    seen = {}

    class Reader(Middleware):
        async def process_request(self, request, context):
            seen["body"] = context.body
            return None

    pipeline = MiddlewarePipeline()
    pipeline.add(BodyRewriter())
    pipeline.add(Reader())

    original = RequestContext(body={"rewritten": False})
    final, result = await pipeline.process_request(None, original)

    assert result is None
    assert seen["body"] == {"rewritten": True}
    assert final.body == {"rewritten": True}
    # The caller's context is not mutated
    assert original.body == {"rewritten": False}
    assert final.request_id == original.request_id


@pytest.mark.asyncio
async def test_empty_pipeline():
    pipeline = MiddlewarePipeline()
    context = RequestContext()

    final, result = await pipeline.process_request(None, context)
    assert result is None
    assert final is context

    response = Response(content="ok")
    assert await pipeline.process_response(response, context) is response


@pytest.mark.asyncio
async def test_set_enabled_unknown_name():
    """set_enabled with unknown name is a no-op (doesn't crash)."""
    pipeline = MiddlewarePipeline()
    pipeline.set_enabled("nonexistent", False)
    assert pipeline.get_middleware("nonexistent") is None


def test_request_context_default_values():
    ctx = RequestContext(method="post")
    assert ctx.method == "POST"
    assert ctx.body is None
    assert ctx.query == {}
    assert ctx.files == []
    assert ctx.identity is None
    assert ctx.user_label == "anonymous"
    assert len(ctx.request_id) == 8


# --- Exception handling ---


class CrashingRequestMiddleware(Middleware):
    async def process_request(self, request, context):
        raise RuntimeError("middleware exploded")


class CrashingResponseMiddleware(Middleware):
    async def process_request(self, request, context):
        return None

    async def process_response(self, response, context):
        raise RuntimeError("response handler exploded")


@pytest.mark.asyncio
async def test_request_middleware_exception_returns_json_502():
    """A middleware that raises yields a well-formed error, not a crash."""
    order_log: list[str] = []
    pipeline = MiddlewarePipeline()
    pipeline.add(TrackingMiddleware("before", order_log))
    pipeline.add(CrashingRequestMiddleware())
    pipeline.add(TrackingMiddleware("after", order_log))

    _, result = await pipeline.process_request(None, RequestContext())

    assert result.status_code == 502
    assert json.loads(result.body)["error"] == "PROXY_ERROR"
    assert order_log == ["req:before"]


@pytest.mark.asyncio
async def test_response_middleware_exception_skipped():
    order_log: list[str] = []
    pipeline = MiddlewarePipeline()
    pipeline.add(TrackingMiddleware("first", order_log))
    pipeline.add(CrashingResponseMiddleware())
    pipeline.add(TrackingMiddleware("third", order_log))

    result = await pipeline.process_response(Response(content="ok", status_code=200), RequestContext())

    assert result.status_code == 200
    assert order_log == ["resp:third", "resp:first"]


# --- Context construction ---


class TestBuildContext:
    def test_repeated_query_params_become_lists(self):
        request = make_request()
        request.scope["query_string"] = b"sizes=S&sizes=M&sort=asc"
        ctx = build_context(request)
        assert ctx.query == {"sizes": ["S", "M"], "sort": "asc"}

    def test_headers_lowercased_and_ip_from_peer(self):
        request = make_request(headers={"X-CSRF-Token": "abc", "X-Forwarded-For": "6.6.6.6"})
        ctx = build_context(request)
        assert ctx.headers["x-csrf-token"] == "abc"
        # X-Forwarded-For is ignored without trusted proxies
        assert ctx.client_ip == "127.0.0.1"

    def test_trusted_proxy_hop_uses_forwarded_for(self):
        request = make_request(headers={"X-Forwarded-For": "6.6.6.6, 203.0.113.9"})
        ctx = build_context(request, trusted_proxy_hops=1)
        assert ctx.client_ip == "203.0.113.9"


# --- Pipeline build order ---


class TestBuildPipelineOrder:
    """Verify _build_pipeline() registers middleware in security-critical order."""

    def test_pipeline_order(self):
        from shopguard.main import _build_pipeline

        assert _build_pipeline().names == [
            "IPFilter",
            "RequestSizeLimit",
            "ContentTypeValidator",
            "IdentityLoader",
            "AuditLogger",
            "SpeedLimiter",
            "AuthRateLimiter",
            "PaymentRateLimiter",
            "ApiRateLimiter",
            "BodyParser",
            "FileUploadValidator",
            "NoSQLSanitizer",
            "ParameterPollutionGuard",
            "XSSSanitizer",
            "CSRFProtection",
            "SecurityHeaders",
        ]

    def test_size_gate_before_body_is_read(self):
        from shopguard.main import _build_pipeline

        names = _build_pipeline().names
        assert names.index("RequestSizeLimit") < names.index("BodyParser")

    def test_identity_loaded_before_audit_and_csrf(self):
        from shopguard.main import _build_pipeline

        names = _build_pipeline().names
        assert names.index("IdentityLoader") < names.index("AuditLogger")
        assert names.index("IdentityLoader") < names.index("CSRFProtection")

    def test_all_middleware_enabled_by_default(self):
        from shopguard.main import _build_pipeline

        pipeline = _build_pipeline()
        for mw in pipeline._middleware:
            assert pipeline._enabled.get(mw.name) is True
