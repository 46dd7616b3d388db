"""FastAPI security gateway in front of the e-commerce API."""

from __future__ import annotations

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager
from urllib.parse import urlencode

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from shopguard.api.alert_routes import router as alert_router
from shopguard.config.loader import GatewaySettings, get_settings, load_settings, register_reload_handler
from shopguard.config.rate_limit_defaults import path_matches
from shopguard.health import router as health_router
from shopguard.logging_config import setup_logging
from shopguard.middleware.audit_logger import AuditLogger
from shopguard.middleware.body_parser import BodyParser
from shopguard.middleware.csrf_protection import CSRFProtection
from shopguard.middleware.identity_loader import IdentityLoader
from shopguard.middleware.ip_filter import IPFilter
from shopguard.middleware.pipeline import MiddlewarePipeline, build_context
from shopguard.middleware.rate_limiter import RateLimiter
from shopguard.middleware.request_sanitizer import NoSQLSanitizer, ParameterPollutionGuard, XSSSanitizer
from shopguard.middleware.request_validator import ContentTypeValidator, RequestSizeLimit
from shopguard.middleware.security_headers import SecurityHeaders
from shopguard.middleware.speed_limiter import SpeedLimiter
from shopguard.middleware.upload_validator import FileUploadValidator
from shopguard.monitor import reset_monitor
from shopguard.store import redis as redis_store
from shopguard.store.ratelimit import MemoryRateLimitStore, RateLimitStore

logger = structlog.get_logger()

_http_client: httpx.AsyncClient | None = None
_pipeline: MiddlewarePipeline | None = None
_prune_task: asyncio.Task | None = None

_PRUNE_INTERVAL_SECONDS = 60


def _build_pipeline(
    settings: GatewaySettings | None = None,
    store: RateLimitStore | None = None,
) -> MiddlewarePipeline:
    """Build the ordered security pipeline.

    Cheap perimeter and header checks run before anything reads the body;
    AuditLogger sits after IdentityLoader so admin actions can be recognised,
    and its response hook still sees every short-circuit.
    """
    settings = settings or get_settings()
    store = store or redis_store.build_rate_limit_store(settings.rate_limit_backend)
    limits = settings.rate_limits

    pipeline = MiddlewarePipeline()
    pipeline.add(IPFilter(settings.ip_filter))                       # 0: allow/deny lists
    pipeline.add(RequestSizeLimit(settings.request))                 # 1: declared size, before reading
    pipeline.add(ContentTypeValidator(settings.request))             # 2
    pipeline.add(IdentityLoader(settings.session_cookie_name, settings.session_header_name))  # 3
    pipeline.add(AuditLogger())                                      # 4: security events; anomalies on response
    pipeline.add(SpeedLimiter(settings.slow_down, store, settings.rate_limit_skip_paths))  # 5
    pipeline.add(RateLimiter(                                        # 6
        "AuthRateLimiter",
        limits.auth,
        store,
        applies_to=lambda path: path_matches(path, settings.auth_paths),
        skip_paths=settings.rate_limit_skip_paths,
    ))
    pipeline.add(RateLimiter(                                        # 7
        "PaymentRateLimiter",
        limits.payment,
        store,
        applies_to=lambda path: path_matches(path, settings.payment_paths),
        skip_paths=settings.rate_limit_skip_paths,
    ))
    pipeline.add(RateLimiter(                                        # 8
        "ApiRateLimiter",
        limits.api,
        store,
        applies_to=lambda path: path_matches(path, [settings.api_prefix]),
        skip_paths=settings.rate_limit_skip_paths,
    ))
    pipeline.add(BodyParser(settings.request))                       # 9: read + decode body
    pipeline.add(FileUploadValidator(settings.upload))               # 10
    pipeline.add(NoSQLSanitizer(settings.nosql_replace_with))        # 11
    pipeline.add(ParameterPollutionGuard(settings.hpp_whitelist))    # 12
    pipeline.add(XSSSanitizer())                                     # 13
    pipeline.add(CSRFProtection(settings.csrf))                      # 14
    pipeline.add(SecurityHeaders(settings.header_preset))            # 15: response only
    return pipeline


async def _prune_loop(store: MemoryRateLimitStore, max_window_seconds: float) -> None:
    """Periodically drop expired in-memory windows so idle clients don't accumulate."""
    while True:
        await asyncio.sleep(_PRUNE_INTERVAL_SECONDS)
        removed = store.prune(max_window_seconds)
        if removed:
            logger.debug("rate_limit_windows_pruned", removed=removed, remaining=len(store))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    global _http_client, _pipeline, _prune_task

    settings = load_settings()
    setup_logging(
        log_level=settings.log_level,
        json_format=settings.log_json,
        audit_log_file=settings.audit_log_file,
    )
    register_reload_handler()
    reset_monitor()

    # Init Redis (non-fatal if unavailable: sessions stay anonymous, limits fall back to memory)
    await redis_store.init_redis(
        settings.redis_url,
        pool_size=settings.redis_pool_size,
        max_retries=settings.redis_connect_retries,
    )

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.proxy_timeout),
        follow_redirects=settings.upstream_follow_redirects,
        limits=httpx.Limits(
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive,
        ),
    )

    store = redis_store.build_rate_limit_store(settings.rate_limit_backend)
    _pipeline = _build_pipeline(settings, store)

    if isinstance(store, MemoryRateLimitStore):
        longest = max(
            settings.rate_limits.auth.window_seconds,
            settings.rate_limits.api.window_seconds,
            settings.rate_limits.payment.window_seconds,
            settings.slow_down.window_seconds,
        )
        _prune_task = asyncio.create_task(_prune_loop(store, longest))

    logger.info("gateway_started", upstream=settings.upstream_url, port=settings.listen_port)

    yield

    logger.info("gateway_shutting_down")
    if _prune_task and not _prune_task.done():
        _prune_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _prune_task
    _prune_task = None

    if _http_client:
        await _http_client.aclose()
    await redis_store.close_redis()

    logger.info("gateway_stopped")


app = FastAPI(title="ShopGuard Security Gateway", lifespan=lifespan)

app.include_router(health_router)
app.include_router(alert_router)


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Identity headers only the gateway may set on upstream requests
_SPOOFABLE_HEADERS = frozenset({
    "x-request-id",
    "x-user-id",
    "x-user-role",
    "x-forwarded-for",
    "x-forwarded-proto",
})


def _upstream_payload(context) -> dict:
    """Request body kwargs for httpx.

    JSON and multipart bodies are re-encoded from the sanitized context so
    upstream never sees the pre-sanitization bytes; httpx picks a fresh
    multipart boundary. Other bodies are forwarded as received.
    """
    kind = context.extra.get("body_kind")
    if kind == "json":
        return {"content": json.dumps(context.body, separators=(",", ":")).encode()}
    if kind == "form":
        parts = []
        for key, value in (context.body or {}).items():
            for item in value if isinstance(value, list) else [value]:
                parts.append((key, (None, str(item))))
        for upload in context.files:
            parts.append((upload.field, (upload.filename, upload.content, upload.mimetype or None)))
        return {"files": parts}
    return {"content": context.extra.get("raw_body", b"")}


def _upstream_headers(request: Request, context) -> dict[str, str]:
    # httpx sets a new multipart boundary on re-encoded forms
    dropped = {"host", "content-length"}
    if context.extra.get("body_kind") == "form":
        dropped.add("content-type")
    headers = {}
    for key, value in request.headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in _SPOOFABLE_HEADERS or lower in dropped:
            continue
        headers[lower] = value

    headers["x-request-id"] = context.request_id
    headers["x-forwarded-for"] = context.client_ip
    headers["x-forwarded-proto"] = request.url.scheme
    if context.identity is not None:
        headers["x-user-id"] = context.identity.id
        headers["x-user-role"] = context.identity.role
    return headers


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy_request(request: Request, path: str) -> Response:
    """Catch-all handler: run the security pipeline, then forward upstream."""
    if _http_client is None or _pipeline is None:
        return Response(content="Gateway not initialized", status_code=503)

    settings = get_settings()
    context = build_context(request, settings.trusted_proxy_hops)
    context.extra["raw_query"] = request.url.query

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=context.request_id)

    context, short_circuit = await _pipeline.process_request(request, context)
    if short_circuit is not None:
        # Rejections still get security headers, rate-limit headers and audit logging
        return await _pipeline.process_response(short_circuit, context)

    upstream_url = f"{settings.upstream_url.rstrip('/')}/{path}"
    query = urlencode(context.query, doseq=True)
    if query:
        upstream_url = f"{upstream_url}?{query}"

    try:
        upstream_resp = await _http_client.request(
            method=request.method,
            url=upstream_url,
            headers=_upstream_headers(request, context),
            **_upstream_payload(context),
        )
    except httpx.TimeoutException:
        logger.error("upstream_timeout", url=upstream_url)
        response = Response(content="Upstream timeout", status_code=504)
        return await _pipeline.process_response(response, context)
    except httpx.HTTPError as exc:
        logger.error("upstream_error", url=upstream_url, error=str(exc))
        response = Response(content="Upstream unreachable", status_code=502)
        return await _pipeline.process_response(response, context)

    # Prevent OOM from a misbehaving upstream
    if len(upstream_resp.content) > settings.max_response_bytes:
        logger.error("upstream_response_too_large", actual_size=len(upstream_resp.content))
        response = Response(content="Upstream response too large", status_code=502)
        return await _pipeline.process_response(response, context)

    response_headers = {
        key: value
        for key, value in upstream_resp.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in ("content-length", "content-encoding")
    }
    response_headers["x-request-id"] = context.request_id

    response = Response(
        content=upstream_resp.content,
        status_code=upstream_resp.status_code,
        headers=response_headers,
    )
    return await _pipeline.process_response(response, context)
