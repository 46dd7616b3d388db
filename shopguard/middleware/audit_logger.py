"""Audit logger middleware: security events before the handler, anomalies after the response."""

from __future__ import annotations

import time

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.audit_actions import (
    SUSPICIOUS_ACTIVITY,
    build_security_event,
    classify_request,
)
from shopguard.config.rate_limit_defaults import is_auth_endpoint
from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.monitor import FAILED_LOGIN, get_monitor

logger = structlog.get_logger()
# Dedicated sink; logging_config can route it to its own file
audit_log = structlog.get_logger("shopguard.audit")


class AuditLogger(Middleware):
    """Emit structured security events to the audit log.

    process_request: logs auth attempts, admin actions and payment/order actions.
    process_response: logs any status >= 400 as suspicious activity, with duration.

    Never rejects. Logging failures are reported and then dropped so they
    cannot break a request.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        role = context.identity.role if context.identity else None
        categories = classify_request(context.path, role)
        context.extra["_audit_event"] = build_security_event(context)
        for category in categories:
            audit_log.info(category, request_id=context.request_id, **context.extra["_audit_event"])
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        if response.status_code < 400:
            return response

        try:
            # Short-circuits before this stage never reached process_request
            event = context.extra.get("_audit_event") or build_security_event(context)
            duration_ms = round((time.monotonic() - context.started_at) * 1000, 2)
            audit_log.warning(
                SUSPICIOUS_ACTIVITY,
                request_id=context.request_id,
                status_code=response.status_code,
                duration_ms=duration_ms,
                **event,
            )
            if is_auth_endpoint(context.path):
                get_monitor().record(FAILED_LOGIN, client_ip=context.client_ip, path=context.path)
        except Exception:
            logger.exception("audit_log_failed", request_id=context.request_id)
        return response
