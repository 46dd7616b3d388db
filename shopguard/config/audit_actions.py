"""Audit event classification and security event records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from shopguard.config.rate_limit_defaults import is_auth_endpoint, is_payment_endpoint
from shopguard.utils.sanitize import truncate

if TYPE_CHECKING:
    from shopguard.middleware.pipeline import RequestContext

_MAX_UA_LENGTH = 1024
_MAX_URL_LENGTH = 2048
_MAX_IP_LENGTH = 45  # IPv6 max = 45 chars
_MAX_USERID_LENGTH = 255
_MAX_METHOD_LENGTH = 10

AUTH_ATTEMPT = "auth_attempt"
ADMIN_ACTION = "admin_action"
PAYMENT_ACTION = "payment_action"
SUSPICIOUS_ACTIVITY = "suspicious_activity"


def classify_request(path: str, role: str | None = None) -> list[str]:
    """Return every pre-handler audit category a request falls into.

    A request can be several things at once (an admin placing an order
    is both an admin action and a payment action), so each match is
    reported separately.
    """
    events = []
    if is_auth_endpoint(path):
        events.append(AUTH_ATTEMPT)
    if role == "admin":
        events.append(ADMIN_ACTION)
    if is_payment_endpoint(path):
        events.append(PAYMENT_ACTION)
    return events


def build_security_event(context: RequestContext) -> dict[str, Any]:
    """Snapshot the request fields recorded in every security event.

    Control characters are stripped and every field is truncated so an
    attacker cannot forge log lines or blow up the sink with oversized values.
    """
    url = context.path
    raw_query = context.extra.get("raw_query", "")
    if raw_query:
        url = f"{url}?{raw_query}"
    return {
        "ip": truncate(context.client_ip, _MAX_IP_LENGTH),
        "method": truncate(context.method, _MAX_METHOD_LENGTH),
        "url": truncate(url, _MAX_URL_LENGTH),
        "user_agent": truncate(context.headers.get("user-agent", ""), _MAX_UA_LENGTH),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "user": truncate(context.user_label, _MAX_USERID_LENGTH),
    }
