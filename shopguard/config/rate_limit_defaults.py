"""Default rate-limit thresholds and the route patterns each profile covers."""

from __future__ import annotations

import re
from collections.abc import Iterable

# Login and registration endpoints (auth profile; CSRF-exempt since no session exists yet)
AUTH_PATHS: tuple[str, ...] = (
    "/api/user/login",
    "/api/user/register",
    "/api/user/admin",
)

# Order placement and payment endpoints (payment profile)
PAYMENT_PATHS: tuple[str, ...] = (
    "/api/order/place",
    "/api/order/stripe",
    "/api/order/razorpay",
    "/api/order/paypal",
    "/api/payment",
)

CSRF_EXEMPT_PATHS: tuple[str, ...] = AUTH_PATHS

# Health checks never count against a limit
SKIP_PATHS: tuple[str, ...] = ("/", "/health")

API_PREFIX = "/api"

# Default thresholds
AUTH_RATE_LIMIT = 5  # attempts per window for login/registration
AUTH_WINDOW_SECONDS = 15 * 60
API_RATE_LIMIT = 100  # requests per window for the general API
API_WINDOW_SECONDS = 15 * 60
PAYMENT_RATE_LIMIT = 3  # payment attempts per window
PAYMENT_WINDOW_SECONDS = 60

# Substring patterns used by the audit logger (case-insensitive)
AUTH_EVENT_PATTERNS: list[re.Pattern] = [
    re.compile(r"/login", re.IGNORECASE),
    re.compile(r"/register", re.IGNORECASE),
]
PAYMENT_EVENT_PATTERNS: list[re.Pattern] = [
    re.compile(r"/payment", re.IGNORECASE),
    re.compile(r"/order", re.IGNORECASE),
]


def path_matches(path: str, prefixes: Iterable[str]) -> bool:
    """Return True if ``path`` equals a prefix or sits below it."""
    normalized = path.rstrip("/") or "/"
    for prefix in prefixes:
        base = prefix.rstrip("/") or "/"
        if normalized == base or normalized.startswith(base + "/"):
            return True
    return False


def is_auth_endpoint(path: str) -> bool:
    """Return True if the path looks like a login or registration attempt."""
    return any(pattern.search(path) for pattern in AUTH_EVENT_PATTERNS)


def is_payment_endpoint(path: str) -> bool:
    """Return True if the path touches payments or orders."""
    return any(pattern.search(path) for pattern in PAYMENT_EVENT_PATTERNS)
