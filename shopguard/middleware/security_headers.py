"""Security headers injection middleware."""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from starlette.requests import Request
from starlette.responses import Response

from shopguard.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()

_PRESETS_PATH = Path(__file__).parent.parent / "config" / "header_presets.yaml"

# Headers that should be stripped from upstream responses
_STRIP_HEADERS = frozenset({
    "server",
    "x-powered-by",
})

# Cache loaded presets
_presets: dict | None = None


def _load_presets() -> dict:
    """Load header presets from YAML, caching after first load."""
    global _presets
    if _presets is not None:
        return _presets
    if not _PRESETS_PATH.exists():
        logger.error("header_presets_not_found", path=str(_PRESETS_PATH))
        _presets = {}
        return _presets
    with open(_PRESETS_PATH) as f:
        _presets = yaml.safe_load(f) or {}
    return _presets


def reset_presets_cache() -> None:
    """Reset the presets cache (for testing)."""
    global _presets
    _presets = None


def build_csp(directives: dict[str, list[str]]) -> str:
    """Build a CSP string from {directive: [values]} dict.

    Example:
        >>> build_csp({"default-src": ["'self'"], "upgrade-insecure-requests": []})
        "default-src 'self'; upgrade-insecure-requests"
    """
    parts = []
    for directive, values in directives.items():
        if values:
            parts.append(f"{directive} {' '.join(values)}")
        else:
            parts.append(directive)
    return "; ".join(parts)


class SecurityHeaders(Middleware):
    """Inject security headers into every response, rejections included.

    - Preset profiles (strict/balanced/permissive) from header_presets.yaml
    - Strips Server and X-Powered-By headers from upstream responses
    """

    def __init__(self, preset: str = "strict") -> None:
        self._preset = preset

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        try:
            return self._apply_headers(response)
        except Exception as exc:
            logger.error("security_headers_error", error=str(exc))
            return response

    def _apply_headers(self, response: Response) -> Response:
        presets = _load_presets()
        preset = presets.get(self._preset)
        if preset is None:
            logger.warning("unknown_header_preset", preset=self._preset, using="strict")
            preset = presets.get("strict", {})

        for header in _STRIP_HEADERS:
            if header in response.headers:
                del response.headers[header]

        for header_name, header_value in preset.items():
            if isinstance(header_value, dict):
                header_value = build_csp(header_value)
            response.headers[header_name] = str(header_value)

        return response
