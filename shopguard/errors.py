"""Uniform JSON error responses returned by rejecting stages."""

from __future__ import annotations

from starlette.responses import JSONResponse

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
CSRF_TOKEN_INVALID = "CSRF_TOKEN_INVALID"
INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
FILE_TOO_LARGE = "FILE_TOO_LARGE"
INVALID_FILE_NAME = "INVALID_FILE_NAME"
IP_BLACKLISTED = "IP_BLACKLISTED"
IP_NOT_WHITELISTED = "IP_NOT_WHITELISTED"
INVALID_CONTENT_LENGTH = "INVALID_CONTENT_LENGTH"
INVALID_JSON = "INVALID_JSON"
INVALID_FORM_DATA = "INVALID_FORM_DATA"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
PROXY_ERROR = "PROXY_ERROR"


def security_error(
    status_code: int,
    message: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the ``{success, message, error}`` body every rejection uses."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": code},
        headers=headers,
    )
