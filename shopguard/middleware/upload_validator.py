"""File upload validation middleware."""

from __future__ import annotations

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import UploadPolicy
from shopguard.errors import FILE_TOO_LARGE, INVALID_FILE_NAME, INVALID_FILE_TYPE, security_error
from shopguard.middleware.pipeline import Middleware, RequestContext, UploadedFile

logger = structlog.get_logger()


def check_file(file: UploadedFile, policy: UploadPolicy) -> tuple[str, str] | None:
    """Return (error_code, message) for the first failed check, or None.

    Checks run in order: MIME type, size, path traversal in the name.
    """
    if file.mimetype.lower() not in {t.lower() for t in policy.allowed_types}:
        return INVALID_FILE_TYPE, "Invalid file type. Only images are allowed."
    if file.size > policy.max_size:
        limit_mb = policy.max_size // (1024 * 1024)
        return FILE_TOO_LARGE, f"File too large. Maximum size is {limit_mb}MB."
    if ".." in file.filename or "/" in file.filename or "\\" in file.filename:
        return INVALID_FILE_NAME, "Invalid file name."
    return None


class FileUploadValidator(Middleware):
    """Reject the whole request if any attached file fails validation."""

    def __init__(self, policy: UploadPolicy) -> None:
        self._policy = policy

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        for file in context.files:
            failure = check_file(file, self._policy)
            if failure is None:
                continue
            code, message = failure
            logger.warning(
                "upload_rejected",
                error=code,
                field=file.field,
                mimetype=file.mimetype[:128],
                size=file.size,
                client_ip=context.client_ip,
                request_id=context.request_id,
            )
            return security_error(400, message, code)
        return None
