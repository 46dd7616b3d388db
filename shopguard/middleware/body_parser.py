"""Body parser middleware: reads the body once the size gate has passed."""

from __future__ import annotations

import dataclasses
import json

import structlog
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import Response

from shopguard.config.loader import RequestPolicy
from shopguard.errors import INVALID_FORM_DATA, INVALID_JSON, PAYLOAD_TOO_LARGE, security_error
from shopguard.middleware.pipeline import Middleware, RequestContext, UploadedFile
from shopguard.middleware.request_validator import media_type

logger = structlog.get_logger()


class BodyParser(Middleware):
    """Decode the request body into the context.

    - Enforces the size ceiling on the actual body (Content-Length may be absent or wrong)
    - JSON bodies are decoded into ``context.body``
    - Multipart bodies put text fields into ``context.body`` and files into
      ``context.files``; upstream gets the form re-encoded from those
    - Anything else is kept as raw bytes only
    """

    def __init__(self, policy: RequestPolicy) -> None:
        self._max_size = policy.max_size

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        raw = await request.body()
        if len(raw) > self._max_size:
            logger.info("payload_too_large", actual_size=len(raw), max=self._max_size)
            return security_error(413, "Request entity too large", PAYLOAD_TOO_LARGE)

        extra = {**context.extra, "raw_body": raw}
        if not raw:
            extra["body_kind"] = "empty"
            return dataclasses.replace(context, extra=extra)

        kind = media_type(context.headers.get("content-type", ""))

        if kind == "application/json":
            try:
                body = json.loads(raw)
            except (ValueError, UnicodeDecodeError):
                logger.info("invalid_json_body", size=len(raw), request_id=context.request_id)
                return security_error(400, "Malformed JSON body", INVALID_JSON)
            extra["body_kind"] = "json"
            return dataclasses.replace(context, body=body, extra=extra)

        if kind == "multipart/form-data":
            try:
                form = await request.form()
            except (MultiPartException, HTTPException) as exc:
                logger.info("invalid_form_data", error=str(exc), request_id=context.request_id)
                return security_error(400, "Malformed form data", INVALID_FORM_DATA)
            fields: dict[str, object] = {}
            files: list[UploadedFile] = []
            try:
                for key, value in form.multi_items():
                    if isinstance(value, str):
                        fields[key] = value
                    else:
                        content = await value.read()
                        files.append(
                            UploadedFile(
                                filename=value.filename or "",
                                mimetype=value.content_type or "",
                                size=value.size if value.size is not None else len(content),
                                field=key,
                                content=content,
                            )
                        )
            finally:
                await form.close()
            extra["body_kind"] = "form"
            return dataclasses.replace(context, body=fields, files=files, extra=extra)

        extra["body_kind"] = "raw"
        return dataclasses.replace(context, extra=extra)
