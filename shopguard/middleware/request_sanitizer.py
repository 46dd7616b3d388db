"""Request sanitizer middleware: NoSQL key replacement, parameter pollution, XSS stripping."""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterable
from typing import Any

import structlog
from starlette.requests import Request
from starlette.responses import Response

from shopguard.middleware.pipeline import Middleware, RequestContext
from shopguard.utils.sanitize import MAX_SANITIZE_DEPTH, sanitize_value, truncate

logger = structlog.get_logger()

# A leading $ starts a query operator; a dot reaches into nested fields.
_PROHIBITED_KEY_RE = re.compile(r"^\$|\.")

_SANITIZED_SECTIONS = ("body", "query", "params")


def replace_operator_keys(
    value: Any, replace_with: str = "_", _depth: int = 0
) -> tuple[Any, list[str]]:
    """Rewrite mapping keys that could inject query operators.

    Returns the rewritten value and the original names of the keys that
    were changed. When a rewritten key collides with an existing one the
    later key in iteration order wins.
    """
    if _depth >= MAX_SANITIZE_DEPTH:
        return value, []
    if isinstance(value, dict):
        cleaned: dict[Any, Any] = {}
        replaced: list[str] = []
        for key, item in value.items():
            new_key = key
            if isinstance(key, str) and _PROHIBITED_KEY_RE.search(key):
                new_key = _PROHIBITED_KEY_RE.sub(replace_with, key)
                replaced.append(key)
            cleaned[new_key], nested = replace_operator_keys(item, replace_with, _depth + 1)
            replaced.extend(nested)
        return cleaned, replaced
    if isinstance(value, (list, tuple)):
        items = []
        replaced = []
        for item in value:
            cleaned_item, nested = replace_operator_keys(item, replace_with, _depth + 1)
            items.append(cleaned_item)
            replaced.extend(nested)
        return type(value)(items), replaced
    return value, []


class NoSQLSanitizer(Middleware):
    """Replace ``$``-prefixed and dotted keys in body, query and params.

    Never rejects; each rewritten key is logged with the client IP.
    """

    def __init__(self, replace_with: str = "_") -> None:
        self._replace_with = replace_with

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        changes: dict[str, Any] = {}
        for section in _SANITIZED_SECTIONS:
            cleaned, replaced = replace_operator_keys(getattr(context, section), self._replace_with)
            if not replaced:
                continue
            changes[section] = cleaned
            for key in replaced:
                logger.warning(
                    "nosql_injection_sanitized",
                    key=truncate(str(key), 256),
                    section=section,
                    client_ip=context.client_ip,
                    request_id=context.request_id,
                )
        if not changes:
            return None
        return dataclasses.replace(context, **changes)


class ParameterPollutionGuard(Middleware):
    """Collapse repeated query parameters to their last value.

    Whitelisted fields (multi-select filters) keep every value as a list.
    """

    def __init__(self, whitelist: Iterable[str] = ()) -> None:
        self._whitelist = frozenset(whitelist)

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        polluted = [
            key
            for key, value in context.query.items()
            if isinstance(value, list) and key not in self._whitelist
        ]
        if not polluted:
            return None

        query = dict(context.query)
        for key in polluted:
            values = query[key]
            query[key] = values[-1] if values else ""

        logger.info(
            "parameter_pollution_resolved",
            params=polluted,
            client_ip=context.client_ip,
            request_id=context.request_id,
        )
        extra = {**context.extra, "polluted_params": {k: context.query[k] for k in polluted}}
        return dataclasses.replace(context, query=query, extra=extra)


class XSSSanitizer(Middleware):
    """Strip markup from every string in body, query and params."""

    async def process_request(
        self, request: Request, context: RequestContext
    ) -> RequestContext | Response | None:
        changes = {}
        for section in _SANITIZED_SECTIONS:
            original = getattr(context, section)
            cleaned = sanitize_value(original)
            if cleaned != original:
                changes[section] = cleaned
        if not changes:
            return None
        logger.info(
            "xss_markup_stripped",
            sections=sorted(changes),
            client_ip=context.client_ip,
            request_id=context.request_id,
        )
        return dataclasses.replace(context, **changes)
