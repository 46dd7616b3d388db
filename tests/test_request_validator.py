"""Tests for the request-size and content-type gates."""

from __future__ import annotations

import json

import pytest

from shopguard.config.loader import RequestPolicy
from shopguard.middleware.request_validator import ContentTypeValidator, RequestSizeLimit, media_type
from tests.helpers.requests import make_context


def test_media_type_strips_parameters():
    assert media_type("Application/JSON; charset=utf-8") == "application/json"
    assert media_type("multipart/form-data; boundary=----x") == "multipart/form-data"
    assert media_type("") == ""


class TestContentTypeValidator:
    @pytest.mark.asyncio
    async def test_text_plain_rejected(self):
        validator = ContentTypeValidator(RequestPolicy())
        ctx = make_context("/api/cart/add", "POST", headers={"Content-Type": "text/plain"})

        result = await validator.process_request(None, ctx)

        assert result.status_code == 415
        assert json.loads(result.body) == {
            "success": False,
            "message": "Unsupported media type",
            "error": "UNSUPPORTED_MEDIA_TYPE",
        }

    @pytest.mark.asyncio
    async def test_json_with_charset_accepted(self):
        validator = ContentTypeValidator(RequestPolicy())
        ctx = make_context("/api/cart/add", "POST", headers={"Content-Type": "application/json; charset=utf-8"})
        assert await validator.process_request(None, ctx) is None

    @pytest.mark.asyncio
    async def test_multipart_with_boundary_accepted(self):
        validator = ContentTypeValidator(RequestPolicy())
        ctx = make_context(
            "/api/product/add",
            "POST",
            headers={"Content-Type": "multipart/form-data; boundary=abc123"},
        )
        assert await validator.process_request(None, ctx) is None

    @pytest.mark.asyncio
    async def test_get_bypasses_check(self):
        validator = ContentTypeValidator(RequestPolicy())
        ctx = make_context("/api/product/list", "GET", headers={"Content-Type": "text/plain"})
        assert await validator.process_request(None, ctx) is None

    @pytest.mark.asyncio
    async def test_missing_content_type_rejected_for_delete(self):
        validator = ContentTypeValidator(RequestPolicy())
        ctx = make_context("/api/cart/item", "DELETE")

        result = await validator.process_request(None, ctx)

        assert result.status_code == 415

    @pytest.mark.asyncio
    async def test_custom_allow_list(self):
        validator = ContentTypeValidator(RequestPolicy(allowed_content_types=["text/csv"]))
        ctx = make_context("/api/import", "POST", headers={"Content-Type": "text/csv"})
        assert await validator.process_request(None, ctx) is None


class TestRequestSizeLimit:
    @pytest.mark.asyncio
    async def test_oversized_declared_length_rejected(self):
        limiter = RequestSizeLimit(RequestPolicy())
        ctx = make_context("/api/product/add", "POST", headers={"Content-Length": str(11 * 1024 * 1024)})

        result = await limiter.process_request(None, ctx)

        assert result.status_code == 413
        assert json.loads(result.body)["error"] == "PAYLOAD_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_exact_limit_allowed(self):
        limiter = RequestSizeLimit(RequestPolicy())
        ctx = make_context("/api/product/add", "POST", headers={"Content-Length": str(10 * 1024 * 1024)})
        assert await limiter.process_request(None, ctx) is None

    @pytest.mark.asyncio
    async def test_missing_length_passes(self):
        limiter = RequestSizeLimit(RequestPolicy())
        assert await limiter.process_request(None, make_context("/api/cart/add", "POST")) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["abc", "-1", "1e9"])
    async def test_invalid_length_rejected(self, value):
        limiter = RequestSizeLimit(RequestPolicy())
        ctx = make_context("/api/cart/add", "POST", headers={"Content-Length": value})

        result = await limiter.process_request(None, ctx)

        assert result.status_code == 400
        assert json.loads(result.body)["error"] == "INVALID_CONTENT_LENGTH"
