"""Tests for security headers middleware."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from starlette.responses import Response

from shopguard.middleware.security_headers import SecurityHeaders, _load_presets, build_csp, reset_presets_cache
from shopguard.errors import security_error
from tests.helpers.requests import make_context


@pytest.fixture(autouse=True)
def _reset_cache():
    reset_presets_cache()
    yield
    reset_presets_cache()


# ── Preset application ──────────────────────────────────────────────────


class TestSecurityHeadersPresets:
    @pytest.mark.asyncio
    async def test_strict_preset_applied(self):
        """Default strict preset injects the full header set."""
        mw = SecurityHeaders()
        result = await mw.process_response(Response(content="ok"), make_context())

        assert result.headers["x-content-type-options"] == "nosniff"
        assert result.headers["x-frame-options"] == "SAMEORIGIN"
        assert result.headers["referrer-policy"] == "no-referrer"
        assert result.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains; preload"
        assert result.headers["cross-origin-opener-policy"] == "same-origin"
        assert result.headers["x-dns-prefetch-control"] == "off"

    @pytest.mark.asyncio
    async def test_strict_csp_rendered(self):
        mw = SecurityHeaders("strict")
        result = await mw.process_response(Response(content="ok"), make_context())

        csp = result.headers["content-security-policy"]
        assert csp.startswith("default-src 'self'; ")
        assert "script-src 'self'" in csp
        assert "frame-src 'none'" in csp
        assert "object-src 'none'" in csp
        assert csp.endswith("upgrade-insecure-requests")

    @pytest.mark.asyncio
    async def test_permissive_preset_has_no_csp(self):
        mw = SecurityHeaders("permissive")
        result = await mw.process_response(Response(content="ok"), make_context())

        assert "content-security-policy" not in result.headers
        assert result.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_unknown_preset_falls_back_to_strict(self):
        mw = SecurityHeaders("nonexistent")
        result = await mw.process_response(Response(content="ok"), make_context())
        assert result.headers["referrer-policy"] == "no-referrer"

    @pytest.mark.asyncio
    async def test_rejections_get_headers(self):
        mw = SecurityHeaders()
        result = await mw.process_response(security_error(429, "slow down", "RATE_LIMIT_EXCEEDED"), make_context())
        assert result.headers["x-frame-options"] == "SAMEORIGIN"


class TestStripHeaders:
    @pytest.mark.asyncio
    async def test_fingerprinting_headers_removed(self):
        mw = SecurityHeaders()
        response = Response(content="ok", headers={"Server": "nginx/1.2", "X-Powered-By": "Express"})

        result = await mw.process_response(response, make_context())

        assert "server" not in result.headers
        assert "x-powered-by" not in result.headers


class TestBuildCsp:
    def test_directives_joined(self):
        assert build_csp({"default-src": ["'self'"], "upgrade-insecure-requests": []}) == (
            "default-src 'self'; upgrade-insecure-requests"
        )

    def test_multiple_sources(self):
        assert build_csp({"img-src": ["'self'", "data:"]}) == "img-src 'self' data:"


class TestPresetLoading:
    def test_presets_cached(self):
        assert _load_presets() is _load_presets()

    def test_presets_file_defines_all_profiles(self):
        assert {"strict", "balanced", "permissive"} <= set(_load_presets())

    @pytest.mark.asyncio
    async def test_header_error_returns_response_unchanged(self):
        mw = SecurityHeaders()
        response = Response(content="ok")
        with patch("shopguard.middleware.security_headers._load_presets", side_effect=OSError("gone")):
            result = await mw.process_response(response, make_context())
        assert result is response
