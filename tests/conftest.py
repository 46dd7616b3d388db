"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch):
    """Provide default settings for all tests."""
    monkeypatch.setenv("SHOPGUARD_UPSTREAM_URL", "http://mock-upstream:4000")
    monkeypatch.setenv("SHOPGUARD_REDIS_URL", "redis://localhost:6379")
    monkeypatch.setenv("SHOPGUARD_REDIS_CONNECT_RETRIES", "1")
    monkeypatch.setenv("SHOPGUARD_API_KEY", "test-api-key")
    monkeypatch.setenv("SHOPGUARD_LOG_JSON", "false")
    monkeypatch.setenv("SHOPGUARD_LOG_LEVEL", "debug")

    # Reset cached singletons
    import shopguard.config.loader as loader
    import shopguard.monitor as monitor

    loader._settings = None
    monitor._monitor = None
    yield
    loader._settings = None
    monitor._monitor = None


@pytest.fixture
def proxy_client():
    """Test client with a mocked upstream and a fresh pipeline."""
    import shopguard.main as main_module

    mock_response = httpx.Response(
        status_code=200,
        headers={"content-type": "application/json", "x-powered-by": "Express"},
        content=b'{"success": true}',
    )
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(return_value=mock_response)

    with TestClient(main_module.app, raise_server_exceptions=False) as c:
        # Set mocks AFTER lifespan runs so they don't get overwritten
        main_module._http_client = mock_http
        main_module._pipeline = main_module._build_pipeline()
        yield c, mock_http

    main_module._http_client = None
    main_module._pipeline = None
