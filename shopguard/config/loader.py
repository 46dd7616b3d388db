"""Env var config loading with pydantic-settings."""

from __future__ import annotations

import signal
from typing import Literal

import structlog
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shopguard.config.rate_limit_defaults import (
    API_PREFIX,
    AUTH_PATHS,
    AUTH_RATE_LIMIT,
    AUTH_WINDOW_SECONDS,
    API_RATE_LIMIT,
    API_WINDOW_SECONDS,
    CSRF_EXEMPT_PATHS,
    PAYMENT_PATHS,
    PAYMENT_RATE_LIMIT,
    PAYMENT_WINDOW_SECONDS,
    SKIP_PATHS,
)

logger = structlog.get_logger()

_MB = 1024 * 1024


class RateLimitProfile(BaseModel):
    """Fixed-window limit: at most ``max`` requests per ``window_seconds``."""

    window_seconds: int = Field(gt=0)
    max: int = Field(ge=0)
    message: str = "Too many requests"
    key_by: Literal["ip", "identity"] = "ip"


class RateLimitSettings(BaseModel):
    auth: RateLimitProfile = RateLimitProfile(
        window_seconds=AUTH_WINDOW_SECONDS,
        max=AUTH_RATE_LIMIT,
        message="Too many authentication attempts. Please try again later.",
    )
    api: RateLimitProfile = RateLimitProfile(
        window_seconds=API_WINDOW_SECONDS,
        max=API_RATE_LIMIT,
        message="Too many API requests. Please try again later.",
    )
    payment: RateLimitProfile = RateLimitProfile(
        window_seconds=PAYMENT_WINDOW_SECONDS,
        max=PAYMENT_RATE_LIMIT,
        message="Too many payment attempts. Please wait before trying again.",
    )


class SlowDownSettings(BaseModel):
    window_seconds: int = 15 * 60
    delay_after: int = 50
    delay_ms: int = 500
    max_delay_ms: int = 20_000


class UploadPolicy(BaseModel):
    max_size: int = 5 * _MB
    allowed_types: list[str] = [
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
    ]


class RequestPolicy(BaseModel):
    max_size: int = 10 * _MB
    allowed_content_types: list[str] = ["application/json", "multipart/form-data"]


class IPFilterSettings(BaseModel):
    allow: list[str] = []
    deny: list[str] = []


class CSRFSettings(BaseModel):
    header_name: str = "X-CSRF-Token"
    exempt_paths: list[str] = list(CSRF_EXEMPT_PATHS)


class GatewaySettings(BaseSettings):
    """Gateway configuration: model defaults, overridden by env vars."""

    model_config = SettingsConfigDict(
        env_prefix="SHOPGUARD_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    upstream_url: str = "http://localhost:4000"
    listen_port: int = 8080
    redis_url: str = "redis://localhost:6379"
    log_level: str = "info"
    log_json: bool = True
    audit_log_file: str = ""
    api_key: str = ""

    redis_pool_size: int = 10
    redis_connect_retries: int = 5

    # Proxy settings
    proxy_timeout: float = 30.0
    upstream_max_connections: int = 100
    upstream_max_keepalive: int = 20
    upstream_follow_redirects: bool = False
    trusted_proxy_hops: int = 0
    max_response_bytes: int = 50 * _MB

    # Rate limiting
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    rate_limits: RateLimitSettings = RateLimitSettings()
    rate_limit_skip_paths: list[str] = list(SKIP_PATHS)
    auth_paths: list[str] = list(AUTH_PATHS)
    payment_paths: list[str] = list(PAYMENT_PATHS)
    api_prefix: str = API_PREFIX
    slow_down: SlowDownSettings = SlowDownSettings()

    # Content and uploads
    request: RequestPolicy = RequestPolicy()
    upload: UploadPolicy = UploadPolicy()

    # Perimeter
    ip_filter: IPFilterSettings = IPFilterSettings()
    csrf: CSRFSettings = CSRFSettings()

    # Input hardening
    hpp_whitelist: list[str] = ["tags", "categories", "sizes", "colors"]
    nosql_replace_with: str = "_"

    # Identity lookup
    session_cookie_name: str = "session"
    session_header_name: str = "token"

    # Security headers
    header_preset: str = "strict"

    # Security monitor
    alert_window_seconds: int = 60
    alert_failed_logins: int = 10
    alert_rate_limit_hits: int = 50
    alert_blocked_requests: int = 20


_settings: GatewaySettings | None = None


def get_settings() -> GatewaySettings:
    """Get or create the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def load_settings() -> GatewaySettings:
    """Load settings from env vars (env vars override model defaults)."""
    global _settings
    _settings = GatewaySettings()
    logger.info(
        "config_loaded",
        upstream_url=_settings.upstream_url,
        port=_settings.listen_port,
        rate_limit_backend=_settings.rate_limit_backend,
    )
    return _settings


def register_reload_handler() -> None:
    """Register SIGHUP handler for hot-reload of configuration.

    Only values read per request pick up a reload; stages keep the config
    they were constructed with until the pipeline is rebuilt.
    """
    import threading

    if threading.current_thread() is not threading.main_thread():
        logger.debug("skipping_sighup_handler", reason="not main thread")
        return

    def _reload(signum, frame):
        logger.info("config_reload_triggered")
        load_settings()

    try:
        signal.signal(signal.SIGHUP, _reload)
    except (ValueError, AttributeError):
        logger.debug("skipping_sighup_handler", reason="signal not supported")
