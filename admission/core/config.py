"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) populates values from environment variables, but
    static type checkers treat fields as constructor arguments.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    jwt_secret: str | None = Field(
        None,
        description="Secret used to verify bearer tokens for user-scoped rate limits",
    )
    jwt_algorithms: str = Field(
        "HS256",
        description="Comma-separated list of accepted JWT signing algorithms",
    )
    trust_forwarded_for: bool = Field(
        True,
        description="Use the first X-Forwarded-For address as the client IP",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )

    def jwt_algorithm_list(self) -> list[str]:
        return [alg.strip() for alg in self.jwt_algorithms.split(",") if alg.strip()]


class RateLimitSettings(BaseSettings):
    """Admission control configuration."""

    enabled: bool = Field(
        True,
        description="Enable admission control on decorated routes",
    )
    store_backend: str = Field(
        "memory",
        description="Counter store backend: 'memory' or 'redis'",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL (used when store_backend=redis)",
    )
    key_prefix: str = Field(
        "rate_limit",
        description="Prefix for counter keys in shared stores",
    )
    cleanup_interval_seconds: float = Field(
        300.0,
        description="Interval between background sweeps of expired counters",
        gt=0,
    )
    store_timeout_seconds: float = Field(
        1.0,
        description="Maximum time a single store operation may take before failing open",
        gt=0,
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on admitted responses",
    )
    metrics_backend: str = Field(
        "none",
        description="Metrics sink: 'none' or 'prometheus'",
    )
    policy_overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description=(
            "Per-policy overrides as JSON, e.g. "
            '{"auth": {"max_requests": 10, "window_seconds": 600}, '
            '"email": {"key_strategy": "user"}}'
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @field_validator("store_backend", "metrics_backend")
    @classmethod
    def _normalize_backend(cls, value: str) -> str:
        return value.strip().lower()


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: 'json' or 'plain'")
    output: str = Field("stdout", description="Log output: 'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Number of rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read/propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings.
# Application code receives it through create_app() rather than importing it.
settings = Settings()
