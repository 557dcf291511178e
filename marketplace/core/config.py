"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    version: str = Field(
        "1.0.0",
        description="Version reported by the health endpoint",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-endpoint rate limiting",
    )
    rate_limit_default_requests: int = Field(
        10,
        description="Requests allowed per window for scopes without a policy",
        ge=1,
    )
    rate_limit_default_window_seconds: int = Field(
        10,
        description="Window size in seconds for scopes without a policy",
        ge=1,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    rate_limit_sweep_interval_seconds: float = Field(
        60.0,
        description="How often expired in-memory windows are removed",
        gt=0,
    )
    rate_limit_message: str = Field(
        "Too many requests. Please try again later.",
        description="User-facing message returned with HTTP 429",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Remote counter service configuration.

    Leaving url or token unset is a valid configuration: rate limiting then
    runs on the in-process store only.
    """

    url: str | None = Field(
        None,
        description=(
            "Redis-protocol endpoint URL (redis:// or rediss://). HTTP REST "
            "URLs (https://) are not accepted; use the rediss:// endpoint"
        ),
    )
    token: str | None = Field(
        None,
        description="Access token used as the AUTH password",
    )
    retry_cooldown_seconds: float = Field(
        60.0,
        description="Delay before retrying the remote backend after a failure",
        ge=0,
    )
    timeout_seconds: float = Field(
        2.0,
        description="Socket connect/read timeout for remote calls",
        gt=0,
    )
    key_prefix: str = Field(
        "ratelimit",
        description="Namespace prepended to every counter key",
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        0,
        description="Rotate the log file at this size (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
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
    app: AppSettings = Field(default_factory=AppSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
