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

DEFAULT_STORE_URL = "redis://localhost:6379"

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


class StoreSettings(BaseSettings):
    """Shared counter store connection and reconnect policy."""

    url: str = Field(
        DEFAULT_STORE_URL,
        description="Counter store URL (redis://, rediss://, unix:// or memory://)",
    )
    max_retries: int = Field(
        5,
        description="Reconnect attempts before the store is marked as failed",
        ge=0,
    )
    retry_delay_ms: int = Field(
        1000,
        description="Fixed delay between reconnect attempts in milliseconds",
        ge=0,
    )
    socket_timeout_seconds: float = Field(
        2.0,
        description="Timeout for a single store command",
        gt=0,
    )
    socket_connect_timeout_seconds: float = Field(
        2.0,
        description="Timeout for establishing a store connection",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LimiterSettings(BaseSettings):
    """Default admission policy for rate-limited handlers.

    window_seconds is deliberately not range-checked here: a window below one
    second is reported per request as a BadRequest instead of at startup.
    """

    enabled: bool = Field(
        True,
        description="Enable rate limiting on HTTP routes",
    )
    limit: int = Field(
        50,
        description="Maximum number of requests per source IP and scope per minute",
        ge=1,
    )
    window_seconds: int = Field(
        59,
        description="Expiry applied to a window counter on every increment",
    )
    key_prefix: str = Field(
        "ratelimit",
        description="Namespace prepended to every window key",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Take the source IP from X-Forwarded-For (behind a trusted proxy)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LIMITER_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(
        None,
        description="Log file path when output=file",
    )
    max_bytes: int = Field(
        0,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    store: StoreSettings = Field(default_factory=StoreSettings)
    limiter: LimiterSettings = Field(default_factory=LimiterSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
