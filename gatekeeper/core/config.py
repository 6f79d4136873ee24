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


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10 * 1024 * 1024, description="Rotate log file after this size (0 disables)")
    backup_count: int = Field(5, description="Rotated log files to keep")
    request_id_header: str = Field("X-Request-ID", description="Header carrying the correlation id")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Key-value backend configuration.

    Each analytics domain uses its own logical database so counters, Web3
    outcome history and analytics points can be flushed independently.
    """

    enabled: bool = Field(
        True,
        description="Use Redis; when false an in-process store is used (single worker only)",
    )
    url: str = Field("redis://localhost:6379", description="Redis connection URL")
    rate_limit_db: int = Field(1, description="Logical database for rate-limit counters")
    web3_db: int = Field(2, description="Logical database for Web3 outcome history")
    analytics_db: int = Field(3, description="Logical database for analytics points")
    connect_timeout_seconds: float = Field(5.0, gt=0, description="Connect deadline")
    operation_timeout_seconds: float = Field(0.5, gt=0, description="Per-command deadline")
    reconnect_backoff_seconds: float = Field(
        5.0,
        ge=0,
        description="How long a store stays not-ready after a connection failure",
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class AnalyticsSettings(BaseSettings):
    """Analytics retention, alert thresholds and collection cadence."""

    key_prefix: str = Field("mlg_analytics:", description="Prefix for every analytics key")

    retention_realtime_seconds: int = Field(300, ge=1)
    retention_hourly_seconds: int = Field(86_400, ge=1)
    retention_daily_seconds: int = Field(2_592_000, ge=1)
    retention_weekly_seconds: int = Field(7_776_000, ge=1)

    alert_rate_limit_percentage: float = Field(
        20.0,
        description="Alert when the share of rate-limited requests in an interval exceeds this",
    )
    alert_failure_rate: float = Field(
        20.0,
        description="Alert when the share of 4xx/5xx responses in an interval exceeds this",
    )
    alert_response_time_ms: int = Field(1000, description="Alert on slower responses")
    alert_concurrent_violations: int = Field(
        10,
        description="Alert when this many rate-limit hits land in one interval",
    )
    alert_gaming_abuse_score: int = Field(
        50,
        ge=0,
        le=100,
        description="Abuse score above which an abuse alert is raised",
    )

    realtime_interval_seconds: float = Field(10.0, gt=0)
    aggregation_interval_seconds: float = Field(60.0, gt=0)
    cleanup_interval_seconds: float = Field(3600.0, gt=0)

    batch_size: int = Field(100, ge=1, description="Flush when this many events are queued")
    flush_interval_seconds: float = Field(1.0, gt=0, description="Flush at least this often")
    queue_max: int = Field(10_000, ge=1, description="Events beyond this bound are dropped")

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_",
        case_sensitive=False,
    )


class GovernorSettings(BaseSettings):
    """Request governance behaviour."""

    enabled: bool = Field(True, description="Run the governance pipeline on every request")
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/api/health", "/api/status"],
        description="Paths that bypass governance entirely",
    )
    extended_failure_threshold: int = Field(
        10,
        description="Failures in the last hour above which retry hints are doubled",
    )
    fail_closed_operations: list[str] = Field(
        default_factory=list,
        description="Operation classes rejected while the counter backend is unavailable",
    )
    abuse_trail_capacity: int = Field(10_000, ge=1, description="Tracked principal+operation trails")
    abuse_trail_max_length: int = Field(5_000, ge=2, description="Timestamps kept per trail")
    session_idle_ttl_seconds: int = Field(300, ge=1, description="Gaming session idle timeout")
    session_capacity: int = Field(10_000, ge=1, description="Gaming sessions tracked in-process")
    body_preview_max_bytes: int = Field(16 * 1024, ge=0, description="Largest JSON body inspected")
    trust_identity_headers: bool = Field(
        False,
        description="Read the user id from a header set by a trusted upstream auth proxy; roles never come from headers",
    )
    user_id_header: str = Field("X-User-Id")

    model_config = SettingsConfigDict(
        env_prefix="GOVERNOR_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether the analytics dashboard requires an API key",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for the dashboard",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


def _build_log_settings() -> LogSettings:
    return LogSettings()


def _build_redis_settings() -> RedisSettings:
    return RedisSettings()


def _build_analytics_settings() -> AnalyticsSettings:
    return AnalyticsSettings()


def _build_governor_settings() -> GovernorSettings:
    return GovernorSettings()


def _build_app_settings() -> AppSettings:
    return AppSettings()


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.

    Environments:
    - development: Local development (admin skip allowed)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    log: LogSettings = Field(default_factory=_build_log_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    analytics: AnalyticsSettings = Field(default_factory=_build_analytics_settings)
    governor: GovernorSettings = Field(default_factory=_build_governor_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
