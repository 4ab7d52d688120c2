#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
query synchronization engine. Every service receives the Settings instance
owned by its SyncEngine; nothing reads configuration behind the engine's back.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Section views (settings.cache, settings.sync, ...) for focused access
- Easy testing: Settings(CACHE_MAX_ENTRIES=5) overrides a single value

All durations are milliseconds unless the field name says otherwise.

Author: System Architect
Date: 2026-03-02
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """
    Query cache configuration.

    STAGE-0.1: Cache sizing and TTL defaults

    The stale-data horizon is the long sweep bound used by
    InvalidationManager.cleanup_stale_data(); it is independent from the
    per-entry TTL.
    """

    CACHE_DEFAULT_TTL_MS: int = Field(default=300_000, ge=0, description="Default entry TTL")
    CACHE_MAX_ENTRIES: int = Field(default=100, ge=1, description="Entries kept before an eviction sweep")
    CACHE_STALE_DATA_MAX_AGE_MS: int = Field(
        default=3_600_000, ge=0, description="Age after which unobserved entries are swept"
    )
    ERROR_CLUSTER_WINDOW_MS: int = Field(
        default=300_000, ge=0, description="Window in which repeated query failures are clustered"
    )
    ERROR_CLUSTER_THRESHOLD: int = Field(
        default=3, ge=1, description="Failures within the window that purge the cache region"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RetrySettings(BaseSettings):
    """
    Retry configuration for transient data service failures.

    Delay for attempt n is min(RETRY_BASE_DELAY_MS * 2^n, RETRY_MAX_DELAY_MS).
    """

    QUERY_MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts per network call")
    RETRY_BASE_DELAY_MS: int = Field(default=1_000, ge=0, description="First retry delay")
    RETRY_MAX_DELAY_MS: int = Field(default=30_000, ge=0, description="Retry delay ceiling")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class SyncSettings(BaseSettings):
    """Background sync scheduler configuration."""

    SYNC_DEFAULT_INTERVAL_MS: int = Field(default=300_000, ge=1, description="Base sync interval")
    SYNC_MAX_RETRIES: int = Field(default=3, ge=0, description="Retries after a failed run")
    SYNC_HIGH_PRIORITY_MIN_INTERVAL_MS: int = Field(
        default=60_000, ge=0, description="Floor for the halved high-priority interval"
    )
    SYNC_RUN_TIMEOUT_SECONDS: float = Field(
        default=30.0, gt=0, description="Deadline for a single sync run"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class SWRSettings(BaseSettings):
    """Stale-while-revalidate configuration."""

    SWR_DEFAULT_STALE_TIME_MS: int = Field(default=300_000, ge=0, description="Default staleness bound")
    SWR_DEBOUNCE_MS: int = Field(default=1_000, ge=0, description="Revalidation debounce delay")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class OptimisticSettings(BaseSettings):
    """Optimistic update configuration."""

    OPTIMISTIC_TRANSACTION_TIMEOUT_MS: int = Field(
        default=30_000, ge=0, description="Unsettled transactions are rolled back after this (0 disables)"
    )

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DataServiceSettings(BaseSettings):
    """
    Remote data service (PostgREST-compatible) configuration.

    STAGE-0.2: Data service connection configuration
    """

    DATA_SERVICE_URL: str = Field(default="http://localhost:54321", description="Data service base URL")
    DATA_SERVICE_API_KEY: str | None = Field(default=None, description="API key sent as apikey/bearer")
    DATA_SERVICE_SCHEMA: str = Field(default="public", description="Schema profile header")
    DATA_SERVICE_TIMEOUT: float = Field(default=10.0, gt=0, description="Request timeout in seconds")
    DATA_SERVICE_MAX_CONNECTIONS: int = Field(default=20, ge=1, description="HTTP connection pool size")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RealtimeSettings(BaseSettings):
    """Push invalidation channel configuration (redis pub/sub)."""

    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis URL for push events")
    REALTIME_CHANNEL_PREFIX: str = Field(default="realtime", description="Pub/sub channel prefix")
    REALTIME_POLL_TIMEOUT: float = Field(default=1.0, gt=0, description="Listener poll timeout in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class CircuitBreakerSettings(BaseSettings):
    """
    Frequency circuit breaker configuration.

    STAGE-CB: Render and fetch guard thresholds

    Two guards share one design: the render guard watches component render
    frequency, the fetch guard watches query frequency per resource.
    """

    RENDER_GUARD_WINDOW_MS: int = Field(default=5_000, ge=1, description="Render observation window")
    RENDER_GUARD_WARNING: int = Field(default=5, ge=1, description="Renders per window before a warning")
    RENDER_GUARD_CRITICAL: int = Field(default=10, ge=1, description="Renders per window before halting")
    FETCH_GUARD_WINDOW_MS: int = Field(default=10_000, ge=1, description="Fetch observation window")
    FETCH_GUARD_WARNING: int = Field(default=10, ge=1, description="Fetches per window before a warning")
    FETCH_GUARD_CRITICAL: int = Field(default=20, ge=1, description="Fetches per window before halting")
    GUARD_GLOBAL_CAP: int = Field(default=200, ge=1, description="Aggregate events per window before halting")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class MonitorSettings(BaseSettings):
    """Performance monitor configuration."""

    PERF_SLOW_THRESHOLD_MS: float = Field(default=1_000.0, ge=0, description="Slow operation threshold")
    PERF_SLOW_RENDER_THRESHOLD_MS: float = Field(default=16.0, ge=0, description="Slow render threshold")
    PERF_MAX_SLOW_OPERATIONS: int = Field(default=50, ge=1, description="Slow operations kept")
    PERF_MAX_SAMPLES: int = Field(default=1_000, ge=1, description="Samples kept per operation")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LocalStoreSettings(BaseSettings):
    """Bounded local key-value store configuration."""

    LOCAL_STORE_PATH: str | None = Field(default=None, description="JSON file path (None keeps it in memory)")
    LOCAL_STORE_MAX_ENTRIES: int = Field(default=500, ge=1, description="Keys kept before evicting the oldest")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration.

    STAGE-0.3: Structured logging setup
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """Observability app configuration."""

    APP_NAME: str = Field(default="querysync", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(
    CacheSettings,
    RetrySettings,
    SyncSettings,
    SWRSettings,
    OptimisticSettings,
    DataServiceSettings,
    RealtimeSettings,
    CircuitBreakerSettings,
    MonitorSettings,
    LocalStoreSettings,
    LoggingSettings,
    ApplicationSettings,
):
    """
    Root settings object combining every section.

    Fields are flat (one environment variable each); the section properties
    return a focused view built from the same values.

    Usage:
        settings = Settings()
        settings.cache.CACHE_MAX_ENTRIES
        settings.CACHE_MAX_ENTRIES  # same value
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    def _section(self, section_cls):
        return section_cls(**{name: getattr(self, name) for name in section_cls.model_fields})

    @property
    def cache(self) -> CacheSettings:
        return self._section(CacheSettings)

    @property
    def retry(self) -> RetrySettings:
        return self._section(RetrySettings)

    @property
    def sync(self) -> SyncSettings:
        return self._section(SyncSettings)

    @property
    def swr(self) -> SWRSettings:
        return self._section(SWRSettings)

    @property
    def optimistic(self) -> OptimisticSettings:
        return self._section(OptimisticSettings)

    @property
    def data_service(self) -> DataServiceSettings:
        return self._section(DataServiceSettings)

    @property
    def realtime(self) -> RealtimeSettings:
        return self._section(RealtimeSettings)

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        return self._section(CircuitBreakerSettings)

    @property
    def monitor(self) -> MonitorSettings:
        return self._section(MonitorSettings)

    @property
    def local_store(self) -> LocalStoreSettings:
        return self._section(LocalStoreSettings)

    @property
    def logging(self) -> LoggingSettings:
        return self._section(LoggingSettings)

    @property
    def app(self) -> ApplicationSettings:
        return self._section(ApplicationSettings)


_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the default settings instance (loaded once from the environment).

    Services only fall back to this when they are built without an explicit
    Settings; the SyncEngine always passes its own.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload the default settings from the environment."""
    global _settings
    _settings = Settings()
    return _settings
