"""
opcore Settings Manager - Runtime configuration management.

Defaults come from the packaged metadata file; every field can be
overridden with an environment variable (or a .env entry) using the
section prefix, e.g. OPCORE_DISPATCHER_BATCH_SIZE=20.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .. import metadata


class DispatcherSettings(BaseSettings):
    """Batch dispatcher settings.

    Environment variables:
        OPCORE_DISPATCHER_BATCH_SIZE: Operations per executor call. Default: 10
        OPCORE_DISPATCHER_MAX_CONCURRENT_BATCHES: In-flight batch limit. Default: 3
        OPCORE_DISPATCHER_PROCESSING_DELAY_SECONDS: Pause between dispatch
            cycles. Default: 0.1
    """

    batch_size: int = Field(default=metadata.get("dispatcher.batch_size", 10), gt=0)
    max_concurrent_batches: int = Field(
        default=metadata.get("dispatcher.max_concurrent_batches", 3), gt=0
    )
    processing_delay_seconds: float = Field(
        default=metadata.get("dispatcher.processing_delay_seconds", 0.1), ge=0
    )
    completion_grace_seconds: float = Field(
        default=metadata.get("dispatcher.completion_grace_seconds", 2.0),
        ge=0,
        description="Delay before completed entries leave the progress tracker",
    )
    default_max_retries: int = Field(
        default=metadata.get("dispatcher.default_max_retries", 3), ge=0
    )
    backoff_base_seconds: float = Field(
        default=metadata.get("dispatcher.backoff_base_seconds", 1.0), ge=0
    )
    backoff_factor: float = Field(
        default=metadata.get("dispatcher.backoff_factor", 2.0), ge=1.0
    )
    max_backoff_seconds: float = Field(
        default=metadata.get("dispatcher.max_backoff_seconds", 60.0), gt=0
    )
    streaming_kinds: list[str] = Field(
        default=metadata.get("dispatcher.streaming_kinds", ["terminal", "ai_request"]),
        description="Operation kinds routed through the stream coordinator",
    )

    model_config = SettingsConfigDict(
        env_prefix="OPCORE_DISPATCHER_", env_file=".env", extra="ignore"
    )


class CancellationSettings(BaseSettings):
    """Cancellation registry settings."""

    termination_grace_seconds: float = Field(
        default=metadata.get("cancellation.termination_grace_seconds", 5.0),
        ge=0,
        description="Time a process gets after SIGTERM before SIGKILL",
    )

    model_config = SettingsConfigDict(
        env_prefix="OPCORE_CANCELLATION_", env_file=".env", extra="ignore"
    )


class StreamingSettings(BaseSettings):
    """Stream coordinator settings."""

    cleanup_delay_seconds: float = Field(
        default=metadata.get("streaming.cleanup_delay_seconds", 5.0),
        ge=0,
        description="How long finished streams stay observable",
    )

    model_config = SettingsConfigDict(
        env_prefix="OPCORE_STREAMING_", env_file=".env", extra="ignore"
    )


class ExecutorSettings(BaseSettings):
    """HTTP executor settings."""

    base_url: str = Field(
        default=metadata.get("executor.base_url", "http://127.0.0.1:3000")
    )
    batch_endpoint: str = Field(
        default=metadata.get("executor.batch_endpoint", "/api/filesystem/batch")
    )
    terminal_stream_endpoint: str = Field(
        default=metadata.get("executor.terminal_stream_endpoint", "/api/terminal")
    )
    ai_stream_endpoint: str = Field(
        default=metadata.get("executor.ai_stream_endpoint", "/api/ai/stream")
    )
    timeout_seconds: float = Field(
        default=metadata.get("executor.timeout_seconds", 30.0), gt=0
    )

    model_config = SettingsConfigDict(
        env_prefix="OPCORE_EXECUTOR_", env_file=".env", extra="ignore"
    )


class LoggingSettings(BaseSettings):
    """Logging settings."""

    level: str = Field(default=metadata.get("logging.level", "INFO"))
    log_dir: Optional[str] = Field(default=metadata.get("logging.log_dir", None))
    component_levels: dict[str, str] = Field(
        default_factory=lambda: dict(metadata.get("logging.component_levels", {}) or {}),
        description='Logger name fragment to level, e.g. {"executors.http": "DEBUG"}',
    )

    model_config = SettingsConfigDict(
        env_prefix="OPCORE_LOGGING_", env_file=".env", extra="ignore"
    )


# Cache settings to avoid repeated env access
@lru_cache
def get_dispatcher_settings() -> DispatcherSettings:
    """Get dispatcher settings with caching."""
    return DispatcherSettings()


@lru_cache
def get_cancellation_settings() -> CancellationSettings:
    """Get cancellation settings with caching."""
    return CancellationSettings()


@lru_cache
def get_streaming_settings() -> StreamingSettings:
    """Get streaming settings with caching."""
    return StreamingSettings()


@lru_cache
def get_executor_settings() -> ExecutorSettings:
    """Get executor settings with caching."""
    return ExecutorSettings()


@lru_cache
def get_logging_settings() -> LoggingSettings:
    """Get logging settings with caching."""
    return LoggingSettings()


def clear_settings_cache() -> None:
    """Clear settings cache (for testing)."""
    get_dispatcher_settings.cache_clear()
    get_cancellation_settings.cache_clear()
    get_streaming_settings.cache_clear()
    get_executor_settings.cache_clear()
    get_logging_settings.cache_clear()


__all__ = [
    "DispatcherSettings",
    "CancellationSettings",
    "StreamingSettings",
    "ExecutorSettings",
    "LoggingSettings",
    "get_dispatcher_settings",
    "get_cancellation_settings",
    "get_streaming_settings",
    "get_executor_settings",
    "get_logging_settings",
    "clear_settings_cache",
]
