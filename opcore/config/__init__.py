"""
opcore Configuration Package - settings for the orchestration services.
"""

from .. import metadata
from .settings import (
    CancellationSettings,
    DispatcherSettings,
    ExecutorSettings,
    LoggingSettings,
    StreamingSettings,
    clear_settings_cache,
    get_cancellation_settings,
    get_dispatcher_settings,
    get_executor_settings,
    get_logging_settings,
    get_streaming_settings,
)

__all__ = [
    "metadata",
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
