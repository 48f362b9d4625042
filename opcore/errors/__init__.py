"""
Error handling framework for opcore.

This module provides the exception hierarchy, the error code registry,
error classification with recoverability, and the retry backoff policy.
"""

from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import (
    CancellationError,
    ConfigurationError,
    DuplicateOperationError,
    ExecutorConnectionError,
    ExecutorError,
    ExecutorTimeoutError,
    OpcoreError,
    OrchestrationError,
    ValidationError,
)
from opcore.errors.handler import ErrorDetails, ErrorHandler, RecoveryOption
from opcore.errors.retry import RetryConfig, calculate_delay, should_retry

__all__ = [
    "OpcoreError",
    "ConfigurationError",
    "ValidationError",
    "DuplicateOperationError",
    "ExecutorError",
    "ExecutorConnectionError",
    "ExecutorTimeoutError",
    "CancellationError",
    "OrchestrationError",
    "ErrorCodes",
    "ErrorHandler",
    "ErrorDetails",
    "RecoveryOption",
    "RetryConfig",
    "calculate_delay",
    "should_retry",
]
