"""
Centralized error handler for opcore.

This module classifies exceptions into error codes with a recoverability
flag, produces user-friendly messages, and keeps a bounded log of recent
errors so a UI layer can explain why something failed.
"""

import asyncio
import errno
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import ExecutorError, OpcoreError
from opcore.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ErrorDetails:
    """Classified view of an exception."""

    code: str
    message: str
    recoverable: bool
    operation: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RecoveryOption:
    """A suggested follow-up action for a classified error."""

    action: str
    description: str


class ErrorHandler:
    """
    Error classification and recent-error log.

    Recoverable errors (network failures, server 5xx, rate limits, timeouts)
    are eligible for retry; everything else is surfaced as a terminal failure.
    """

    # Status codes that indicate a transient server-side condition
    RECOVERABLE_STATUS_CODES = frozenset({408, 429})

    # errno values mapped to (code, message, recoverable)
    OS_ERRORS = {
        errno.ENOENT: (ErrorCodes.FILE_NOT_FOUND, "File or directory not found", True),
        errno.EACCES: (ErrorCodes.PERMISSION_DENIED, "Permission denied", False),
        errno.EPERM: (ErrorCodes.PERMISSION_DENIED, "Permission denied", False),
        errno.ENOSPC: (ErrorCodes.DISK_FULL, "Disk is full", False),
    }

    USER_MESSAGES = {
        ErrorCodes.NETWORK_ERROR: "Connection failed. Please check your connection and try again.",
        ErrorCodes.FILE_NOT_FOUND: "The requested file could not be found.",
        ErrorCodes.PERMISSION_DENIED: "You don't have permission to perform this action.",
        ErrorCodes.DISK_FULL: "Your disk is full. Please free up some space.",
        ErrorCodes.RATE_LIMIT_EXCEEDED: "Too many requests. Please wait a moment before trying again.",
        ErrorCodes.TIMEOUT_ERROR: "The operation timed out. Please try again.",
        ErrorCodes.CANCELLED: "The operation was cancelled.",
    }

    RECOVERY_OPTIONS = {
        ErrorCodes.NETWORK_ERROR: [RecoveryOption("retry", "Retry the operation")],
        ErrorCodes.BATCH_ERROR: [RecoveryOption("retry", "Retry the operation")],
        ErrorCodes.FILE_NOT_FOUND: [
            RecoveryOption("create_file", "Create the missing file")
        ],
        ErrorCodes.RATE_LIMIT_EXCEEDED: [
            RecoveryOption("wait_and_retry", "Wait and retry (recommended)")
        ],
        ErrorCodes.TIMEOUT_ERROR: [
            RecoveryOption("retry", "Retry with longer timeout")
        ],
        ErrorCodes.DISK_FULL: [
            RecoveryOption("free_space", "Free disk space and retry")
        ],
    }

    def __init__(self, max_log_size: int = 100):
        self._log: deque[ErrorDetails] = deque(maxlen=max_log_size)
        self._lock = threading.Lock()

    @classmethod
    def classify(
        cls, error: BaseException, operation: Optional[str] = None
    ) -> ErrorDetails:
        """
        Classify an exception without recording it.

        Args:
            error: The exception to classify
            operation: Optional label of the operation that raised it

        Returns:
            ErrorDetails with code, message and recoverability
        """
        message = str(error) or type(error).__name__
        code = ErrorCodes.UNKNOWN_ERROR
        recoverable = False
        details: dict[str, Any] = {"type": type(error).__name__}

        if isinstance(error, ExecutorError):
            code = error.error_code or ErrorCodes.UNKNOWN_ERROR
            recoverable = error.recoverable
            if error.status_code is not None:
                code = ErrorCodes.http(error.status_code)
                recoverable = (
                    error.status_code >= 500
                    or error.status_code in cls.RECOVERABLE_STATUS_CODES
                )
            details.update(error.details)
        elif isinstance(error, OpcoreError):
            code = error.error_code or ErrorCodes.UNKNOWN_ERROR
            details.update(error.details)
        elif isinstance(error, ConnectionError):
            code = ErrorCodes.NETWORK_ERROR
            recoverable = True
        elif isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            code = ErrorCodes.TIMEOUT_ERROR
            recoverable = True
        elif isinstance(error, OSError) and error.errno in cls.OS_ERRORS:
            code, message, recoverable = cls.OS_ERRORS[error.errno]
            if error.filename:
                details["path"] = error.filename

        # Message based hints from upstream AI/model APIs
        lowered = message.lower()
        if "rate limit" in lowered:
            code = ErrorCodes.RATE_LIMIT_EXCEEDED
            recoverable = True
        elif code == ErrorCodes.UNKNOWN_ERROR and (
            "timeout" in lowered or "timed out" in lowered
        ):
            code = ErrorCodes.TIMEOUT_ERROR
            recoverable = True

        return ErrorDetails(
            code=code,
            message=message,
            recoverable=recoverable,
            operation=operation,
            details=details,
        )

    def handle(
        self, error: BaseException, operation: Optional[str] = None
    ) -> ErrorDetails:
        """
        Classify an exception, log it and add it to the recent-error log.

        Recoverable errors are logged at WARNING, others at ERROR.
        """
        error_details = self.classify(error, operation)

        with self._lock:
            self._log.appendleft(error_details)

        log = logger.warning if error_details.recoverable else logger.error
        log(
            f"[{error_details.code}] {error_details.message}"
            + (f" (operation: {operation})" if operation else "")
        )
        return error_details

    def user_message(self, error_details: ErrorDetails) -> str:
        """Get a user-friendly message for classified error details."""
        return self.USER_MESSAGES.get(error_details.code) or (
            error_details.message or "An unexpected error occurred."
        )

    def recovery_options(self, error_details: ErrorDetails) -> list[RecoveryOption]:
        """Suggested follow-up actions for classified error details."""
        options = self.RECOVERY_OPTIONS.get(error_details.code)
        if options is None and error_details.code.startswith("HTTP_5"):
            options = self.RECOVERY_OPTIONS[ErrorCodes.NETWORK_ERROR]
        return list(options or [])

    def recent_errors(self) -> list[ErrorDetails]:
        """Most recent errors first."""
        with self._lock:
            return list(self._log)

    def clear(self) -> None:
        """Clear the recent-error log."""
        with self._lock:
            self._log.clear()
