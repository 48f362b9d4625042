"""
Exception hierarchy for opcore.

Operation failures are never raised to submitting callers; they are recorded
as progress state. The exceptions below cover caller misuse, executor
transport failures (raised inside executors and converted to results by the
dispatcher) and fatal orchestration bugs.
"""

from typing import Any, Optional

from opcore.errors.error_codes import ErrorCodes


class OpcoreError(Exception):
    """
    Base exception class for all opcore errors.

    Attributes:
        message: Human-readable error message
        error_code: Optional error code for reference and documentation
        details: Optional dictionary with additional error details
        suggestion: Optional suggestion text for how to fix the error
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestion = suggestion
        super().__init__(message)


# --- Configuration Errors ---


class ConfigurationError(OpcoreError):
    """Exception raised when settings or operation files are invalid."""

    pass


# --- Validation Errors ---


class ValidationError(OpcoreError):
    """
    Exception raised when a caller hands the core something unusable.

    The fix requires changing the call, not retrying it.
    """

    pass


class DuplicateOperationError(ValidationError):
    """Exception raised when an operation id is submitted twice."""

    def __init__(self, operation_id: str) -> None:
        super().__init__(
            message=f"Operation ID already exists: {operation_id}",
            error_code=ErrorCodes.DUPLICATE_OPERATION,
            details={"operation_id": operation_id},
            suggestion="Let the dispatcher generate ids or use unique ids",
        )


# --- Executor Errors ---


class ExecutorError(OpcoreError):
    """
    Base class for failures of the external executor call itself.

    Attributes:
        recoverable: Whether retrying the call may succeed
        status_code: HTTP status code when the executor is reached over HTTP
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, error_code, details)
        self.recoverable = recoverable
        self.status_code = status_code


class ExecutorConnectionError(ExecutorError):
    """Exception for connection-specific failures."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message,
            error_code=ErrorCodes.NETWORK_ERROR,
            details=details,
            recoverable=True,
        )


class ExecutorTimeoutError(ExecutorError):
    """Exception for timeout-specific failures."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message,
            error_code=ErrorCodes.TIMEOUT_ERROR,
            details=details,
            recoverable=True,
        )


# --- Cancellation ---


class CancellationError(OpcoreError):
    """Exception raised when an operation observes its own cancellation."""

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message, error_code=ErrorCodes.CANCELLED)
        self.operation_id = operation_id
        self.reason = reason


# --- Orchestration ---


class OrchestrationError(OpcoreError):
    """
    Fatal error raised when the orchestration logic itself is broken.

    Distinct from operation failures: this indicates a bug in the
    dispatcher's bookkeeping rather than an external failure.
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message, error_code=ErrorCodes.ORCHESTRATION_FAILURE, details=details
        )
