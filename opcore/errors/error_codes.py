"""
Central registry of error codes for opcore.

Codes reported by executors and by the orchestration core share this
namespace so a result code can be looked up regardless of where it came from.

Usage:
    from opcore.errors.error_codes import ErrorCodes

    OperationResult(
        operation_id=op.id,
        success=False,
        error="Command exited with status 2",
        code=ErrorCodes.COMMAND_FAILED,
        recoverable=False,
    )
"""


class ErrorCodes:
    """Central registry of error codes for consistent error handling."""

    # Transport / external failures (recoverable)
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    BATCH_ERROR = "BATCH_ERROR"
    MISSING_RESULT = "MISSING_RESULT"

    # Filesystem failures
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DISK_FULL = "DISK_FULL"

    # Execution failures
    COMMAND_FAILED = "COMMAND_FAILED"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    STREAM_ERROR = "STREAM_ERROR"

    # Orchestration
    CANCELLED = "CANCELLED"
    DUPLICATE_OPERATION = "DUPLICATE_OPERATION"
    ORCHESTRATION_FAILURE = "ORCHESTRATION_FAILURE"

    # Configuration
    CONFIG_INVALID = "CONFIG_INVALID"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"

    @staticmethod
    def http(status_code: int) -> str:
        """Code for an HTTP status returned by an executor endpoint."""
        return f"HTTP_{status_code}"
