"""
Tests for error classification.

Tests cover:
- Recoverable vs terminal classification of common failures
- HTTP status codes reported by executors
- User messages, recovery options and the recent-error log
"""

import asyncio
import errno

import pytest

from opcore.errors import (
    DuplicateOperationError,
    ErrorCodes,
    ErrorHandler,
    ExecutorConnectionError,
    ExecutorError,
)


class TestClassification:
    """Test ErrorHandler.classify."""

    @pytest.mark.parametrize(
        "error,code,recoverable",
        [
            (ConnectionResetError("peer reset"), ErrorCodes.NETWORK_ERROR, True),
            (asyncio.TimeoutError(), ErrorCodes.TIMEOUT_ERROR, True),
            (
                FileNotFoundError(errno.ENOENT, "No such file", "a.txt"),
                ErrorCodes.FILE_NOT_FOUND,
                True,
            ),
            (
                PermissionError(errno.EACCES, "Permission denied", "/etc/passwd"),
                ErrorCodes.PERMISSION_DENIED,
                False,
            ),
            (OSError(errno.ENOSPC, "No space left on device"), ErrorCodes.DISK_FULL, False),
            (ValueError("bad input"), ErrorCodes.UNKNOWN_ERROR, False),
        ],
    )
    def test_builtin_exceptions(self, error, code, recoverable):
        details = ErrorHandler.classify(error)

        assert details.code == code
        assert details.recoverable is recoverable

    def test_os_error_keeps_path(self):
        details = ErrorHandler.classify(
            FileNotFoundError(errno.ENOENT, "No such file", "src/missing.py")
        )
        assert details.details["path"] == "src/missing.py"

    def test_rate_limit_message_is_recoverable(self):
        details = ErrorHandler.classify(RuntimeError("429: Rate limit exceeded for model"))

        assert details.code == ErrorCodes.RATE_LIMIT_EXCEEDED
        assert details.recoverable is True

    def test_timeout_message_is_recoverable(self):
        details = ErrorHandler.classify(RuntimeError("upstream request timed out"))

        assert details.code == ErrorCodes.TIMEOUT_ERROR
        assert details.recoverable is True

    @pytest.mark.parametrize(
        "status,recoverable", [(500, True), (503, True), (408, True), (429, True), (400, False), (404, False)]
    )
    def test_http_status(self, status, recoverable):
        error = ExecutorError("executor failed", status_code=status)

        details = ErrorHandler.classify(error)

        assert details.code == f"HTTP_{status}"
        assert details.recoverable is recoverable

    def test_executor_connection_error(self):
        details = ErrorHandler.classify(
            ExecutorConnectionError("refused", details={"endpoint": "/api"})
        )

        assert details.code == ErrorCodes.NETWORK_ERROR
        assert details.recoverable is True
        assert details.details["endpoint"] == "/api"

    def test_opcore_error_keeps_its_code(self):
        details = ErrorHandler.classify(DuplicateOperationError("op_1"))

        assert details.code == ErrorCodes.DUPLICATE_OPERATION
        assert details.recoverable is False


class TestHandle:
    """Test the recent-error log and user-facing helpers."""

    def test_handle_records_most_recent_first(self):
        handler = ErrorHandler()

        handler.handle(ConnectionError("first"), "op_1")
        handler.handle(ValueError("second"))

        recent = handler.recent_errors()
        assert [e.message for e in recent] == ["second", "first"]
        assert recent[1].operation == "op_1"

    def test_log_is_bounded(self):
        handler = ErrorHandler(max_log_size=3)

        for i in range(5):
            handler.handle(ValueError(f"error {i}"))

        assert [e.message for e in handler.recent_errors()] == [
            "error 4",
            "error 3",
            "error 2",
        ]

    def test_clear(self):
        handler = ErrorHandler()
        handler.handle(ValueError("x"))

        handler.clear()

        assert handler.recent_errors() == []

    def test_user_message_falls_back_to_error_text(self):
        handler = ErrorHandler()

        network = handler.handle(ConnectionError("reset"))
        unknown = handler.handle(ValueError("bad payload"))

        assert "Connection failed" in handler.user_message(network)
        assert handler.user_message(unknown) == "bad payload"

    def test_recovery_options(self):
        handler = ErrorHandler()

        rate_limited = ErrorHandler.classify(RuntimeError("rate limit"))
        server_error = ErrorHandler.classify(ExecutorError("boom", status_code=502))
        terminal = ErrorHandler.classify(ValueError("bad"))

        assert handler.recovery_options(rate_limited)[0].action == "wait_and_retry"
        assert handler.recovery_options(server_error)[0].action == "retry"
        assert handler.recovery_options(terminal) == []

    def test_empty_message_uses_type_name(self):
        details = ErrorHandler.classify(KeyError())
        assert details.message == "KeyError"
