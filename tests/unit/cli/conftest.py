"""Shared fixtures for CLI tests."""

import logging
import re
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from opcore.logging import set_debug_mode

if TYPE_CHECKING:
    from typer.testing import Result

# ANSI escape code pattern for stripping styling from output
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


class CleanResult:
    """Result wrapper that strips ANSI codes from stdout/stderr/output.

    Rich applies bold/dim styling even with NO_COLOR=1, which breaks
    plain string assertions on tables and status lines.
    """

    def __init__(self, result: "Result") -> None:
        self._result = result

    @property
    def exit_code(self) -> int:
        return self._result.exit_code

    @property
    def stdout(self) -> str:
        return ANSI_ESCAPE_PATTERN.sub("", self._result.stdout)

    @property
    def output(self) -> str:
        """The terminal output (mixed stdout+stderr) with ANSI codes stripped."""
        return ANSI_ESCAPE_PATTERN.sub("", self._result.output)

    @property
    def exception(self):
        return self._result.exception


class CleanCliRunner(CliRunner):
    """CLI runner that returns results with ANSI codes stripped."""

    def invoke(self, *args, **kwargs) -> CleanResult:
        result = super().invoke(*args, **kwargs)
        return CleanResult(result)


@pytest.fixture
def runner():
    """CLI runner with NO_COLOR=1 and ANSI codes stripped."""
    return CleanCliRunner(env={"NO_COLOR": "1"})


@pytest.fixture(autouse=True)
def restore_logging():
    """The app callback configures logging; drop its handlers after each test."""
    root_logger = logging.getLogger()
    before = list(root_logger.handlers)
    yield
    for handler in root_logger.handlers[:]:
        if handler not in before:
            root_logger.removeHandler(handler)
    set_debug_mode(False)
