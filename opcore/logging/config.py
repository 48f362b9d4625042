"""
Logging setup for opcore.

Every module takes its logger from get_logger(__name__) and never installs
handlers itself. Applications (the CLI included) call configure_logging
once; library users can skip it and keep their own logging setup.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Mapping, Optional, Union

_PACKAGE_LOGGER = "opcore"

_debug_enabled = False

# Logger-name fragment -> level, applied to existing and future loggers
_component_levels: dict[str, int] = {}

_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "%(module)s.%(funcName)s:%(lineno)d | %(message)s"
)
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_LEVEL_STYLES = {
    logging.DEBUG: "\033[94m",
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[1;91m",
}
_RESET = "\033[0m"


class ColorFormatter(logging.Formatter):
    """Console formatter that colours the level name."""

    def format(self, record: logging.LogRecord) -> str:
        style = _LEVEL_STYLES.get(record.levelno)
        if style is None:
            return super().format(record)
        # Copy so other handlers see the plain level name
        styled = logging.makeLogRecord(record.__dict__)
        styled.levelname = f"{style}{record.levelname}{_RESET}"
        return super().format(styled)


def _to_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` with any matching component level applied."""
    logger = logging.getLogger(name)
    for fragment, level in _component_levels.items():
        if fragment in name:
            logger.setLevel(level)
            break
    return logger


def set_component_log_level(component: str, level: Union[int, str]) -> None:
    """
    Override the level of every opcore logger whose name contains ``component``.

    Args:
        component: Logger name fragment, e.g. "async_infrastructure.dispatcher"
        level: Level number or name ("DEBUG", "warning", ...)

    Raises:
        ValueError: If ``level`` is not a known level name
    """
    resolved = _to_level(level)
    _component_levels[component] = resolved
    for name in list(logging.Logger.manager.loggerDict):
        if name.startswith(_PACKAGE_LOGGER) and component in name:
            logging.getLogger(name).setLevel(resolved)


def set_debug_mode(enabled: bool) -> None:
    """Switch the package logger between DEBUG and INFO."""
    global _debug_enabled
    if enabled == _debug_enabled:
        return
    _debug_enabled = enabled
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if enabled else logging.INFO)
    package_logger.info(f"Debug mode {'enabled' if enabled else 'disabled'}")


def is_debug_mode() -> bool:
    return _debug_enabled


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    console_level: Union[int, str] = logging.INFO,
    file_level: Union[int, str] = logging.DEBUG,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    component_levels: Optional[Mapping[str, Union[int, str]]] = None,
) -> None:
    """
    Install the opcore console handler and, with ``log_dir``, a rotating file.

    Calling it again replaces the handlers of the previous call; handlers
    installed by anything else are left in place.

    Args:
        log_dir: Directory for ``opcore.log``; console only when omitted
        console_level: Level for the stderr handler
        file_level: Level for the file handler
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep
        component_levels: Per-component overrides, see set_component_log_level
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        if getattr(handler, "_opcore_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(_to_level(console_level))
    console_handler.setFormatter(ColorFormatter(_CONSOLE_FORMAT))
    handlers.append(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "opcore.log",
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(_to_level(file_level))
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        handler._opcore_handler = True  # type: ignore[attr-defined]
        root_logger.addHandler(handler)

    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if _debug_enabled else logging.INFO)

    for component, level in (component_levels or {}).items():
        set_component_log_level(component, level)

    package_logger.debug(
        f"Logging configured (console={logging.getLevelName(console_handler.level)}, "
        f"log_dir={log_dir or '-'})"
    )
