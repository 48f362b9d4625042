"""
Logging for opcore: console and rotating file handlers, a debug switch and
per-component level overrides.
"""

from opcore.logging.config import (
    configure_logging,
    get_logger,
    is_debug_mode,
    set_component_log_level,
    set_debug_mode,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "set_debug_mode",
    "is_debug_mode",
    "set_component_log_level",
]
