"""
opcore - operation orchestration core for an AI coding sandbox.

Queues, batches, retries, cancels and reports progress for file writes,
terminal commands and AI requests executed by an external executor.
"""

from dotenv import load_dotenv

from opcore.logging import (
    configure_logging,
    get_logger,
    is_debug_mode,
    set_debug_mode,
)
from opcore.version import __version__

# Load environment variables from .env file
load_dotenv()

__all__ = [
    "__version__",
    "configure_logging",
    "get_logger",
    "is_debug_mode",
    "set_debug_mode",
]
