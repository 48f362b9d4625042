"""
Command-line interface for opcore.
"""

from opcore.cli.app import app

__all__ = ["app"]
