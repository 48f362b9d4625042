"""Executors: adapters to the external systems that carry out operations."""

from opcore.executors.base import Executor
from opcore.executors.http import HttpExecutor
from opcore.executors.terminal import TerminalExecutor

__all__ = ["Executor", "HttpExecutor", "TerminalExecutor"]
