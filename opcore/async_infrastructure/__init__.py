"""
opcore Async Infrastructure

The four cooperating services of the orchestration core.

Components:
- events: Publish/subscribe channel with unsubscribe tokens
- cancellation: Cancellation registry, handles and cancellation tokens
- progress: Per-operation and aggregate progress tracking
- streaming: Stream coordinator for incremental output
- dispatcher: Priority batch dispatcher with bounded concurrency and retries
"""

from .cancellation import (
    AbortableHandle,
    AsyncCancellationToken,
    CallbackHandle,
    CancellableHandle,
    CancellationRegistry,
    CancellationToken,
    ProcessHandle,
)
from .dispatcher import BatchDispatcher
from .events import EventChannel, Subscription
from .progress import ProgressTracker
from .streaming import StreamCoordinator

__all__ = [
    "AbortableHandle",
    "AsyncCancellationToken",
    "BatchDispatcher",
    "CallbackHandle",
    "CancellableHandle",
    "CancellationRegistry",
    "CancellationToken",
    "EventChannel",
    "ProcessHandle",
    "ProgressTracker",
    "StreamCoordinator",
    "Subscription",
]
