"""
Publish/subscribe channel used by every orchestration service.

Subscribers are called synchronously, in subscription order, on every
publish. There is no buffering or coalescing: a subscriber that needs
throttled updates must debounce itself. A failing subscriber is logged and
never prevents delivery to the others.
"""

import itertools
import threading
from typing import Callable, Generic, Optional, TypeVar

from opcore.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Subscription:
    """
    Token returned by EventChannel.subscribe.

    Calling the token (or its unsubscribe method) removes the subscriber.
    Unsubscribing more than once is a no-op.
    """

    def __init__(self, channel: "EventChannel", key: int):
        self._channel: Optional[EventChannel] = channel
        self._key = key

    @property
    def active(self) -> bool:
        return self._channel is not None and self._channel._has(self._key)

    def unsubscribe(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel._remove(self._key)

    def __call__(self) -> None:
        self.unsubscribe()


class EventChannel(Generic[T]):
    """Synchronous broadcast channel with unsubscribe tokens."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: dict[int, Callable[[T], None]] = {}
        self._keys = itertools.count()
        self._lock = threading.RLock()

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        """Register a callback and return its unsubscribe token."""
        with self._lock:
            key = next(self._keys)
            self._subscribers[key] = callback
        return Subscription(self, key)

    def publish(self, event: T) -> None:
        """Deliver an event to every current subscriber."""
        with self._lock:
            callbacks = list(self._subscribers.values())

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"{self.name} subscriber failed: {e}")

    def clear(self) -> None:
        """Drop every subscriber."""
        with self._lock:
            self._subscribers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _has(self, key: int) -> bool:
        with self._lock:
            return key in self._subscribers

    def _remove(self, key: int) -> None:
        with self._lock:
            self._subscribers.pop(key, None)
