"""
Progress tracking for orchestrated operations.

The ProgressTracker is the single source of truth for the live state of
every tracked operation. The aggregate view is recomputed from the entries
on every call rather than maintained incrementally, so individual and
aggregate state cannot drift apart.

Key components:
- ProgressTracker: Thread-safe per-operation state with forward-only status
  transitions and synchronous update subscriptions
"""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from opcore.async_infrastructure.events import EventChannel, Subscription
from opcore.logging import get_logger
from opcore.models.operations import (
    OperationProgress,
    OperationStatus,
    OverallProgress,
    OverallStatus,
)

logger = get_logger(__name__)

# Convenience wrapper progress values
START_PROGRESS = 10.0
COMPLETE_PROGRESS = 100.0
FAILED_PROGRESS = 0.0

_STATUS_ORDER = {
    OperationStatus.PENDING: 0,
    OperationStatus.RUNNING: 1,
    OperationStatus.COMPLETED: 2,
    OperationStatus.FAILED: 2,
    OperationStatus.CANCELLED: 2,
}


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class ProgressTracker:
    """
    Thread-safe registry of OperationProgress entries.

    Status only moves forward (pending -> running -> terminal). While an
    entry is running its progress never decreases. Entries in a terminal
    state are frozen until removed.

    Subscribers are called synchronously after every applied mutation and
    receive copies of the entries, never the live objects.
    """

    def __init__(self):
        self._entries: dict[str, OperationProgress] = {}
        self._lock = threading.RLock()
        self._tracking_started: Optional[float] = None
        self._overall_updates = EventChannel[OverallProgress]("overall progress")
        self._operation_updates = EventChannel[OperationProgress]("operation progress")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def start_tracking(self) -> None:
        """Mark the reference time used for the remaining-time estimate."""
        with self._lock:
            self._tracking_started = time.monotonic()

    def track(self, operation_id: str, kind: str, message: str = "") -> OperationProgress:
        """Register a new operation at status pending."""
        with self._lock:
            if self._tracking_started is None:
                self._tracking_started = time.monotonic()

            existing = self._entries.get(operation_id)
            if existing is not None and not existing.status.is_terminal:
                logger.debug(f"Operation {operation_id} is already tracked")
                return existing.model_copy()

            entry = OperationProgress(
                operation_id=operation_id,
                kind=kind,
                message=message or f"Queued {kind}",
            )
            self._entries[operation_id] = entry
            snapshot = entry.model_copy()

        logger.debug(f"Tracking operation {operation_id} ({kind})")
        self._notify(snapshot)
        return snapshot

    def update(
        self,
        operation_id: str,
        progress: float,
        message: Optional[str] = None,
        status: Optional[OperationStatus] = None,
        error: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ) -> bool:
        """
        Apply a progress update.

        Args:
            operation_id: Tracked operation
            progress: New percentage, clamped to [0, 100]
            message: Optional status text
            status: Optional new status; backward transitions are rejected
            error: Error text recorded with a failure
            recoverable: Whether the recorded failure may be retried

        Returns:
            True if the update was applied, False if it was ignored
        """
        with self._lock:
            entry = self._entries.get(operation_id)
            if entry is None:
                logger.debug(f"Ignoring update for untracked operation {operation_id}")
                return False

            if entry.status.is_terminal:
                logger.debug(
                    f"Ignoring update for {operation_id}: already {entry.status.value}"
                )
                return False

            new_status = status or entry.status
            if _STATUS_ORDER[new_status] < _STATUS_ORDER[entry.status]:
                logger.warning(
                    f"Rejected status change for {operation_id}: "
                    f"{entry.status.value} -> {new_status.value}"
                )
                return False

            value = _clamp(progress)
            if new_status == OperationStatus.RUNNING:
                value = max(entry.progress, value)

            changes = {"status": new_status, "progress": value}
            if message is not None:
                changes["message"] = message
            if error is not None:
                changes["error"] = error
            if recoverable is not None:
                changes["recoverable"] = recoverable
            if new_status.is_terminal:
                ended_at = datetime.now(timezone.utc)
                changes["ended_at"] = ended_at
                changes["duration"] = (ended_at - entry.started_at).total_seconds()

            entry = entry.model_copy(update=changes)
            self._entries[operation_id] = entry
            snapshot = entry.model_copy()

        if new_status.is_terminal:
            logger.debug(f"Operation {operation_id} {new_status.value}")
        self._notify(snapshot)
        return True

    def start(self, operation_id: str, message: Optional[str] = None) -> bool:
        return self.update(
            operation_id,
            START_PROGRESS,
            message if message is not None else "Running",
            OperationStatus.RUNNING,
        )

    def complete(self, operation_id: str, message: Optional[str] = None) -> bool:
        return self.update(
            operation_id,
            COMPLETE_PROGRESS,
            message if message is not None else "Completed",
            OperationStatus.COMPLETED,
        )

    def fail(self, operation_id: str, error: str, recoverable: bool = False) -> bool:
        return self.update(
            operation_id,
            FAILED_PROGRESS,
            f"Failed: {error}",
            OperationStatus.FAILED,
            error=error,
            recoverable=recoverable,
        )

    def cancel(self, operation_id: str, message: Optional[str] = None) -> bool:
        return self.update(
            operation_id,
            FAILED_PROGRESS,
            message if message is not None else "Cancelled",
            OperationStatus.CANCELLED,
        )

    def remove(self, operation_id: str) -> bool:
        """Remove a terminal entry. Live entries are never removed."""
        with self._lock:
            entry = self._entries.get(operation_id)
            if entry is None or not entry.status.is_terminal:
                return False
            del self._entries[operation_id]

        self._overall_updates.publish(self.overall())
        return True

    def clear_completed(self) -> int:
        """Drop completed entries; failed and cancelled entries are kept."""
        with self._lock:
            ids = [
                op_id
                for op_id, entry in self._entries.items()
                if entry.status == OperationStatus.COMPLETED
            ]
            for op_id in ids:
                del self._entries[op_id]

        if ids:
            logger.debug(f"Cleared {len(ids)} completed operations")
            self._overall_updates.publish(self.overall())
        return len(ids)

    def clear_all(self) -> None:
        """Drop every entry and reset the estimate reference time."""
        with self._lock:
            self._entries.clear()
            self._tracking_started = None

        self._overall_updates.publish(self.overall())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, operation_id: str) -> Optional[OperationProgress]:
        with self._lock:
            entry = self._entries.get(operation_id)
            return entry.model_copy() if entry is not None else None

    def has(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._entries

    def all(self) -> list[OperationProgress]:
        with self._lock:
            return [entry.model_copy() for entry in self._entries.values()]

    def overall(self) -> OverallProgress:
        """Recompute the aggregate view from the current entries."""
        with self._lock:
            entries = list(self._entries.values())
            tracking_started = self._tracking_started

        counts = {status: 0 for status in OperationStatus}
        for entry in entries:
            counts[entry.status] += 1

        total = len(entries)
        completed = counts[OperationStatus.COMPLETED]
        failed = counts[OperationStatus.FAILED]
        cancelled = counts[OperationStatus.CANCELLED]
        running = counts[OperationStatus.RUNNING]
        pending = counts[OperationStatus.PENDING]
        finished = completed + failed + cancelled

        if running > 0:
            status = OverallStatus.RUNNING
        elif total > 0 and completed == total:
            status = OverallStatus.COMPLETED
        elif failed > 0:
            status = OverallStatus.FAILED
        elif cancelled > 0:
            status = OverallStatus.CANCELLED
        else:
            status = OverallStatus.IDLE

        estimated: Optional[float] = None
        if finished > 0 and tracking_started is not None:
            elapsed = time.monotonic() - tracking_started
            estimated = (elapsed / finished) * (total - finished)

        current = next(
            (e.message for e in entries if e.status == OperationStatus.RUNNING), None
        )

        return OverallProgress(
            total_operations=total,
            completed_operations=completed,
            failed_operations=failed,
            cancelled_operations=cancelled,
            running_operations=running,
            pending_operations=pending,
            overall_progress=(finished / total * 100.0) if total else 0.0,
            estimated_time_remaining=estimated,
            current_operation=current,
            status=status,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_update(self, callback: Callable[[OverallProgress], None]) -> Subscription:
        """Subscribe to the aggregate view after every mutation."""
        return self._overall_updates.subscribe(callback)

    def on_operation_update(
        self, callback: Callable[[OperationProgress], None]
    ) -> Subscription:
        """Subscribe to individual entry changes."""
        return self._operation_updates.subscribe(callback)

    def _notify(self, snapshot: OperationProgress) -> None:
        self._operation_updates.publish(snapshot)
        if len(self._overall_updates):
            self._overall_updates.publish(self.overall())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
