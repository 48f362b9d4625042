"""
Stream coordination for operations with incremental output.

Terminal command output and token-by-token AI responses are modelled as an
ordered, subscribable sequence of StreamChunk objects layered on top of the
ProgressTracker. Streaming operations have no pending state: they are
started, not queued.

Key components:
- StreamCoordinator: Per-operation chunk history, subscriptions and the
  running -> {completed, failed, cancelled} state machine
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from opcore.async_infrastructure.events import EventChannel, Subscription
from opcore.async_infrastructure.progress import ProgressTracker
from opcore.config.settings import StreamingSettings, get_streaming_settings
from opcore.errors.error_codes import ErrorCodes
from opcore.errors.handler import ErrorHandler
from opcore.logging import get_logger
from opcore.models.operations import (
    OperationKind,
    OperationResult,
    OperationStatus,
    StreamChunk,
    StreamChunkType,
    StreamingOperation,
)

logger = get_logger(__name__)


class StreamCoordinator:
    """
    Manages streaming operations and delivers their chunks in order.

    Chunks for one operation reach subscribers in emission order and are
    never batched. There is no ordering guarantee across operations.

    A finished stream stays observable for ``cleanup_delay_seconds`` so late
    subscribers can read its final state; a cancelled stream is removed
    immediately.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        settings: Optional[StreamingSettings] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.tracker = tracker
        self.settings = settings or get_streaming_settings()
        self.error_handler = error_handler or ErrorHandler()

        self._operations: dict[str, StreamingOperation] = {}
        self._chunks: dict[str, list[StreamChunk]] = {}
        self._errors: dict[str, str] = {}
        self._chunk_channels: dict[str, EventChannel[StreamChunk]] = {}
        self._operation_channels: dict[str, EventChannel[StreamingOperation]] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def start_operation(
        self, operation_id: str, kind: OperationKind, initial_message: Optional[str] = None
    ) -> StreamingOperation:
        """Start a streaming operation in the running state."""
        with self._lock:
            self._cancel_cleanup(operation_id)
            operation = StreamingOperation(id=operation_id, kind=kind)
            self._operations[operation_id] = operation
            self._chunks[operation_id] = []
            self._errors.pop(operation_id, None)

        message = initial_message or f"Starting {kind.value} operation"
        if not self.tracker.has(operation_id):
            self.tracker.track(operation_id, kind.value, message)
        self.tracker.start(operation_id, message)

        logger.debug(f"Stream {operation_id} started ({kind.value})")
        self._notify_operation(operation_id)

        if initial_message:
            self.emit(operation_id, StreamChunkType.STATUS, initial_message)
        return operation.model_copy()

    def emit_chunk(self, operation_id: str, chunk: StreamChunk) -> bool:
        """
        Append a chunk to a running stream and deliver it to subscribers.

        Progress chunks carrying a numeric ``progress`` metadata value raise
        the operation's progress (never lower it); completion chunks set it
        to 100.

        Returns:
            False if the operation is unknown or no longer running
        """
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None or operation.status != OperationStatus.RUNNING:
                logger.debug(f"Dropping chunk for inactive stream {operation_id}")
                return False
            self._record(operation_id, chunk)
            progress = self._operations[operation_id].progress

        self.tracker.update(operation_id, progress, chunk.data, OperationStatus.RUNNING)
        self._deliver(operation_id, chunk)
        self._notify_operation(operation_id)
        return True

    def emit(
        self,
        operation_id: str,
        chunk_type: StreamChunkType,
        data: str,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Build a chunk and emit it."""
        return self.emit_chunk(
            operation_id, StreamChunk(type=chunk_type, data=data, metadata=metadata)
        )

    def end_operation(
        self,
        operation_id: str,
        success: bool = True,
        final_message: Optional[str] = None,
        recoverable: bool = False,
    ) -> bool:
        """
        Finish a running stream as completed or failed.

        ``recoverable`` is recorded on a failed entry so callers can tell
        whether running the operation again could succeed.

        A final completion or error chunk is emitted when a message is given.
        Subscriptions are dropped after the cleanup delay.
        """
        if final_message:
            chunk_type = StreamChunkType.COMPLETION if success else StreamChunkType.ERROR
            self.emit(operation_id, chunk_type, final_message)

        status = OperationStatus.COMPLETED if success else OperationStatus.FAILED
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None or operation.status != OperationStatus.RUNNING:
                return False
            changes = {"status": status, "ended_at": datetime.now(timezone.utc)}
            if success:
                changes["progress"] = 100.0
            self._operations[operation_id] = operation.model_copy(update=changes)
            error = final_message or self._errors.get(operation_id) or "Operation failed"

        if success:
            self.tracker.complete(operation_id, final_message)
        else:
            self.tracker.fail(operation_id, error, recoverable=recoverable)

        logger.info(f"Stream {operation_id} {status.value}")
        self._notify_operation(operation_id)
        self._schedule_cleanup(operation_id)
        return True

    def cancel_operation(self, operation_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a running stream and remove it without a grace delay."""
        reason = reason or "Operation cancelled"
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None or operation.status != OperationStatus.RUNNING:
                return False
            self._operations[operation_id] = operation.model_copy(
                update={
                    "status": OperationStatus.CANCELLED,
                    "ended_at": datetime.now(timezone.utc),
                }
            )
            chunk = StreamChunk(type=StreamChunkType.STATUS, data=reason)
            self._record(operation_id, chunk)

        self.tracker.cancel(operation_id, reason)
        self._deliver(operation_id, chunk)
        self._notify_operation(operation_id)
        logger.info(f"Stream {operation_id} cancelled: {reason}")
        self._remove(operation_id)
        return True

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_chunk(
        self, operation_id: str, callback: Callable[[StreamChunk], None]
    ) -> Subscription:
        """Subscribe to the chunks of one operation."""
        with self._lock:
            channel = self._chunk_channels.setdefault(
                operation_id, EventChannel[StreamChunk](f"stream {operation_id}")
            )
        return channel.subscribe(callback)

    def on_operation_update(
        self, operation_id: str, callback: Callable[[StreamingOperation], None]
    ) -> Subscription:
        """Subscribe to state changes of one operation."""
        with self._lock:
            channel = self._operation_channels.setdefault(
                operation_id,
                EventChannel[StreamingOperation](f"stream operation {operation_id}"),
            )
        return channel.subscribe(callback)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_operation(self, operation_id: str) -> Optional[StreamingOperation]:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation.model_copy() if operation is not None else None

    def active_operations(self) -> list[StreamingOperation]:
        with self._lock:
            return [op.model_copy() for op in self._operations.values()]

    def operations_by_kind(self, kind: OperationKind) -> list[StreamingOperation]:
        with self._lock:
            return [op.model_copy() for op in self._operations.values() if op.kind == kind]

    def get_chunks(self, operation_id: str) -> list[StreamChunk]:
        with self._lock:
            return list(self._chunks.get(operation_id, []))

    def is_running(self, operation_id: str) -> bool:
        with self._lock:
            operation = self._operations.get(operation_id)
            return operation is not None and operation.status == OperationStatus.RUNNING

    # ------------------------------------------------------------------
    # Stream consumption
    # ------------------------------------------------------------------

    async def run_stream(
        self,
        operation_id: str,
        kind: OperationKind,
        chunks: AsyncIterator[StreamChunk],
        initial_message: Optional[str] = None,
    ) -> OperationResult:
        """
        Drive a stream from an async chunk source to its end state.

        The stream completes when the source is exhausted (or yields a
        completion chunk) and fails when it yields an error chunk or raises.
        Raised errors are classified and reported as an error chunk carrying
        the error code and whether a retry could succeed.

        Returns:
            OperationResult whose data is the concatenated stdout text
        """
        started = time.monotonic()
        self.start_operation(operation_id, kind, initial_message)

        finished_with: Optional[StreamChunkType] = None
        error_code: Optional[str] = None
        recoverable = False
        try:
            async for chunk in chunks:
                if not self.emit_chunk(operation_id, chunk):
                    break
                if chunk.type in (StreamChunkType.COMPLETION, StreamChunkType.ERROR):
                    finished_with = chunk.type
                    if chunk.metadata:
                        error_code = chunk.metadata.get("code")
                        recoverable = bool(chunk.metadata.get("recoverable", False))
                    break
        except asyncio.CancelledError:
            self.cancel_operation(operation_id)
            raise
        except Exception as e:
            if self.is_running(operation_id):
                details = self.error_handler.handle(e, f"{kind.value}_stream")
                finished_with = StreamChunkType.ERROR
                error_code = details.code
                recoverable = details.recoverable
                self.emit(
                    operation_id,
                    StreamChunkType.ERROR,
                    details.message,
                    {"code": details.code, "recoverable": details.recoverable},
                )
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        # Read before end_operation schedules the cleanup that drops them
        with self._lock:
            operation = self._operations.get(operation_id)
            status = operation.status if operation is not None else OperationStatus.CANCELLED
            output = "".join(
                c.data
                for c in self._chunks.get(operation_id, [])
                if c.type == StreamChunkType.STDOUT
            )
            error = self._errors.get(operation_id)

        if status == OperationStatus.RUNNING:
            success = finished_with != StreamChunkType.ERROR
            self.end_operation(operation_id, success, recoverable=recoverable)
            status = OperationStatus.COMPLETED if success else OperationStatus.FAILED

        duration = time.monotonic() - started
        if status == OperationStatus.COMPLETED:
            return OperationResult(
                operation_id=operation_id, success=True, data=output, duration=duration
            )
        if status == OperationStatus.CANCELLED:
            return OperationResult(
                operation_id=operation_id,
                success=False,
                data=output or None,
                error="Operation cancelled",
                code=ErrorCodes.CANCELLED,
                recoverable=False,
                duration=duration,
            )
        return OperationResult(
            operation_id=operation_id,
            success=False,
            data=output or None,
            error=error or "Operation failed",
            code=error_code or ErrorCodes.STREAM_ERROR,
            recoverable=recoverable,
            duration=duration,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Cancel pending cleanup timers and drop every stream."""
        with self._lock:
            for handle in self._cleanup_handles.values():
                handle.cancel()
            self._cleanup_handles.clear()
            ids = list(self._operations)
        for operation_id in ids:
            self._remove(operation_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, operation_id: str, chunk: StreamChunk) -> None:
        operation = self._operations[operation_id]
        changes = {
            "current_chunk": operation.current_chunk + 1,
            "total_chunks": operation.total_chunks + 1,
            "last_activity": datetime.now(timezone.utc),
        }
        if chunk.type == StreamChunkType.COMPLETION:
            changes["progress"] = 100.0
        elif chunk.progress_value is not None:
            changes["progress"] = max(
                operation.progress, max(0.0, min(100.0, chunk.progress_value))
            )
        elif chunk.type == StreamChunkType.ERROR:
            self._errors[operation_id] = chunk.data

        self._operations[operation_id] = operation.model_copy(update=changes)
        self._chunks.setdefault(operation_id, []).append(chunk)

    def _deliver(self, operation_id: str, chunk: StreamChunk) -> None:
        with self._lock:
            channel = self._chunk_channels.get(operation_id)
        if channel is not None:
            channel.publish(chunk)

    def _notify_operation(self, operation_id: str) -> None:
        with self._lock:
            operation = self._operations.get(operation_id)
            channel = self._operation_channels.get(operation_id)
        if operation is not None and channel is not None:
            channel.publish(operation.model_copy())

    def _schedule_cleanup(self, operation_id: str) -> None:
        delay = self.settings.cleanup_delay_seconds
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, removing stream {operation_id} now")
            self._remove(operation_id)
            return

        with self._lock:
            self._cancel_cleanup(operation_id)
            self._cleanup_handles[operation_id] = loop.call_later(
                delay, self._remove, operation_id
            )

    def _cancel_cleanup(self, operation_id: str) -> None:
        handle = self._cleanup_handles.pop(operation_id, None)
        if handle is not None:
            handle.cancel()

    def _remove(self, operation_id: str) -> None:
        with self._lock:
            self._cleanup_handles.pop(operation_id, None)
            self._operations.pop(operation_id, None)
            self._chunks.pop(operation_id, None)
            self._errors.pop(operation_id, None)
            chunk_channel = self._chunk_channels.pop(operation_id, None)
            operation_channel = self._operation_channels.pop(operation_id, None)

        for channel in (chunk_channel, operation_channel):
            if channel is not None:
                channel.clear()
        logger.debug(f"Stream {operation_id} cleaned up")
