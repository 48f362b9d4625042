"""
Batch dispatcher: priority queue and bounded-concurrency execution engine.

Operations are queued in three priority tiers. Each dispatch cycle pulls up
to ``batch_size`` operations (high first, then normal, then low, FIFO
within a tier) and executes them as one batch against the external
executor, never exceeding ``max_concurrent_batches`` batches in flight.

Individual operation failures never raise to the submitting caller: every
outcome becomes a state transition in the ProgressTracker and an event on
the result channel. Only a bug in the dispatcher's own bookkeeping is
escalated, through join() and later submit() calls.
"""

import asyncio
from collections import deque
from typing import Callable, Iterable, Optional

from opcore.async_infrastructure.cancellation import (
    AbortableHandle,
    CancellationRegistry,
)
from opcore.async_infrastructure.events import EventChannel, Subscription
from opcore.async_infrastructure.progress import ProgressTracker
from opcore.async_infrastructure.streaming import StreamCoordinator
from opcore.config.settings import DispatcherSettings, get_dispatcher_settings
from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import DuplicateOperationError, OrchestrationError
from opcore.errors.handler import ErrorHandler
from opcore.errors.retry import RetryConfig, calculate_delay, should_retry
from opcore.executors.base import Executor
from opcore.logging import get_logger
from opcore.models.operations import (
    BatchProgress,
    HandleType,
    Operation,
    OperationKind,
    OperationPriority,
    OperationResult,
    QueueStatus,
    RetryScheduled,
)

logger = get_logger(__name__)

# Dispatch order of the priority tiers
_TIERS = sorted(OperationPriority, key=lambda p: p.rank)


class BatchDispatcher:
    """
    Queues operations by priority and executes them in bounded batches.

    Recoverable failures are re-queued with exponential backoff (2 s, 4 s,
    8 s by default) and keep their priority. A whole-batch transport
    failure is treated as a recoverable failure of every member operation.
    """

    def __init__(
        self,
        executor: Executor,
        tracker: ProgressTracker,
        registry: CancellationRegistry,
        streams: Optional[StreamCoordinator] = None,
        settings: Optional[DispatcherSettings] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.executor = executor
        self.tracker = tracker
        self.registry = registry
        self.streams = streams
        self.settings = settings or get_dispatcher_settings()
        self.error_handler = error_handler or ErrorHandler()
        self.retry_config = RetryConfig(
            max_retries=self.settings.default_max_retries,
            base_delay=self.settings.backoff_base_seconds,
            max_delay=self.settings.max_backoff_seconds,
            backoff_factor=self.settings.backoff_factor,
        )

        self._queues: dict[OperationPriority, deque[Operation]] = {
            tier: deque() for tier in _TIERS
        }
        # Every operation not yet settled: queued, waiting in backoff or in flight
        self._operations: dict[str, Operation] = {}
        self._inflight: set[str] = set()
        self._cancelled_inflight: set[str] = set()
        self._stream_tasks: dict[str, asyncio.Task] = {}
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._cleanup_timers: dict[str, asyncio.TimerHandle] = {}

        self._batch_tasks: set[asyncio.Task] = set()
        self._active_batches = 0
        self._is_processing = False
        self._processor: Optional[asyncio.Task] = None
        self._slot_freed = asyncio.Event()
        self._state_changed = asyncio.Event()
        self._fatal: Optional[OrchestrationError] = None

        self._results = EventChannel[OperationResult]("result")
        self._batch_progress = EventChannel[BatchProgress]("batch progress")
        self._retries = EventChannel[RetryScheduled]("retry")
        self._registry_subscription = registry.on_cancelled(self._handle_cancelled)

        logger.debug(
            f"BatchDispatcher initialized (batch_size={self.settings.batch_size}, "
            f"max_concurrent_batches={self.settings.max_concurrent_batches}, "
            f"{self.retry_config})"
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, operation: Operation) -> str:
        """
        Enqueue one operation and start processing. Never awaits.

        Raises:
            DuplicateOperationError: If an operation with this id is still active
            OrchestrationError: If the dispatcher hit an internal failure or no
                event loop is running
        """
        self._raise_if_fatal()
        loop = self._running_loop()

        if operation.id in self._operations:
            raise DuplicateOperationError(operation.id)

        if "max_retries" not in operation.model_fields_set:
            operation.max_retries = self.settings.default_max_retries
        self._operations[operation.id] = operation
        self._queues[operation.priority].append(operation)
        self.tracker.track(
            operation.id,
            operation.kind.value,
            f"Queued {operation.kind.value} {operation.target}",
        )
        logger.debug(
            f"Submitted {operation.id} ({operation.kind.value}, "
            f"priority={operation.priority.value})"
        )
        self._ensure_processing(loop)
        return operation.id

    def submit_many(self, operations: Iterable[Operation]) -> list[str]:
        """Submit operations independently; earlier ones stay queued if a later one is rejected."""
        return [self.submit(operation) for operation in operations]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, operation_id: str) -> bool:
        """
        Cancel an operation wherever it is.

        Queued and backoff-waiting operations are removed and reported as
        cancelled. In-flight operations are cancelled through the registry.

        Returns:
            False if the operation is unknown or already finished
        """
        operation = self._remove_queued(operation_id)
        if operation is None:
            timer = self._retry_timers.pop(operation_id, None)
            if timer is not None:
                timer.cancel()
                operation = self._operations.get(operation_id)

        if operation is not None:
            self.tracker.cancel(operation_id)
            self._finish_cancelled(operation)
            self._signal()
            return True

        return await self.registry.cancel(operation_id)

    def cancel_all(self) -> int:
        """Cancel every queued and backoff-waiting operation."""
        cancelled: list[Operation] = []
        for tier in _TIERS:
            queue = self._queues[tier]
            while queue:
                cancelled.append(queue.popleft())

        for operation_id, timer in list(self._retry_timers.items()):
            timer.cancel()
            operation = self._operations.get(operation_id)
            if operation is not None:
                cancelled.append(operation)
        self._retry_timers.clear()

        for operation in cancelled:
            self.tracker.cancel(operation.id)
            self._finish_cancelled(operation)

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} queued operations")
        self._signal()
        return len(cancelled)

    def _handle_cancelled(self, operation_id: str) -> None:
        """Registry cancelled an in-flight operation: its result will be discarded."""
        if operation_id not in self._inflight:
            return
        self._cancelled_inflight.add(operation_id)
        if self.streams is not None and self.streams.is_running(operation_id):
            self.streams.cancel_operation(operation_id)
        else:
            self.tracker.cancel(operation_id)
        # Stop consuming even if the source never reaches end of stream
        task = self._stream_tasks.get(operation_id)
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Introspection and subscriptions
    # ------------------------------------------------------------------

    def status(self) -> QueueStatus:
        return QueueStatus(
            queued_count=self._queued_count(),
            is_processing=self._is_processing,
            active_batches=self._active_batches,
            retrying_count=len(self._retry_timers),
        )

    def on_result(self, callback: Callable[[OperationResult], None]) -> Subscription:
        """Final result of every operation (success, failure or cancellation)."""
        return self._results.subscribe(callback)

    def on_batch_progress(self, callback: Callable[[BatchProgress], None]) -> Subscription:
        return self._batch_progress.subscribe(callback)

    def on_retry(self, callback: Callable[[RetryScheduled], None]) -> Subscription:
        return self._retries.subscribe(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """
        Wait until nothing is queued, waiting in backoff or in flight.

        Raises:
            OrchestrationError: If the dispatcher hit an internal failure
        """
        while True:
            self._raise_if_fatal()
            if self._is_idle():
                return
            self._state_changed.clear()
            await self._state_changed.wait()

    async def shutdown(self) -> None:
        """Cancel all pending and in-flight work and wait for batches to end."""
        self.cancel_all()
        await self.registry.cancel_all("Dispatcher shutting down")

        if self._batch_tasks:
            await asyncio.gather(*list(self._batch_tasks), return_exceptions=True)

        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
            await asyncio.gather(self._processor, return_exceptions=True)

        for timer in self._cleanup_timers.values():
            timer.cancel()
        self._cleanup_timers.clear()
        self._registry_subscription.unsubscribe()
        logger.info("BatchDispatcher shut down")

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def _ensure_processing(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._processor is None or self._processor.done():
            self._is_processing = True
            self._processor = loop.create_task(self._process_queue())
            self._processor.add_done_callback(self._processor_done)

    async def _process_queue(self) -> None:
        try:
            while self._queued_count():
                if self._active_batches >= self.settings.max_concurrent_batches:
                    self._slot_freed.clear()
                    await self._slot_freed.wait()
                    continue

                batch = self._next_batch()
                if batch:
                    self._start_batch(batch)

                await asyncio.sleep(self.settings.processing_delay_seconds)
        finally:
            self._is_processing = False
            self._signal()

    def _next_batch(self) -> list[Operation]:
        """Fill a batch by strict tier order, FIFO within a tier."""
        batch: list[Operation] = []
        for tier in _TIERS:
            queue = self._queues[tier]
            while queue and len(batch) < self.settings.batch_size:
                batch.append(queue.popleft())
        return batch

    def _start_batch(self, batch: list[Operation]) -> None:
        self._active_batches += 1
        for operation in batch:
            self._inflight.add(operation.id)
            self.registry.create_abortable(
                operation.id, HandleType.for_kind(operation.kind)
            )
            self.tracker.start(
                operation.id,
                f"Processing {operation.kind.value} {operation.target}",
            )

        logger.debug(
            f"Dispatching batch of {len(batch)} "
            f"({self._active_batches}/{self.settings.max_concurrent_batches} active)"
        )
        task = asyncio.get_running_loop().create_task(self._run_batch(batch))
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_done)

    async def _run_batch(self, batch: list[Operation]) -> None:
        progress = BatchProgress(total=len(batch), current_operation=batch[0].id)
        self._batch_progress.publish(progress.model_copy())

        regular = [op for op in batch if not self._is_streaming(op)]
        streaming = [op for op in batch if self._is_streaming(op)]

        work = [self._execute_stream(op, progress) for op in streaming]
        if regular:
            work.append(self._execute_regular(regular, progress))
        await asyncio.gather(*work)

        progress.current_operation = None
        self._batch_progress.publish(progress.model_copy())

    async def _execute_regular(
        self, operations: list[Operation], progress: BatchProgress
    ) -> None:
        try:
            results = await self.executor.execute_batch(operations)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            details = self.error_handler.handle(e, "batch")
            for operation in operations:
                self._settle(
                    operation,
                    OperationResult(
                        operation_id=operation.id,
                        success=False,
                        error=f"Batch failed: {details.message}",
                        code=ErrorCodes.BATCH_ERROR,
                        recoverable=True,
                    ),
                    progress,
                )
            return

        by_id = {result.operation_id: result for result in results}
        for operation in operations:
            result = by_id.get(operation.id)
            if result is None:
                result = OperationResult(
                    operation_id=operation.id,
                    success=False,
                    error="No result returned for operation",
                    code=ErrorCodes.MISSING_RESULT,
                    recoverable=True,
                )
            self._settle(operation, result, progress)

    async def _execute_stream(self, operation: Operation, progress: BatchProgress) -> None:
        if operation.kind == OperationKind.TERMINAL:
            initial_message = f"Executing: {operation.payload}"
        else:
            initial_message = f"Processing {operation.kind.value} request..."

        task = asyncio.get_running_loop().create_task(
            self.streams.run_stream(
                operation.id,
                operation.kind,
                self.executor.execute_streaming(operation),
                initial_message,
            )
        )
        self._stream_tasks[operation.id] = task
        handle = self.registry.get(operation.id)
        if isinstance(handle, AbortableHandle):
            handle.task = task

        await asyncio.wait({task})
        self._stream_tasks.pop(operation.id, None)
        if task.cancelled():
            result = OperationResult(
                operation_id=operation.id,
                success=False,
                error="Operation cancelled",
                code=ErrorCodes.CANCELLED,
                recoverable=False,
            )
        else:
            result = task.result()
        self._settle(operation, result, progress, streaming=True)

    def _settle(
        self,
        operation: Operation,
        result: OperationResult,
        progress: BatchProgress,
        streaming: bool = False,
    ) -> None:
        """Decide the fate of one operation from its result."""
        self.registry.cleanup(operation.id)
        self._inflight.discard(operation.id)
        progress.current_operation = operation.id

        if operation.id in self._cancelled_inflight:
            self._cancelled_inflight.discard(operation.id)
            self._finish_cancelled(operation)
            progress.failed += 1
            return

        if result.success:
            self.tracker.complete(operation.id)
            self._operations.pop(operation.id, None)
            self._schedule_removal(operation.id)
            self._results.publish(result)
            progress.completed += 1
            logger.debug(f"Operation {operation.id} completed")
            return

        error = result.error or "Operation failed"
        recoverable = bool(result.recoverable)
        if not streaming and should_retry(
            operation.retry_count, operation.max_retries, recoverable
        ):
            self._schedule_retry(operation, error)
        else:
            self.tracker.fail(operation.id, error, recoverable)
            self._operations.pop(operation.id, None)
            self._results.publish(result)
            if recoverable and not streaming:
                logger.error(
                    f"Operation {operation.id} failed after "
                    f"{operation.retry_count} retries: {error}"
                )
            else:
                logger.error(f"Operation {operation.id} failed: {error}")
        progress.failed += 1

    def _schedule_retry(self, operation: Operation, error: str) -> None:
        operation.retry_count += 1
        delay = calculate_delay(operation.retry_count, self.retry_config)
        self.tracker.update(
            operation.id,
            0,
            f"Retry {operation.retry_count}/{operation.max_retries} in {delay:.1f}s: {error}",
        )
        self._retry_timers[operation.id] = asyncio.get_running_loop().call_later(
            delay, self._requeue, operation.id
        )
        logger.warning(
            f"Operation {operation.id} failed ({error}), retry "
            f"{operation.retry_count}/{operation.max_retries} in {delay:.1f}s"
        )
        self._retries.publish(
            RetryScheduled(
                operation_id=operation.id,
                retry_count=operation.retry_count,
                delay=delay,
                error=error,
            )
        )

    def _requeue(self, operation_id: str) -> None:
        if self._retry_timers.pop(operation_id, None) is None:
            return
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        self._queues[operation.priority].append(operation)
        self._ensure_processing(asyncio.get_running_loop())

    def _schedule_removal(self, operation_id: str) -> None:
        def remove() -> None:
            self._cleanup_timers.pop(operation_id, None)
            self.tracker.remove(operation_id)

        self._cleanup_timers[operation_id] = asyncio.get_running_loop().call_later(
            self.settings.completion_grace_seconds, remove
        )

    def _finish_cancelled(self, operation: Operation) -> None:
        self._operations.pop(operation.id, None)
        logger.info(f"Operation {operation.id} cancelled")
        self._results.publish(
            OperationResult(
                operation_id=operation.id,
                success=False,
                error="Operation cancelled",
                code=ErrorCodes.CANCELLED,
                recoverable=False,
            )
        )

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _batch_done(self, task: asyncio.Task) -> None:
        self._batch_tasks.discard(task)
        self._active_batches -= 1
        if not task.cancelled() and task.exception() is not None:
            self._set_fatal(task.exception())
        self._slot_freed.set()
        self._signal()

    def _processor_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._set_fatal(task.exception())
        self._signal()

    def _set_fatal(self, error: BaseException) -> None:
        logger.critical(
            f"Batch dispatcher internal failure: {error}",
            exc_info=(type(error), error, error.__traceback__),
        )
        if self._fatal is None:
            self._fatal = OrchestrationError(
                f"Batch dispatcher internal failure: {error}",
                details={"type": type(error).__name__},
            )
            self._fatal.__cause__ = error

    def _raise_if_fatal(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    def _signal(self) -> None:
        self._state_changed.set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError as e:
            raise OrchestrationError(
                "submit() must be called while an event loop is running"
            ) from e

    def _is_streaming(self, operation: Operation) -> bool:
        return (
            self.streams is not None
            and operation.kind.value in self.settings.streaming_kinds
            and self.executor.supports_streaming(operation.kind)
        )

    def _remove_queued(self, operation_id: str) -> Optional[Operation]:
        for tier in _TIERS:
            queue = self._queues[tier]
            for operation in queue:
                if operation.id == operation_id:
                    queue.remove(operation)
                    return operation
        return None

    def _queued_count(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def _is_idle(self) -> bool:
        return (
            not self._queued_count()
            and not self._retry_timers
            and self._active_batches == 0
            and not self._is_processing
        )
