"""
Composition of the orchestration services.

The four services are constructed explicitly and passed to each other by
reference, so any number of independent cores can coexist (one per test,
one per CLI invocation).
"""

from typing import Optional

from opcore.async_infrastructure.cancellation import CancellationRegistry
from opcore.async_infrastructure.dispatcher import BatchDispatcher
from opcore.async_infrastructure.progress import ProgressTracker
from opcore.async_infrastructure.streaming import StreamCoordinator
from opcore.config.settings import (
    CancellationSettings,
    DispatcherSettings,
    ExecutorSettings,
    StreamingSettings,
)
from opcore.errors.handler import ErrorHandler
from opcore.executors.base import Executor
from opcore.executors.http import HttpExecutor
from opcore.executors.terminal import TerminalExecutor
from opcore.logging import get_logger
from opcore.models.operations import Operation

logger = get_logger(__name__)


class OrchestrationCore:
    """
    Cancellation registry, progress tracker, stream coordinator and batch
    dispatcher wired around one executor.

    Usable as an async context manager; leaving the context shuts the core
    down and closes the executor.
    """

    def __init__(
        self,
        executor: Executor,
        registry: Optional[CancellationRegistry] = None,
        dispatcher_settings: Optional[DispatcherSettings] = None,
        cancellation_settings: Optional[CancellationSettings] = None,
        streaming_settings: Optional[StreamingSettings] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.executor = executor
        self.error_handler = error_handler or ErrorHandler()
        self.registry = registry or CancellationRegistry(cancellation_settings)
        self.tracker = ProgressTracker()
        self.streams = StreamCoordinator(
            self.tracker, streaming_settings, self.error_handler
        )
        self.dispatcher = BatchDispatcher(
            executor,
            self.tracker,
            self.registry,
            streams=self.streams,
            settings=dispatcher_settings,
            error_handler=self.error_handler,
        )

    def submit(self, operation: Operation) -> str:
        return self.dispatcher.submit(operation)

    def submit_many(self, operations: list[Operation]) -> list[str]:
        return self.dispatcher.submit_many(operations)

    async def cancel(self, operation_id: str) -> bool:
        return await self.dispatcher.cancel(operation_id)

    async def join(self) -> None:
        await self.dispatcher.join()

    async def shutdown(self) -> None:
        """Cancel outstanding work, stop the services and close the executor."""
        await self.dispatcher.shutdown()
        self.streams.shutdown()
        await self.executor.close()

    async def __aenter__(self) -> "OrchestrationCore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


def create_core(
    local: bool = False,
    executor_settings: Optional[ExecutorSettings] = None,
    dispatcher_settings: Optional[DispatcherSettings] = None,
    cancellation_settings: Optional[CancellationSettings] = None,
    streaming_settings: Optional[StreamingSettings] = None,
) -> OrchestrationCore:
    """
    Build a core around the default executor.

    Args:
        local: Run terminal operations in local subprocesses instead of
            calling the sandbox HTTP API
    """
    registry = CancellationRegistry(cancellation_settings)
    if local:
        executor: Executor = TerminalExecutor(registry=registry)
    else:
        executor = HttpExecutor(executor_settings)

    logger.debug(f"Creating orchestration core with {type(executor).__name__}")
    return OrchestrationCore(
        executor,
        registry=registry,
        dispatcher_settings=dispatcher_settings,
        streaming_settings=streaming_settings,
    )
