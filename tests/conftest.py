"""
Global test fixtures for opcore.

Services are built with shortened delays so retry, grace and cleanup
timers elapse within a test.
"""

import asyncio
import signal
from typing import Callable, Optional

import pytest

from opcore.async_infrastructure.cancellation import CancellationRegistry
from opcore.async_infrastructure.progress import ProgressTracker
from opcore.async_infrastructure.streaming import StreamCoordinator
from opcore.config.settings import (
    CancellationSettings,
    DispatcherSettings,
    StreamingSettings,
    clear_settings_cache,
)
from opcore.executors.base import Executor
from opcore.models.operations import (
    Operation,
    OperationKind,
    OperationPriority,
    OperationResult,
    StreamChunk,
)


class FakeExecutor(Executor):
    """
    In-memory executor recording every batch it receives.

    ``handler`` maps an operation to its result; raising from it fails the
    whole batch call. ``gate`` (an asyncio.Event) holds batches in flight
    until it is set.
    """

    def __init__(
        self,
        handler: Optional[Callable[[Operation], OperationResult]] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
        streams: Optional[dict[str, list[StreamChunk]]] = None,
    ):
        self.handler = handler
        self.delay = delay
        self.gate = gate
        self.streams = streams or {}
        self.batches: list[list[Operation]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def execute_batch(self, operations: list[Operation]) -> list[OperationResult]:
        self.batches.append(list(operations))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            return [self._result(op) for op in operations]
        finally:
            self.in_flight -= 1

    def _result(self, operation: Operation) -> OperationResult:
        if self.handler is not None:
            return self.handler(operation)
        return OperationResult(operation_id=operation.id, success=True, data=operation.target)

    def supports_streaming(self, kind: OperationKind) -> bool:
        return kind == OperationKind.AI_REQUEST

    async def execute_streaming(self, operation: Operation):
        for chunk in self.streams.get(operation.id, []):
            if self.gate is not None:
                await self.gate.wait()
            yield chunk

    async def close(self) -> None:
        self.closed = True

    @property
    def dispatched_ids(self) -> list[list[str]]:
        return [[op.id for op in batch] for batch in self.batches]


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process that records signals."""

    def __init__(self, exits_on_terminate: bool = True):
        self.pid = 4242
        self.returncode: Optional[int] = None
        self.signals: list[int] = []
        self.exits_on_terminate = exits_on_terminate
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.signals.append(signal.SIGTERM)
        if self.exits_on_terminate:
            self._finish(-signal.SIGTERM)

    def kill(self) -> None:
        self.signals.append(signal.SIGKILL)
        self._finish(-signal.SIGKILL)

    def _finish(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are cached per process; isolate every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def dispatcher_settings() -> DispatcherSettings:
    return DispatcherSettings(
        batch_size=10,
        max_concurrent_batches=3,
        processing_delay_seconds=0.0,
        completion_grace_seconds=0.05,
        default_max_retries=3,
        backoff_base_seconds=0.01,
        backoff_factor=2.0,
        max_backoff_seconds=1.0,
    )


@pytest.fixture
def cancellation_settings() -> CancellationSettings:
    return CancellationSettings(termination_grace_seconds=0.1)


@pytest.fixture
def streaming_settings() -> StreamingSettings:
    return StreamingSettings(cleanup_delay_seconds=0.05)


@pytest.fixture
def tracker() -> ProgressTracker:
    return ProgressTracker()


@pytest.fixture
def registry(cancellation_settings) -> CancellationRegistry:
    return CancellationRegistry(cancellation_settings)


@pytest.fixture
def streams(tracker, streaming_settings) -> StreamCoordinator:
    return StreamCoordinator(tracker, streaming_settings)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_operation() -> Callable[..., Operation]:
    """Factory for write operations with readable targets."""

    def _make(
        target: str = "src/app.py",
        priority: OperationPriority = OperationPriority.NORMAL,
        kind: OperationKind = OperationKind.WRITE,
        **kwargs,
    ) -> Operation:
        return Operation(kind=kind, target=target, priority=priority, **kwargs)

    return _make


@pytest.fixture
def fake_process_factory() -> Callable[..., FakeProcess]:
    return FakeProcess
