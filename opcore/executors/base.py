"""
Executor interface consumed by the orchestration core.

The core does not know how a file write or terminal command is carried
out: it hands batches of operations to an Executor and receives one
OperationResult per operation, or for streaming kinds an async sequence of
StreamChunk objects.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import ExecutorError
from opcore.models.operations import Operation, OperationKind, OperationResult, StreamChunk


class Executor(ABC):
    """
    Abstract external executor.

    Subclasses implement execute_batch and, for kinds they can stream,
    execute_streaming together with supports_streaming.
    """

    @abstractmethod
    async def execute_batch(self, operations: list[Operation]) -> list[OperationResult]:
        """
        Execute a batch of operations.

        Args:
            operations: Operations in dispatch order

        Returns:
            One result per operation; a missing result is treated by the
            dispatcher as a recoverable failure

        Raises:
            ExecutorError: If the executor call itself fails
        """

    def supports_streaming(self, kind: OperationKind) -> bool:
        """Whether execute_streaming can run operations of this kind."""
        return False

    def execute_streaming(self, operation: Operation) -> AsyncIterator[StreamChunk]:
        """Execute one operation and yield its output chunks in order."""
        raise ExecutorError(
            f"Streaming is not supported for {operation.kind.value} operations",
            error_code=ErrorCodes.UNSUPPORTED_OPERATION,
        )

    async def close(self) -> None:
        """Release executor resources."""

    async def __aenter__(self) -> "Executor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
