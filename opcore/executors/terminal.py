"""
Local terminal executor.

Runs ``terminal`` operations as shell commands in a subprocess. Every
running process is registered with the cancellation registry so a cancel
request terminates it (SIGTERM, then SIGKILL after the grace period).
Each command runs in its own session so the signals reach every process
the shell started.
"""

import asyncio
import time
from typing import AsyncIterator, Optional

from opcore.async_infrastructure.cancellation import CancellationRegistry
from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import ExecutorError
from opcore.executors.base import Executor
from opcore.logging import get_logger
from opcore.models.operations import (
    Operation,
    OperationKind,
    OperationResult,
    StreamChunk,
    StreamChunkType,
)

logger = get_logger(__name__)


class TerminalExecutor(Executor):
    """Executes terminal operations with asyncio subprocesses."""

    def __init__(
        self,
        registry: Optional[CancellationRegistry] = None,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.registry = registry
        self.cwd = cwd
        self.env = env

    async def execute_batch(self, operations: list[Operation]) -> list[OperationResult]:
        return list(await asyncio.gather(*(self._run(op) for op in operations)))

    def supports_streaming(self, kind: OperationKind) -> bool:
        return kind == OperationKind.TERMINAL

    async def _spawn(self, operation: Operation) -> asyncio.subprocess.Process:
        process = await asyncio.create_subprocess_shell(
            str(operation.payload),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
            start_new_session=True,
        )
        logger.debug(f"Started process {process.pid} for {operation.id}")
        if self.registry is not None:
            self.registry.create_process_handle(
                operation.id, process, process_group=True
            )
        return process

    async def _run(self, operation: Operation) -> OperationResult:
        started = time.monotonic()
        if operation.kind != OperationKind.TERMINAL:
            return OperationResult(
                operation_id=operation.id,
                success=False,
                error=f"Terminal executor cannot run {operation.kind.value} operations",
                code=ErrorCodes.UNSUPPORTED_OPERATION,
                recoverable=False,
            )

        try:
            process = await self._spawn(operation)
        except OSError as e:
            raise ExecutorError(
                f"Failed to start command for {operation.id}: {e}",
                error_code=ErrorCodes.COMMAND_FAILED,
            ) from e

        stdout, stderr = await process.communicate()
        duration = time.monotonic() - started
        output = stdout.decode(errors="replace")

        if process.returncode == 0:
            return OperationResult(
                operation_id=operation.id, success=True, data=output, duration=duration
            )

        error_text = stderr.decode(errors="replace").strip()
        return OperationResult(
            operation_id=operation.id,
            success=False,
            data=output or None,
            error=error_text or f"Command exited with status {process.returncode}",
            code=ErrorCodes.COMMAND_FAILED,
            recoverable=False,
            duration=duration,
        )

    async def execute_streaming(self, operation: Operation) -> AsyncIterator[StreamChunk]:
        if operation.kind != OperationKind.TERMINAL:
            raise ExecutorError(
                f"Terminal executor cannot stream {operation.kind.value} operations",
                error_code=ErrorCodes.UNSUPPORTED_OPERATION,
            )

        process = await self._spawn(operation)
        queue: asyncio.Queue = asyncio.Queue()

        async def pump(stream: asyncio.StreamReader, chunk_type: StreamChunkType) -> None:
            async for line in stream:
                await queue.put(
                    StreamChunk(type=chunk_type, data=line.decode(errors="replace"))
                )

        pumps = [
            asyncio.create_task(pump(process.stdout, StreamChunkType.STDOUT)),
            asyncio.create_task(pump(process.stderr, StreamChunkType.STDERR)),
        ]
        all_pumped = asyncio.gather(*pumps)
        all_pumped.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk

            returncode = await process.wait()
            if returncode == 0:
                yield StreamChunk(
                    type=StreamChunkType.COMPLETION,
                    data="Command completed successfully",
                    metadata={"exit_code": returncode},
                )
            else:
                yield StreamChunk(
                    type=StreamChunkType.ERROR,
                    data=f"Command exited with status {returncode}",
                    metadata={"code": ErrorCodes.COMMAND_FAILED, "exit_code": returncode},
                )
        finally:
            for task in pumps:
                task.cancel()
