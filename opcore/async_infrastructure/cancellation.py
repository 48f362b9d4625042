"""
opcore Cancellation Registry

Gives every actively executing operation a uniform way to be stopped,
regardless of how it runs.

Key Components:
- CancellationToken: Protocol for cooperative cancellation checking
- AsyncCancellationToken: Thread-safe token implementation
- CancellableHandle: Base for registry entries (abortable call, process, callback)
- CancellationRegistry: Tracks in-flight handles and cancels them on request

Cancellation is a request, not a guarantee: a handle may finish between the
request and its execution. "Not found" is therefore reported as an outcome,
never raised.
"""

import asyncio
import inspect
import os
import signal
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from opcore.async_infrastructure.events import EventChannel, Subscription
from opcore.config.settings import CancellationSettings, get_cancellation_settings
from opcore.errors.exceptions import CancellationError
from opcore.logging import get_logger
from opcore.models.operations import CancellationOutcome, HandleType

logger = get_logger(__name__)

CancelCallback = Callable[[], Union[None, Awaitable[None]]]


class CancellationToken(Protocol):
    """Protocol for cancellation tokens handed to executors."""

    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        ...

    def cancel(self, reason: str = "Operation cancelled") -> None:
        """Request cancellation with optional reason."""
        ...

    async def wait_for_cancellation(self) -> None:
        """Async wait for cancellation signal."""
        ...


class CancellationState:
    """Thread-safe cancellation flag with an awaitable signal."""

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._lock = threading.RLock()
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def cancel(self, reason: str = "Operation cancelled") -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            logger.debug(f"Operation cancelled: {reason}")

        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(self._event.set)
        except RuntimeError:
            # No running loop in this thread
            self._event.set()

    async def wait(self) -> None:
        if self.is_cancelled:
            return
        await self._event.wait()


class AsyncCancellationToken:
    """Thread-safe async cancellation token implementation."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        self._state = CancellationState()

    def is_cancelled(self) -> bool:
        return self._state.is_cancelled

    def cancel(self, reason: str = "Operation cancelled") -> None:
        self._state.cancel(reason)
        logger.debug(
            f"Cancellation requested for operation {self.operation_id}: {reason}"
        )

    async def wait_for_cancellation(self) -> None:
        await self._state.wait()

    def check_cancellation(self, context: str = "") -> None:
        """
        Check cancellation and raise exception if cancelled.

        Args:
            context: Optional context information for better error messages

        Raises:
            CancellationError: If operation has been cancelled
        """
        if self.is_cancelled():
            message_parts = [f"Operation {self.operation_id} cancelled"]
            if context:
                message_parts.append(f"at {context}")
            if self.reason:
                message_parts.append(f"({self.reason})")

            raise CancellationError(
                ": ".join(message_parts),
                operation_id=self.operation_id,
                reason=self.reason,
            )

    @property
    def reason(self) -> Optional[str]:
        return self._state.reason


class CancellableHandle(ABC):
    """
    A registered unit of work and how to stop it.

    Subclasses implement is_finished and _cancel; the registry invokes
    cancel() and the optional on_cancel callback.
    """

    def __init__(
        self,
        operation_id: str,
        handle_type: HandleType,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        self.operation_id = operation_id
        self.handle_type = handle_type
        self.on_cancel = on_cancel

    @property
    @abstractmethod
    def is_finished(self) -> bool:
        """True once the underlying work has ended on its own."""

    @abstractmethod
    async def _cancel(self, reason: str) -> None:
        """Stop the underlying work."""

    async def cancel(self, reason: str = "Operation cancelled") -> CancellationOutcome:
        if self.is_finished:
            return CancellationOutcome.ALREADY_FINISHED
        await self._cancel(reason)
        return CancellationOutcome.CANCELLED

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(operation_id={self.operation_id!r}, "
            f"type={self.handle_type.value})"
        )


class AbortableHandle(CancellableHandle):
    """
    An abortable in-flight call (network or AI request).

    Cancelling trips the token immediately and cancels the backing task,
    if one was given.
    """

    def __init__(
        self,
        operation_id: str,
        handle_type: HandleType,
        task: Optional[asyncio.Task] = None,
        token: Optional[AsyncCancellationToken] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        super().__init__(operation_id, handle_type, on_cancel)
        self.task = task
        self.token = token or AsyncCancellationToken(operation_id)

    @property
    def is_finished(self) -> bool:
        return self.task is not None and self.task.done()

    async def _cancel(self, reason: str) -> None:
        self.token.cancel(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel(reason)


class ProcessHandle(CancellableHandle):
    """
    A running OS process (terminal command).

    Cancelling sends SIGTERM right away; if the process is still alive
    after the grace period it receives SIGKILL. Escalation runs in the
    background so cancel() returns as soon as the first signal is sent.

    With ``process_group=True`` the process must lead its own session
    (``start_new_session=True``) and both signals go to the whole group,
    so children of a shell are stopped with it.
    """

    def __init__(
        self,
        operation_id: str,
        process: Any,
        grace_seconds: float = 5.0,
        on_cancel: Optional[Callable[[], None]] = None,
        process_group: bool = False,
    ):
        super().__init__(operation_id, HandleType.TERMINAL, on_cancel)
        self.process = process
        self.grace_seconds = grace_seconds
        self.terminated = False
        self.killed = False
        self.escalation: Optional[asyncio.Task] = None
        # Captured up front: the group outlives its leader
        self.pgid: Optional[int] = None
        if process_group and hasattr(os, "killpg"):
            try:
                self.pgid = os.getpgid(process.pid)
            except (ProcessLookupError, OSError):
                logger.debug(f"No process group for {operation_id}, signalling pid only")

    @property
    def is_finished(self) -> bool:
        if self.pgid is not None:
            return not self._group_alive()
        poll = getattr(self.process, "poll", None)
        if callable(poll):
            return poll() is not None
        return self.process.returncode is not None

    def _group_alive(self) -> bool:
        try:
            os.killpg(self.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _send(self, forceful: bool) -> None:
        if self.pgid is not None:
            os.killpg(self.pgid, signal.SIGKILL if forceful else signal.SIGTERM)
        elif forceful:
            self.process.kill()
        else:
            self.process.terminate()

    async def _cancel(self, reason: str) -> None:
        try:
            self._send(forceful=False)
        except ProcessLookupError:
            logger.debug(f"Process for {self.operation_id} exited before SIGTERM")
            return

        self.terminated = True
        target = f"group {self.pgid}" if self.pgid is not None else "process"
        logger.info(
            f"Sent SIGTERM to {target} of {self.operation_id} "
            f"(pid={getattr(self.process, 'pid', '?')}): {reason}"
        )
        self.escalation = asyncio.create_task(self._escalate())

    async def _wait_exit(self) -> None:
        wait = getattr(self.process, "wait", None)
        if self.pgid is None and wait is not None and inspect.iscoroutinefunction(wait):
            await wait()
            return
        while not self.is_finished:
            await asyncio.sleep(0.05)

    async def _escalate(self) -> None:
        try:
            await asyncio.wait_for(self._wait_exit(), timeout=self.grace_seconds)
            return
        except asyncio.TimeoutError:
            pass

        if self.is_finished:
            return

        logger.warning(
            f"Process of {self.operation_id} still alive after "
            f"{self.grace_seconds}s, sending SIGKILL"
        )
        try:
            self._send(forceful=True)
            self.killed = True
        except ProcessLookupError:
            logger.debug(f"Process for {self.operation_id} exited before SIGKILL")


class CallbackHandle(CancellableHandle):
    """A handle whose cancellation is an arbitrary sync or async callable."""

    def __init__(
        self,
        operation_id: str,
        handle_type: HandleType,
        cancel_callback: CancelCallback,
        is_finished: Optional[Callable[[], bool]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        super().__init__(operation_id, handle_type, on_cancel)
        self._cancel_callback = cancel_callback
        self._is_finished = is_finished

    @property
    def is_finished(self) -> bool:
        return bool(self._is_finished and self._is_finished())

    async def _cancel(self, reason: str) -> None:
        result = self._cancel_callback()
        if inspect.isawaitable(result):
            await result


class CancellationRegistry:
    """
    Tracks in-flight cancellable work and stops it on request.

    Handles are registered when an operation begins executing and removed
    when cancellation completes or the operation finishes naturally.
    """

    def __init__(self, settings: Optional[CancellationSettings] = None):
        self.settings = settings or get_cancellation_settings()
        self._handles: dict[str, CancellableHandle] = {}
        self._lock = threading.RLock()
        self._cancelled = EventChannel[str]("cancellation")
        logger.debug("CancellationRegistry initialized")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, handle: CancellableHandle) -> str:
        """Record a cancellable unit, replacing any handle with the same id."""
        with self._lock:
            replaced = self._handles.get(handle.operation_id)
            self._handles[handle.operation_id] = handle

        if replaced is not None and replaced is not handle:
            logger.debug(f"Replaced {replaced!r} with {handle!r}")
        else:
            logger.debug(f"Registered {handle!r}")
        return handle.operation_id

    def create_abortable(
        self,
        operation_id: str,
        handle_type: HandleType,
        task: Optional[asyncio.Task] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> AbortableHandle:
        """Register an abortable call and return its handle (token inside)."""
        handle = AbortableHandle(operation_id, handle_type, task=task, on_cancel=on_cancel)
        self.register(handle)
        return handle

    def create_process_handle(
        self,
        operation_id: str,
        process: Any,
        on_cancel: Optional[Callable[[], None]] = None,
        process_group: bool = False,
    ) -> ProcessHandle:
        """Register a running process with the configured termination grace."""
        handle = ProcessHandle(
            operation_id,
            process,
            grace_seconds=self.settings.termination_grace_seconds,
            on_cancel=on_cancel,
            process_group=process_group,
        )
        self.register(handle)
        return handle

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def request_cancellation(
        self, operation_id: str, reason: str = "Operation cancelled"
    ) -> CancellationOutcome:
        """
        Cancel one operation and report what happened.

        Returns:
            CANCELLED when the handle was stopped, ALREADY_FINISHED when it
            had ended on its own, NOT_FOUND when nothing is registered and
            FAILED when the handle raised (it stays registered).
        """
        with self._lock:
            handle = self._handles.pop(operation_id, None)

        if handle is None:
            logger.debug(f"Operation {operation_id} not found for cancellation")
            return CancellationOutcome.NOT_FOUND

        try:
            outcome = await handle.cancel(reason)
        except Exception as e:
            logger.error(f"Failed to cancel operation {operation_id}: {e}")
            with self._lock:
                self._handles.setdefault(operation_id, handle)
            return CancellationOutcome.FAILED

        if outcome == CancellationOutcome.CANCELLED:
            logger.info(f"Cancelled operation {operation_id}: {reason}")
            if handle.on_cancel is not None:
                try:
                    handle.on_cancel()
                except Exception as e:
                    logger.warning(f"on_cancel callback for {operation_id} failed: {e}")
            self._cancelled.publish(operation_id)
        else:
            logger.debug(f"Operation {operation_id} had already finished")

        return outcome

    async def cancel(
        self, operation_id: str, reason: str = "Operation cancelled"
    ) -> bool:
        """Cancel one operation. True only if a live handle was stopped."""
        outcome = await self.request_cancellation(operation_id, reason)
        return outcome == CancellationOutcome.CANCELLED

    async def cancel_by_type(
        self, handle_type: HandleType, reason: str = "Operation cancelled"
    ) -> int:
        """Cancel every handle of a type; failures do not stop the rest."""
        ids = [handle.operation_id for handle in self.by_type(handle_type)]
        return await self._cancel_many(ids, reason)

    async def cancel_all(self, reason: str = "All operations cancelled") -> int:
        """Cancel every registered handle; failures do not stop the rest."""
        with self._lock:
            ids = list(self._handles)
        cancelled = await self._cancel_many(ids, reason)
        if ids:
            logger.info(f"Cancelled {cancelled}/{len(ids)} registered operations")
        return cancelled

    async def _cancel_many(self, operation_ids: list[str], reason: str) -> int:
        cancelled = 0
        for operation_id in operation_ids:
            if await self.cancel(operation_id, reason):
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._handles

    def get(self, operation_id: str) -> Optional[CancellableHandle]:
        with self._lock:
            return self._handles.get(operation_id)

    def all(self) -> list[CancellableHandle]:
        with self._lock:
            return list(self._handles.values())

    def by_type(self, handle_type: HandleType) -> list[CancellableHandle]:
        with self._lock:
            return [h for h in self._handles.values() if h.handle_type == handle_type]

    def cleanup(self, operation_id: str) -> None:
        """Forget a handle whose operation finished naturally."""
        with self._lock:
            if self._handles.pop(operation_id, None) is not None:
                logger.debug(f"Cleaned up handle for operation {operation_id}")

    def on_cancelled(self, callback: Callable[[str], None]) -> Subscription:
        """Subscribe to ids of successfully cancelled operations."""
        return self._cancelled.subscribe(callback)

    def status(self) -> dict[str, Any]:
        """Registry status for monitoring and debugging."""
        with self._lock:
            by_type: dict[str, int] = {}
            for handle in self._handles.values():
                by_type[handle.handle_type.value] = (
                    by_type.get(handle.handle_type.value, 0) + 1
                )
            return {
                "active_operations": len(self._handles),
                "by_type": by_type,
                "operations": list(self._handles),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


def install_interrupt_handler(
    registry: CancellationRegistry,
    loop: asyncio.AbstractEventLoop,
    on_interrupt: Optional[Callable[[], Any]] = None,
) -> None:
    """
    Cancel everything in the registry on Ctrl+C.

    Used by the CLI so an interrupted run terminates its child processes
    instead of leaving them behind. ``on_interrupt`` runs on the loop first,
    e.g. to drain a dispatcher queue.
    """

    def handle_interrupt(signum, frame):
        logger.info("KeyboardInterrupt received, cancelling all operations...")
        if on_interrupt is not None:
            loop.call_soon_threadsafe(on_interrupt)
        loop.call_soon_threadsafe(
            lambda: asyncio.ensure_future(
                registry.cancel_all("User requested cancellation (Ctrl+C)")
            )
        )

    signal.signal(signal.SIGINT, handle_interrupt)
    logger.debug("Interrupt handler registered for cancellation registry")
