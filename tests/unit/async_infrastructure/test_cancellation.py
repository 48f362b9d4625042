"""
Tests for the cancellation registry, its handles and cancellation tokens.

Tests cover:
- Cooperative cancellation tokens
- Cancellation outcomes (cancelled, already finished, not found, failed)
- Idempotent cancellation
- Best-effort bulk cancellation
- Graceful-then-forceful process termination
"""

import asyncio
import signal
import sys

import pytest

from opcore.async_infrastructure.cancellation import (
    AbortableHandle,
    AsyncCancellationToken,
    CallbackHandle,
    CancellationRegistry,
    ProcessHandle,
)
from opcore.config.settings import CancellationSettings
from opcore.errors import CancellationError
from opcore.models.operations import CancellationOutcome, HandleType


class TestAsyncCancellationToken:
    """Test the cooperative cancellation token."""

    def test_token_starts_uncancelled(self):
        token = AsyncCancellationToken("op_1")
        assert not token.is_cancelled()
        assert token.reason is None

    def test_cancel_records_reason_once(self):
        """The first reason wins; later cancels are no-ops."""
        token = AsyncCancellationToken("op_1")
        token.cancel("user request")
        token.cancel("second request")

        assert token.is_cancelled()
        assert token.reason == "user request"

    def test_check_cancellation_raises_with_context(self):
        token = AsyncCancellationToken("op_1")
        token.check_cancellation("before upload")

        token.cancel("stop")
        with pytest.raises(CancellationError) as exc_info:
            token.check_cancellation("during upload")

        assert exc_info.value.operation_id == "op_1"
        assert "during upload" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_wait_for_cancellation_resumes_after_cancel(self):
        token = AsyncCancellationToken("op_1")
        waiter = asyncio.create_task(token.wait_for_cancellation())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()
        await asyncio.wait_for(waiter, timeout=1.0)


class TestRegistryCancel:
    """Test single-operation cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_twice_returns_true_then_false(self, registry):
        """Cancelling the same operation twice reports true then false."""
        handle = registry.create_abortable("op_1", HandleType.FILESYSTEM)

        assert await registry.cancel("op_1") is True
        assert await registry.cancel("op_1") is False
        assert handle.token.is_cancelled()
        assert not registry.has("op_1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_id_returns_false(self, registry):
        assert await registry.cancel("missing") is False
        outcome = await registry.request_cancellation("missing")
        assert outcome == CancellationOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_abortable_handle_cancels_backing_task(self, registry):
        task = asyncio.create_task(asyncio.sleep(10))
        registry.create_abortable("op_ai", HandleType.AI_REQUEST, task=task)

        assert await registry.cancel("op_ai")
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_finished_task_reports_already_finished(self, registry):
        """A handle that finished on its own is not reported as cancelled."""
        task = asyncio.create_task(asyncio.sleep(0))
        await task
        registry.create_abortable("op_done", HandleType.AI_REQUEST, task=task)

        outcome = await registry.request_cancellation("op_done")

        assert outcome == CancellationOutcome.ALREADY_FINISHED
        assert not registry.has("op_done")

    @pytest.mark.asyncio
    async def test_failing_handle_reports_failed_and_stays_registered(self, registry):
        def explode():
            raise RuntimeError("cannot stop")

        registry.register(CallbackHandle("op_bad", HandleType.FILESYSTEM, explode))

        outcome = await registry.request_cancellation("op_bad")

        assert outcome == CancellationOutcome.FAILED
        assert registry.has("op_bad")

    @pytest.mark.asyncio
    async def test_async_callback_handle_is_awaited(self, registry):
        calls = []

        async def stop():
            await asyncio.sleep(0)
            calls.append("stopped")

        registry.register(CallbackHandle("op_cb", HandleType.FILESYSTEM, stop))

        assert await registry.cancel("op_cb")
        assert calls == ["stopped"]

    @pytest.mark.asyncio
    async def test_on_cancel_callback_and_event(self, registry):
        """Successful cancels run on_cancel and publish the operation id."""
        callbacks = []
        events = []
        registry.on_cancelled(events.append)
        registry.create_abortable(
            "op_1", HandleType.FILESYSTEM, on_cancel=lambda: callbacks.append("op_1")
        )

        await registry.cancel("op_1")
        await registry.cancel("op_1")

        assert callbacks == ["op_1"]
        assert events == ["op_1"]

    def test_register_replaces_handle_for_same_id(self, registry):
        first = registry.create_abortable("op_1", HandleType.TERMINAL)
        second = AbortableHandle("op_1", HandleType.TERMINAL)

        registry.register(second)

        assert registry.get("op_1") is second
        assert registry.get("op_1") is not first
        assert len(registry) == 1

    def test_cleanup_forgets_handle(self, registry):
        registry.create_abortable("op_1", HandleType.FILESYSTEM)
        registry.cleanup("op_1")
        registry.cleanup("op_1")
        assert not registry.has("op_1")


class TestRegistryBulkCancel:
    """Test cancel_by_type and cancel_all."""

    @pytest.mark.asyncio
    async def test_cancel_by_type_only_touches_that_type(self, registry):
        registry.create_abortable("fs_1", HandleType.FILESYSTEM)
        registry.create_abortable("fs_2", HandleType.FILESYSTEM)
        registry.create_abortable("ai_1", HandleType.AI_REQUEST)

        count = await registry.cancel_by_type(HandleType.FILESYSTEM)

        assert count == 2
        assert [h.operation_id for h in registry.all()] == ["ai_1"]

    @pytest.mark.asyncio
    async def test_cancel_all_is_best_effort(self, registry):
        """A failing handle does not stop the remaining cancellations."""

        def explode():
            raise RuntimeError("stuck")

        registry.create_abortable("op_1", HandleType.FILESYSTEM)
        registry.register(CallbackHandle("op_2", HandleType.TERMINAL, explode))
        registry.create_abortable("op_3", HandleType.AI_REQUEST)

        count = await registry.cancel_all()

        assert count == 2
        assert [h.operation_id for h in registry.all()] == ["op_2"]

    @pytest.mark.asyncio
    async def test_cancel_all_on_empty_registry(self, registry):
        assert await registry.cancel_all() == 0

    def test_status_counts_by_type(self, registry):
        registry.create_abortable("fs_1", HandleType.FILESYSTEM)
        registry.create_abortable("ai_1", HandleType.AI_REQUEST)

        status = registry.status()

        assert status["active_operations"] == 2
        assert status["by_type"] == {"filesystem": 1, "ai_request": 1}
        assert len(registry.by_type(HandleType.AI_REQUEST)) == 1


class TestProcessHandle:
    """Test graceful-then-forceful process termination."""

    @pytest.mark.asyncio
    async def test_sigterm_sent_immediately(self, registry, fake_process_factory):
        process = fake_process_factory(exits_on_terminate=True)
        handle = registry.create_process_handle("term_1", process)

        assert await registry.cancel("term_1")
        assert process.signals == [signal.SIGTERM]

        await handle.escalation
        assert process.signals == [signal.SIGTERM]
        assert not handle.killed

    @pytest.mark.asyncio
    async def test_sigkill_after_grace_period(self, registry, fake_process_factory):
        """A process ignoring SIGTERM is killed once the grace period ends."""
        process = fake_process_factory(exits_on_terminate=False)
        handle = registry.create_process_handle("term_1", process)

        assert await registry.cancel("term_1")
        assert process.signals == [signal.SIGTERM]

        await asyncio.wait_for(handle.escalation, timeout=2.0)
        assert process.signals == [signal.SIGTERM, signal.SIGKILL]
        assert handle.killed
        assert handle.is_finished

    @pytest.mark.asyncio
    async def test_grace_period_comes_from_settings(self, fake_process_factory):
        registry = CancellationRegistry(
            CancellationSettings(termination_grace_seconds=3.5)
        )
        handle = registry.create_process_handle("term_1", fake_process_factory())
        assert isinstance(handle, ProcessHandle)
        assert handle.grace_seconds == 3.5
        assert handle.handle_type == HandleType.TERMINAL

    @pytest.mark.asyncio
    async def test_exited_process_is_already_finished(self, registry, fake_process_factory):
        process = fake_process_factory()
        process.returncode = 0
        registry.create_process_handle("term_1", process)

        outcome = await registry.request_cancellation("term_1")

        assert outcome == CancellationOutcome.ALREADY_FINISHED
        assert process.signals == []

    @pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
    @pytest.mark.asyncio
    async def test_process_group_receives_both_signals(
        self, registry, fake_process_factory, monkeypatch
    ):
        """Group mode signals every process of the session, not just the leader."""
        sent = []
        group_alive = [True]

        def fake_killpg(pgid, sig):
            if sig == 0:
                if not group_alive[0]:
                    raise ProcessLookupError(pgid)
                return
            sent.append((pgid, sig))
            if sig == signal.SIGKILL:
                group_alive[0] = False

        monkeypatch.setattr(
            "opcore.async_infrastructure.cancellation.os.getpgid", lambda pid: pid
        )
        monkeypatch.setattr("opcore.async_infrastructure.cancellation.os.killpg", fake_killpg)
        process = fake_process_factory(exits_on_terminate=False)
        # The shell leader has exited but a child it started is still running
        process.returncode = 0
        handle = registry.create_process_handle("term_1", process, process_group=True)

        assert handle.pgid == process.pid
        assert not handle.is_finished
        assert await registry.cancel("term_1")
        await asyncio.wait_for(handle.escalation, timeout=2.0)

        assert sent == [(process.pid, signal.SIGTERM), (process.pid, signal.SIGKILL)]
        assert process.signals == []
        assert handle.killed
        assert handle.is_finished
