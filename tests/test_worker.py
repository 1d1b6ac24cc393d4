"""Tests for the worker's start and wait_complete handlers."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from branchd.errors import AnonymizationError, ConfigurationError, RestoreFailedError
from branchd.restore.orchestrator import StartOutcome
from branchd.restore.status import RestoreStatus
from branchd.tasks.queue import Task, TaskKind
from branchd.tasks.worker import Worker


@pytest.fixture
def queue() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def orchestrator() -> AsyncMock:
    orchestrator = AsyncMock()
    orchestrator.start.return_value = StartOutcome.LAUNCHED
    orchestrator.poll.return_value = RestoreStatus.RUNNING
    return orchestrator


@pytest.fixture
def worker(queue, orchestrator, settings) -> Worker:
    return Worker(queue, orchestrator, settings, idle_sleep=0.01)


def _start(restore_id: str = "r1") -> Task:
    return Task(restore_id=restore_id, kind=TaskKind.START)


def _wait(attempt: int = 0, restore_id: str = "r1") -> Task:
    return Task(restore_id=restore_id, attempt=attempt, kind=TaskKind.WAIT_COMPLETE)


# ============================================================================
# restore:start
# ============================================================================


class TestStartTask:
    """A start task launches and schedules the first poll."""

    async def test_schedules_monitoring(self, worker, queue, orchestrator) -> None:
        assert await worker.process(_start()) is True
        orchestrator.start.assert_awaited_once_with("r1")
        queue.enqueue.assert_awaited_once_with(TaskKind.WAIT_COMPLETE, "r1", delay=5)

    async def test_already_running_still_schedules_monitoring(
        self, worker, queue, orchestrator
    ) -> None:
        orchestrator.start.return_value = StartOutcome.ALREADY_RUNNING
        assert await worker.process(_start()) is True
        queue.enqueue.assert_awaited_once_with(TaskKind.WAIT_COMPLETE, "r1", delay=5)

    async def test_failure_is_dead_lettered(self, worker, queue, orchestrator) -> None:
        orchestrator.start.side_effect = ConfigurationError("configuration not found")
        assert await worker.process(_start()) is False
        queue.dead_letter.assert_awaited_once_with(_start(), "configuration not found")
        queue.enqueue.assert_not_awaited()

    async def test_trigger_timeout(self, worker, queue, orchestrator, settings) -> None:
        worker.settings = settings.model_copy(update={"trigger_timeout_seconds": 0.01})

        async def slow(restore_id):
            await asyncio.sleep(1)

        orchestrator.start.side_effect = slow
        assert await worker.process(_start()) is False
        error = queue.dead_letter.await_args.args[1]
        assert error.startswith("timed out")

    async def test_unexpected_error_is_dead_lettered(self, worker, queue, orchestrator) -> None:
        orchestrator.start.side_effect = RuntimeError("bug")
        assert await worker.process(_start()) is False
        assert queue.dead_letter.await_args.args[1] == "RuntimeError: bug"


# ============================================================================
# restore:wait_complete
# ============================================================================


class TestWaitCompleteTask:
    """A wait task polls once and re-enqueues itself while running."""

    async def test_running_reenqueues_with_next_attempt(self, worker, queue) -> None:
        assert await worker.process(_wait(attempt=0)) is True
        queue.enqueue.assert_awaited_once_with(TaskKind.WAIT_COMPLETE, "r1", delay=5, attempt=1)

    async def test_gives_up_after_max_polls(self, worker, queue) -> None:
        await worker.process(_wait(attempt=2))
        queue.enqueue.assert_not_awaited()
        assert "after 3 polls" in queue.dead_letter.await_args.args[1]

    async def test_success_stops_polling(self, worker, queue, orchestrator) -> None:
        orchestrator.poll.return_value = RestoreStatus.SUCCESS
        assert await worker.process(_wait()) is True
        queue.enqueue.assert_not_awaited()
        queue.dead_letter.assert_not_awaited()

    async def test_failed_restore_is_dead_lettered(self, worker, queue, orchestrator) -> None:
        orchestrator.poll.side_effect = RestoreFailedError("restore_a", "failed", "tail")
        assert await worker.process(_wait()) is False
        assert "restore_a ended with status failed" in queue.dead_letter.await_args.args[1]
        queue.enqueue.assert_not_awaited()

    async def test_failed_restore_keeps_log_tail(self, worker, queue, orchestrator) -> None:
        orchestrator.poll.side_effect = RestoreFailedError("restore_a", "failed", "ERROR: disk full")
        await worker.process(_wait())
        assert queue.dead_letter.await_args.kwargs["log_tail"] == "ERROR: disk full"

    async def test_completion_failure_is_retried(self, worker, queue, orchestrator) -> None:
        orchestrator.poll.side_effect = AnonymizationError("failed to apply anonymization rules")
        assert await worker.process(_wait(attempt=1)) is True
        queue.enqueue.assert_awaited_once_with(TaskKind.WAIT_COMPLETE, "r1", delay=5, attempt=2)
        queue.dead_letter.assert_not_awaited()

    async def test_completion_failure_gives_up_after_max_polls(
        self, worker, queue, orchestrator
    ) -> None:
        orchestrator.poll.side_effect = AnonymizationError("failed to apply anonymization rules")
        await worker.process(_wait(attempt=2))
        queue.enqueue.assert_not_awaited()
        error = queue.dead_letter.await_args.args[1]
        assert "completion still failing" in error
        assert "after 3 polls" in error


# ============================================================================
# Loop
# ============================================================================


class TestLoop:
    async def test_run_once_processes_claimed_tasks(self, worker, queue, orchestrator) -> None:
        queue.claim_due.return_value = [_start("r1"), _start("r2")]
        assert await worker.run_once() == 2
        assert orchestrator.start.await_count == 2

    async def test_run_stops(self, worker, queue) -> None:
        queue.claim_due.return_value = []
        runner = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        worker.stop()
        await asyncio.wait_for(runner, timeout=1)
        assert queue.claim_due.await_count >= 1
