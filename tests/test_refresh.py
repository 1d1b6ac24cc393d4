"""Tests for the cron-driven refresh scheduler."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from branchd.refresh import RefreshScheduler
from branchd.tasks.queue import TaskKind

NOW = datetime(2025, 9, 15, 12, 30, tzinfo=timezone.utc)
NEXT_HOUR = datetime(2025, 9, 15, 13, 0, tzinfo=timezone.utc)


@pytest.fixture
def queue() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def scheduler(repository, queue) -> RefreshScheduler:
    repository.config = repository.config.model_copy(
        update={"refresh_schedule": "0 * * * *", "max_restores": 3}
    )
    return RefreshScheduler(repository, queue, interval=0.01, clock=lambda: NOW)


class TestTick:
    """tick() creates and enqueues a restore when the schedule is due."""

    async def test_due_creates_and_enqueues(self, scheduler, repository, queue) -> None:
        restore = await scheduler.tick()

        assert restore is not None
        assert restore.name == "restore_20250915123000"
        queue.enqueue.assert_awaited_once_with(TaskKind.START, restore.id)
        assert repository.config.next_refresh_at == NEXT_HOUR

    async def test_not_yet_due(self, scheduler, repository, queue) -> None:
        repository.config = repository.config.model_copy(update={"next_refresh_at": NEXT_HOUR})
        assert await scheduler.tick() is None
        queue.enqueue.assert_not_awaited()
        assert repository.restores == {}

    async def test_past_due(self, scheduler, repository, queue) -> None:
        repository.config = repository.config.model_copy(
            update={"next_refresh_at": datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)}
        )
        assert await scheduler.tick() is not None
        queue.enqueue.assert_awaited_once()

    async def test_no_schedule(self, scheduler, repository, queue) -> None:
        repository.config = repository.config.model_copy(update={"refresh_schedule": ""})
        assert await scheduler.tick() is None
        queue.enqueue.assert_not_awaited()

    async def test_no_config(self, scheduler, repository, queue) -> None:
        repository.config = None
        assert await scheduler.tick() is None

    async def test_ceiling_reached_only_advances_schedule(
        self, scheduler, repository, queue
    ) -> None:
        for name in ("restore_a", "restore_b", "restore_c"):
            repository.add_restore(name, ready=True)

        assert await scheduler.tick() is None
        queue.enqueue.assert_not_awaited()
        assert len(repository.restores) == 3
        assert repository.config.next_refresh_at == NEXT_HOUR

    async def test_existing_name_skips(self, scheduler, repository, queue) -> None:
        repository.add_restore("restore_20250915123000")
        assert await scheduler.tick() is None
        queue.enqueue.assert_not_awaited()

    async def test_schema_only_follows_config(self, scheduler, repository) -> None:
        repository.config = repository.config.model_copy(update={"schema_only": True})
        restore = await scheduler.tick()
        assert restore.schema_only is True

    async def test_snapshot_is_never_schema_only(self, scheduler, repository, snapshot_config) -> None:
        repository.config = snapshot_config.model_copy(
            update={"refresh_schedule": "0 * * * *", "max_restores": 3, "schema_only": True}
        )
        restore = await scheduler.tick()
        assert restore.schema_only is False


class TestRun:
    async def test_errors_do_not_stop_the_loop(self, scheduler) -> None:
        calls = []

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("db down")

        scheduler.tick = AsyncMock(side_effect=tick)
        runner = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(runner, timeout=1)
        assert scheduler.tick.await_count >= 2
