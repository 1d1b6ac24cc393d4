"""Tests for the Redis-backed delayed task queue."""

import json
import time
from unittest.mock import AsyncMock

import pytest

from branchd.tasks.queue import DEAD_LETTER_KEY, QUEUE_KEY, Task, TaskKind, TaskQueue


@pytest.fixture
def redis_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def queue(redis_client: AsyncMock) -> TaskQueue:
    return TaskQueue(redis_client)


class TestTask:
    """Payloads carry restore_id, attempt and kind."""

    def test_payload_fields(self) -> None:
        task = Task(restore_id="r1", attempt=2, kind=TaskKind.WAIT_COMPLETE)
        assert json.loads(task.payload()) == {
            "restore_id": "r1",
            "attempt": 2,
            "kind": "restore:wait_complete",
        }

    def test_kind_names(self) -> None:
        assert TaskKind.START.value == "restore:start"
        assert TaskKind.WAIT_COMPLETE.value == "restore:wait_complete"


class TestEnqueue:
    async def test_scores_by_due_time(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        before = time.time()
        task = await queue.enqueue(TaskKind.WAIT_COMPLETE, "r1", delay=10, attempt=1)

        key, mapping = redis_client.zadd.await_args.args
        assert key == QUEUE_KEY
        ((payload, score),) = mapping.items()
        assert Task.model_validate_json(payload) == task
        assert before + 10 <= score <= time.time() + 10


class TestClaimDue:
    """Only the caller whose ZREM succeeds owns a task."""

    async def test_claims_due_task(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        payload = Task(restore_id="r1", kind=TaskKind.START).payload()
        redis_client.zrangebyscore.return_value = [payload]
        redis_client.zrem.return_value = 1

        tasks = await queue.claim_due(now=1000.0, limit=5)

        assert tasks == [Task(restore_id="r1", kind=TaskKind.START)]
        redis_client.zrangebyscore.assert_awaited_once_with(QUEUE_KEY, "-inf", 1000.0, start=0, num=5)
        redis_client.zrem.assert_awaited_once_with(QUEUE_KEY, payload)

    async def test_skips_task_claimed_elsewhere(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        redis_client.zrangebyscore.return_value = [Task(restore_id="r1", kind=TaskKind.START).payload()]
        redis_client.zrem.return_value = 0
        assert await queue.claim_due() == []

    async def test_malformed_payload_goes_to_dead_letters(
        self, queue: TaskQueue, redis_client: AsyncMock
    ) -> None:
        redis_client.zrangebyscore.return_value = ['{"restore_id": 1']
        redis_client.zrem.return_value = 1

        assert await queue.claim_due() == []
        key, entry = redis_client.lpush.await_args.args
        assert key == DEAD_LETTER_KEY
        assert json.loads(entry)["payload"] == '{"restore_id": 1'


class TestDeadLetters:
    async def test_dead_letter_records_error(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        await queue.dead_letter(Task(restore_id="r1", attempt=3, kind=TaskKind.WAIT_COMPLETE), "boom")

        key, entry = redis_client.lpush.await_args.args
        assert key == DEAD_LETTER_KEY
        data = json.loads(entry)
        assert data["restore_id"] == "r1"
        assert data["attempt"] == 3
        assert data["kind"] == "restore:wait_complete"
        assert data["error"] == "boom"
        assert "failed_at" in data

    async def test_dead_letter_keeps_log_tail(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        task = Task(restore_id="r1", kind=TaskKind.WAIT_COMPLETE)
        await queue.dead_letter(task, "restore_a ended with status failed", log_tail="disk full")
        assert json.loads(redis_client.lpush.await_args.args[1])["log_tail"] == "disk full"

    async def test_dead_letters_lists_entries(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        redis_client.lrange.return_value = [json.dumps({"restore_id": "r1", "error": "boom"})]
        assert await queue.dead_letters(limit=10) == [{"restore_id": "r1", "error": "boom"}]
        redis_client.lrange.assert_awaited_once_with(DEAD_LETTER_KEY, 0, 9)

    async def test_pending_count(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        redis_client.zcard.return_value = 4
        assert await queue.pending_count() == 4

    async def test_close(self, queue: TaskQueue, redis_client: AsyncMock) -> None:
        await queue.close()
        redis_client.aclose.assert_awaited_once()
