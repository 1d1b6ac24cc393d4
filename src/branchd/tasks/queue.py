"""Durable delayed task queue on Redis.

Tasks live in a sorted set scored by due time (epoch seconds).  A worker
claims a due task by removing it; ``ZREM`` returning 1 means this caller
owns it, so concurrent workers never run the same task twice.  Failed tasks
go to a dead-letter list and are not retried automatically.

Payloads are JSON objects ``{"restore_id", "attempt", "kind"}``.
"""

import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import redis.asyncio as redis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

QUEUE_KEY = "branchd:tasks"
DEAD_LETTER_KEY = "branchd:tasks:dead"


class TaskKind(str, Enum):
    START = "restore:start"
    WAIT_COMPLETE = "restore:wait_complete"


class Task(BaseModel):
    """One unit of restore work."""

    restore_id: str
    attempt: int = 0
    kind: TaskKind

    def payload(self) -> str:
        return self.model_dump_json()


class TaskQueue:
    """Enqueue, claim and dead-letter restore tasks.

    Args:
        redis_client: ``redis.asyncio`` client created with
            ``decode_responses=True``.
        key: Sorted set holding pending tasks.
        dead_letter_key: List holding failed tasks.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str = QUEUE_KEY,
        dead_letter_key: str = DEAD_LETTER_KEY,
    ) -> None:
        self.redis = redis_client
        self.key = key
        self.dead_letter_key = dead_letter_key

    @classmethod
    def from_url(cls, url: str) -> "TaskQueue":
        return cls(redis.from_url(url, decode_responses=True))

    async def close(self) -> None:
        await self.redis.aclose()

    async def enqueue(
        self, kind: TaskKind, restore_id: str, delay: float = 0.0, attempt: int = 0
    ) -> Task:
        """Schedule a task ``delay`` seconds from now.

        Re-enqueueing an identical payload only moves its due time.
        """
        task = Task(restore_id=restore_id, attempt=attempt, kind=kind)
        await self.redis.zadd(self.key, {task.payload(): time.time() + delay})
        logger.debug(
            "Enqueued %s for restore %s (attempt=%d, delay=%.0fs)",
            kind.value,
            restore_id,
            attempt,
            delay,
        )
        return task

    async def claim_due(self, now: float | None = None, limit: int = 1) -> list[Task]:
        """Remove and return up to ``limit`` tasks due by ``now``."""
        now = time.time() if now is None else now
        members = await self.redis.zrangebyscore(self.key, "-inf", now, start=0, num=limit)

        claimed: list[Task] = []
        for member in members:
            if await self.redis.zrem(self.key, member) != 1:
                continue  # another worker got it
            try:
                claimed.append(Task.model_validate_json(member))
            except ValueError as e:
                logger.error("Dropping malformed task payload %r: %s", member, e)
                await self.redis.lpush(
                    self.dead_letter_key, json.dumps({"payload": member, "error": str(e)})
                )
        return claimed

    async def pending_count(self) -> int:
        return await self.redis.zcard(self.key)

    async def dead_letter(self, task: Task, error: str, log_tail: str = "") -> None:
        """Record a failed task with its error text.

        Args:
            task: The task that failed.
            error: Error message.
            log_tail: Trailing lines of the restore log, stored as
                ``log_tail`` when given.
        """
        entry = {
            **task.model_dump(mode="json"),
            "error": error,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }
        if log_tail:
            entry["log_tail"] = log_tail
        await self.redis.lpush(self.dead_letter_key, json.dumps(entry))
        logger.error(
            "Task %s for restore %s moved to dead letters: %s",
            task.kind.value,
            task.restore_id,
            error,
        )

    async def dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent dead-lettered tasks first."""
        entries = await self.redis.lrange(self.dead_letter_key, 0, limit - 1)
        return [json.loads(entry) for entry in entries]
