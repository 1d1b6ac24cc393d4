"""Worker pool draining the restore task queue.

Workers never wait for a restore.  ``restore:start`` launches the detached
script (bounded by ``trigger_timeout_seconds``) and schedules the first
``restore:wait_complete``; each wait task polls once and re-enqueues itself
after ``poll_interval_seconds`` until the restore is terminal or
``max_polls`` is reached.  A restore whose script succeeded but whose
post-restore SQL or anonymization failed is retried the same way.
"""

import asyncio
import logging

from branchd.config.models import BranchdSettings
from branchd.errors import AnonymizationError, BranchdError, RestoreFailedError
from branchd.restore.orchestrator import RestoreOrchestrator, StartOutcome
from branchd.tasks.queue import Task, TaskKind, TaskQueue

logger = logging.getLogger(__name__)


class Worker:
    """Run restore tasks with ``concurrency`` consumer coroutines.

    Args:
        queue: Task queue.
        orchestrator: Restore lifecycle.
        settings: Poll interval, poll ceiling, trigger timeout, concurrency.
        idle_sleep: Seconds a consumer sleeps when nothing is due.
    """

    def __init__(
        self,
        queue: TaskQueue,
        orchestrator: RestoreOrchestrator,
        settings: BranchdSettings,
        idle_sleep: float = 1.0,
    ) -> None:
        self.queue = queue
        self.orchestrator = orchestrator
        self.settings = settings
        self.idle_sleep = idle_sleep
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_start(self, task: Task) -> None:
        outcome = await asyncio.wait_for(
            self.orchestrator.start(task.restore_id),
            timeout=self.settings.trigger_timeout_seconds,
        )
        if outcome is StartOutcome.ALREADY_RUNNING:
            logger.info("Restore %s already running, scheduling monitoring only", task.restore_id)
        await self.queue.enqueue(
            TaskKind.WAIT_COMPLETE,
            task.restore_id,
            delay=self.settings.poll_interval_seconds,
        )

    async def _poll_again(self, task: Task, give_up: str) -> None:
        attempt = task.attempt + 1
        if attempt >= self.settings.max_polls:
            await self.queue.dead_letter(
                task, f"{give_up} after {self.settings.max_polls} polls, giving up"
            )
            return
        await self.queue.enqueue(
            TaskKind.WAIT_COMPLETE,
            task.restore_id,
            delay=self.settings.poll_interval_seconds,
            attempt=attempt,
        )

    async def handle_wait_complete(self, task: Task) -> None:
        """Poll once; re-enqueue while running or while completion keeps failing.

        A failed post-restore step (SQL or anonymization) leaves the restore
        data in place, so the next poll retries only the completion.
        """
        try:
            status = await self.orchestrator.poll(task.restore_id)
        except AnonymizationError as e:
            logger.warning(
                "Completing restore %s failed, retrying in %ss: %s",
                task.restore_id,
                self.settings.poll_interval_seconds,
                e,
            )
            await self._poll_again(task, f"completion still failing ({e})")
            return

        if not status.is_running:
            logger.info("Restore %s finished with status %s", task.restore_id, status.value)
            return
        await self._poll_again(task, "restore still running")

    async def process(self, task: Task) -> bool:
        """Run one task; uncaught failures are dead-lettered, never retried.

        Returns:
            True if the task succeeded.
        """
        logger.debug("Processing %s for restore %s", task.kind.value, task.restore_id)
        try:
            if task.kind is TaskKind.START:
                await self.handle_start(task)
            elif task.kind is TaskKind.WAIT_COMPLETE:
                await self.handle_wait_complete(task)
        except asyncio.TimeoutError:
            await self.queue.dead_letter(
                task, f"timed out after {self.settings.trigger_timeout_seconds}s"
            )
            return False
        except RestoreFailedError as e:
            await self.queue.dead_letter(task, str(e), log_tail=e.log_tail)
            return False
        except BranchdError as e:
            await self.queue.dead_letter(task, str(e))
            return False
        except Exception as e:
            logger.exception("Unexpected error in %s for restore %s", task.kind.value, task.restore_id)
            await self.queue.dead_letter(task, f"{type(e).__name__}: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_once(self, limit: int = 10) -> int:
        """Process every task due now (up to ``limit``); returns the count."""
        tasks = await self.queue.claim_due(limit=limit)
        for task in tasks:
            await self.process(task)
        return len(tasks)

    async def _consume(self, worker_id: int) -> None:
        logger.debug("Consumer %d started", worker_id)
        while not self._stopping.is_set():
            if await self.run_once(limit=1) == 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.idle_sleep)
                except asyncio.TimeoutError:
                    pass
        logger.debug("Consumer %d stopped", worker_id)

    async def run(self) -> None:
        """Consume until ``stop()`` is called."""
        concurrency = max(1, self.settings.worker_concurrency)
        logger.info("Worker started (concurrency=%d)", concurrency)
        await asyncio.gather(*(self._consume(i) for i in range(concurrency)))
        logger.info("Worker stopped")

    def stop(self) -> None:
        self._stopping.set()
