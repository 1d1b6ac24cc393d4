"""Periodic refresh: create a new restore when the cron schedule is due.

Every ``refresh_interval_seconds`` the scheduler compares the configured
``next_refresh_at`` with the clock.  When due, it creates a restore and
enqueues its start task, unless the restore ceiling is already reached, in
which case it only moves ``next_refresh_at`` forward.  Old restores are
removed later by the retention sweep that runs when the new one is ready.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from branchd.cron import next_refresh
from branchd.store.models import Restore, generate_restore_name, utcnow
from branchd.store.repository import Repository
from branchd.tasks.queue import TaskKind, TaskQueue

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Trigger scheduled refreshes.

    Args:
        repository: Persistence for config and restores.
        queue: Task queue the start task goes to.
        interval: Seconds between checks.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: Repository,
        queue: TaskQueue,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.interval = interval
        self._clock = clock
        self._stopping = asyncio.Event()

    async def tick(self) -> Restore | None:
        """Run one check.

        Returns:
            The restore created for this refresh, or ``None`` if nothing
            was due (or the ceiling was reached).
        """
        config = await self.repository.get_config()
        if config is None or not config.refresh_schedule.strip():
            return None

        now = self._clock()
        if config.next_refresh_at is not None and config.next_refresh_at > now:
            return None

        upcoming = next_refresh(config.refresh_schedule, now)
        count = await self.repository.count_restores()
        if count >= config.max_restores:
            logger.warning(
                "Skipping scheduled refresh: %d restore(s) reached max_restores=%d",
                count,
                config.max_restores,
            )
            await self.repository.update_config(config.id, next_refresh_at=upcoming)
            return None

        name = generate_restore_name(now)
        if await self.repository.get_restore_by_name(name) is not None:
            logger.warning("Restore %s already exists, skipping this refresh", name)
            return None

        restore = await self.repository.create_restore(
            name, schema_only=config.schema_only and not config.uses_snapshot
        )
        await self.queue.enqueue(TaskKind.START, restore.id)
        await self.repository.update_config(config.id, next_refresh_at=upcoming)
        logger.info(
            "Scheduled refresh started restore %s (id=%s), next refresh at %s",
            restore.name,
            restore.id,
            upcoming,
        )
        return restore

    async def run(self) -> None:
        """Check every ``interval`` seconds until ``stop()`` is called."""
        logger.info("Refresh scheduler started (interval=%.0fs)", self.interval)
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("Refresh check failed: %s", e)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Refresh scheduler stopped")

    def stop(self) -> None:
        self._stopping.set()
