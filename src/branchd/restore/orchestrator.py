"""Restore lifecycle: start, poll, complete, sweep and delete.

State lives in the database and in the PID/log files written by the
background script, never in this object, so any worker can pick up any
step after a crash::

    pending ──start──▶ running ──poll──▶ success ──complete──▶ ready
                                   └──▶ failed | unknown | not_found

Completion order on success: post-restore SQL, anonymization, readiness
flags, refresh timestamps (only when more than one restore exists), then
the retention sweep.  A failure before the readiness flags are written
leaves the restore not ready with its data intact.

Usage:
    orchestrator = RestoreOrchestrator(repository, settings)
    restore = await orchestrator.create_restore()
    await orchestrator.start(restore.id)
    status = await orchestrator.poll(restore.id)
"""

import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from branchd.anonymize import Anonymizer, run_sql
from branchd.config.models import BranchdSettings
from branchd.cron import next_refresh
from branchd.errors import (
    AnonymizationError,
    BranchdError,
    CommandError,
    ConfigurationError,
    NotFoundError,
    RestoreFailedError,
    ValidationError,
)
from branchd.restore.process import ProcessManager
from branchd.restore.provider import ProviderParams, RestoreProvider, select_provider
from branchd.restore.resources import ResourceManager
from branchd.restore.retention import plan_retention
from branchd.restore.status import RestoreStatus
from branchd.store.models import Restore, ServerConfig, generate_restore_name, utcnow
from branchd.store.repository import Repository

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ServerConfig, BranchdSettings, ProcessManager], RestoreProvider]


class StartOutcome(str, Enum):
    """Result of ``RestoreOrchestrator.start``."""

    LAUNCHED = "launched"
    ALREADY_RUNNING = "already_running"


class RestoreOrchestrator:
    """Drive restores from creation to readiness and deletion.

    Args:
        repository: Persistence for config, restores, branches and rules.
        settings: Service settings.
        process_manager: Tracker for background scripts.  Built from
            ``settings`` when omitted.
        resources: Port allocation and cleanup.  Built from ``settings``
            when omitted.
        anonymizer: Applies anonymization rules after a successful restore.
        provider_factory: Picks the restore strategy for a configuration.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: Repository,
        settings: BranchdSettings,
        process_manager: ProcessManager | None = None,
        resources: ResourceManager | None = None,
        anonymizer: Anonymizer | None = None,
        provider_factory: ProviderFactory = select_provider,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.process_manager = process_manager or ProcessManager(
            settings.log_dir, settings.script_dir
        )
        self.resources = resources or ResourceManager(settings, self.process_manager)
        self.anonymizer = anonymizer or Anonymizer(settings.command_timeout_seconds)
        self._provider_factory = provider_factory
        self._clock = clock

    async def _require_config(self) -> ServerConfig:
        config = await self.repository.get_config()
        if config is None:
            raise ConfigurationError("configuration not found, please complete onboarding first")
        return config

    # ------------------------------------------------------------------
    # Creation and start
    # ------------------------------------------------------------------

    async def create_restore(self, schema_only: bool | None = None) -> Restore:
        """Insert a pending restore named after the current time.

        Args:
            schema_only: Override the configured default.  Ignored (forced
                off) when the snapshot strategy is configured.

        Raises:
            ConfigurationError: If no configuration exists.
            ValidationError: If a restore with the generated name exists.
        """
        config = await self._require_config()
        name = generate_restore_name(self._clock())
        if await self.repository.get_restore_by_name(name) is not None:
            raise ValidationError(f"restore {name} already exists")

        if schema_only is None:
            schema_only = config.schema_only
        if config.uses_snapshot:
            schema_only = False

        restore = await self.repository.create_restore(name, schema_only=schema_only)
        logger.info("Created restore %s (id=%s, schema_only=%s)", name, restore.id, schema_only)
        return restore

    async def start(self, restore_id: str) -> StartOutcome:
        """Launch the background restore unless one already runs for the name.

        A second start for the same restore finds the first one's live PID
        file and returns ``ALREADY_RUNNING`` without allocating anything;
        the caller should then only schedule monitoring.

        Raises:
            NotFoundError: If the restore does not exist.
            ConfigurationError: If no usable restore source is configured.
            ValidationError: If the restore is already ready.
            ResourceError: If no restore port is free.
        """
        restore = await self.repository.get_restore(restore_id)
        if restore.is_ready:
            raise ValidationError(f"restore {restore.name} is already ready")
        config = await self._require_config()

        running, pid = self.process_manager.is_running(restore.name)
        if running:
            logger.info(
                "Restore %s already in progress (pid=%s), skipping start", restore.name, pid
            )
            return StartOutcome.ALREADY_RUNNING

        provider = self._provider_factory(config, self.settings, self.process_manager)
        provider.validate_config(config)

        start, end = self.settings.restore_port_range
        port = self.resources.find_available_port(start, end)

        fields: dict[str, object] = {"port": port}
        if restore.schema_only and not provider.provider_type.supports_schema_only:
            fields["schema_only"] = False
        restore = await self.repository.update_restore(restore.id, **fields)

        await self.process_manager.ensure_log_dir()
        logger.info(
            "Starting restore %s (id=%s, provider=%s, port=%d)",
            restore.name,
            restore.id,
            provider.provider_type.value,
            port,
        )
        await provider.start_restore(
            ProviderParams(
                restore=restore,
                config=config,
                port=port,
                data_path=self.settings.restore_data_path(restore.name),
            )
        )
        return StartOutcome.LAUNCHED

    # ------------------------------------------------------------------
    # Polling and completion
    # ------------------------------------------------------------------

    async def poll(self, restore_id: str) -> RestoreStatus:
        """Check a started restore once and complete it on success.

        Returns:
            ``RUNNING`` while the script is alive, ``SUCCESS`` once the
            restore is ready.

        Raises:
            RestoreFailedError: If the script reported failure, died without
                a sentinel, or left no trace.
            AnonymizationError: If post-restore SQL or anonymization failed.
        """
        restore = await self.repository.get_restore(restore_id)
        if restore.is_ready:
            return RestoreStatus.SUCCESS

        running, _ = self.process_manager.is_running(restore.name)
        if running:
            logger.debug("Restore %s still running", restore.name)
            return RestoreStatus.RUNNING

        status, tail = self.process_manager.check_status(restore.name)
        if status is RestoreStatus.SUCCESS:
            logger.info("Restore %s completed successfully", restore.name)
            await self.complete(restore)
            return RestoreStatus.SUCCESS

        logger.error(
            "Restore %s ended with status %s\n%s", restore.name, status.value, tail
        )
        raise RestoreFailedError(restore.name, status.value, tail)

    async def run_post_restore_sql(self, restore: Restore, config: ServerConfig) -> None:
        """Run the configured post-restore SQL, if any.

        Raises:
            AnonymizationError: If the SQL fails.
        """
        if not config.post_restore_sql.strip():
            return
        logger.info("Executing post-restore SQL on %s", restore.name)
        try:
            await run_sql(
                config.post_restore_sql,
                pg_version=config.postgres_version,
                port=restore.port,
                database=config.target_database,
                label=f"post-restore SQL for {restore.name}",
            )
        except CommandError as e:
            logger.error("Post-restore SQL failed for %s: %s\n%s", restore.name, e, e.output)
            raise AnonymizationError(f"failed to execute post-restore SQL: {e}") from e

    async def complete(self, restore: Restore) -> Restore:
        """Finish a restore whose script reported success.

        Returns:
            The restore marked ready, by this call or by a concurrent one that won
            the readiness update (the loser skips the refresh timestamps and
            the sweep).

        Raises:
            AnonymizationError: If post-restore SQL or anonymization failed;
                the restore stays not ready.
        """
        config = await self._require_config()

        await self.run_post_restore_sql(restore, config)
        rules = await self.repository.list_anon_rules()
        if rules:
            await self.anonymizer.apply(rules, restore, config)

        now = self._clock()
        marked = await self.repository.mark_restore_ready(
            restore.id, data_ready=not restore.schema_only, ready_at=now
        )
        if marked is None:
            logger.info("Restore %s was already completed by another poller", restore.name)
            return await self.repository.get_restore(restore.id)
        restore = marked
        logger.info(
            "Restore %s is ready (schema_ready=%s, data_ready=%s)",
            restore.name,
            restore.schema_ready,
            restore.data_ready,
        )

        if await self.repository.count_restores() > 1:
            try:
                await self.repository.update_config(
                    config.id,
                    last_refreshed_at=now,
                    next_refresh_at=next_refresh(config.refresh_schedule, now),
                )
                logger.info("Refresh completed, updated refresh timestamps")
            except Exception as e:
                logger.error("Failed to update refresh timestamps: %s", e)

        try:
            await self.sweep(exclude_id=restore.id)
        except Exception as e:
            logger.warning("Failed to delete stale restores (non-fatal): %s", e)

        return restore

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def describe(self, restore: Restore) -> tuple[RestoreStatus, str]:
        """Current status of a restore plus the log tail when terminal.

        Only a ready restore is ``SUCCESS``.  One whose script succeeded but
        whose completion has not (yet) gone through is ``PENDING``.
        """
        if restore.is_ready:
            return RestoreStatus.SUCCESS, ""
        running, _ = self.process_manager.is_running(restore.name)
        if running:
            return RestoreStatus.RUNNING, ""
        if restore.port == 0:
            return RestoreStatus.PENDING, ""
        status, tail = self.process_manager.check_status(restore.name)
        if status is RestoreStatus.SUCCESS:
            return RestoreStatus.PENDING, tail
        return status, tail

    async def get_by_name(self, name: str) -> Restore:
        restore = await self.repository.get_restore_by_name(name)
        if restore is None:
            raise NotFoundError(f"restore {name} not found")
        return restore

    # ------------------------------------------------------------------
    # Deletion and retention
    # ------------------------------------------------------------------

    async def _destroy(self, restore: Restore) -> None:
        await self.resources.cleanup_restore(restore.name)
        await self.repository.delete_restore(restore.id)
        logger.info("Restore %s deleted (id=%s)", restore.name, restore.id)

    async def delete(self, restore: Restore) -> None:
        """Kill, clean up and forget a restore that owns no branches.

        A running restore is killed first; there is no cooperative cancel.

        Raises:
            ValidationError: If branches still reference the restore.
            ResourceError: If the dataset cannot be destroyed (the record
                is kept).
        """
        branches = await self.repository.list_branches(restore.id)
        if branches:
            raise ValidationError(
                f"restore {restore.name} has {len(branches)} branch(es), delete them first"
            )
        await self._destroy(restore)

    async def sweep(self, exclude_id: str) -> list[str]:
        """Delete superseded and surplus branch-less restores.

        Each deletion is independent; one failing does not stop the rest.

        Returns:
            Names of the deleted restores.
        """
        config = await self._require_config()
        usages = await self.repository.list_restore_usage()
        doomed = plan_retention(usages, exclude_id, config.max_restores)
        if not doomed:
            logger.debug(
                "No stale restores to delete (total=%d, max_restores=%d)",
                len(usages),
                config.max_restores,
            )
            return []

        logger.info(
            "Deleting %d stale restore(s) (total=%d, max_restores=%d)",
            len(doomed),
            len(usages),
            config.max_restores,
        )
        deleted: list[str] = []
        for usage in doomed:
            try:
                await self._destroy(usage.restore)
            except BranchdError as e:
                logger.error("Failed to delete restore %s: %s", usage.restore.name, e)
                continue
            deleted.append(usage.restore.name)
        return deleted
