"""Logical restore: ``pg_dump`` the source, ``pg_restore`` into a new cluster.

The dump is loaded in three ordered phases (pre-data, data, post-data) so
indexes and constraints are built once after the bulk load.  The bulk-load
settings in ``RestoreTuning`` are sized from live host metrics and reset
before the script reports success.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from branchd.config.models import BranchdSettings
from branchd.errors import ConfigurationError
from branchd.restore.process import ProcessManager, validate_inputs
from branchd.restore.provider import ProviderParams, ProviderType
from branchd.restore.resources import service_name
from branchd.restore.sysinfo import HostResources, get_resources
from branchd.restore.tuning import RestoreTuning
from branchd.store.models import ServerConfig
from branchd.templates import render_script

logger = logging.getLogger(__name__)

SCRIPT_TEMPLATE = "logical_restore.sh.j2"


class LogicalRestoreProvider:
    """Restore strategy driven by a source connection string.

    Args:
        settings: Service settings (paths, pool name).
        process_manager: Launches and tracks the restore script.
        resources_fn: Returns host metrics for a data root; replaced in
            tests.
    """

    provider_type = ProviderType.LOGICAL

    def __init__(
        self,
        settings: BranchdSettings,
        process_manager: ProcessManager,
        resources_fn: Callable[[Path], HostResources] = get_resources,
    ) -> None:
        self._settings = settings
        self._process_manager = process_manager
        self._resources_fn = resources_fn

    def validate_config(self, config: ServerConfig) -> None:
        if not config.connection_string:
            raise ConfigurationError("connection string is required for logical restore")
        if not config.postgres_version:
            raise ConfigurationError("postgres version is required for logical restore")
        logger.debug(
            "Logical source is postgres %s (admin port %d)",
            config.postgres_version,
            config.admin_port,
        )

    def render(self, params: ProviderParams, tuning: RestoreTuning) -> str:
        """Render the restore script for ``params``."""
        name = params.restore.name
        return render_script(
            SCRIPT_TEMPLATE,
            connection_string=params.config.connection_string,
            pg_version=params.config.postgres_version,
            pg_port=params.port,
            restore_name=name,
            source_database=params.config.database_name,
            schema_only=params.restore.schema_only,
            parallel_jobs=tuning.parallel_jobs,
            dump_file=params.data_path / "dump.pgdump",
            data_dir=params.data_dir,
            dataset=self._settings.dataset_name(name),
            service_name=service_name(name),
            systemd_dir=self._settings.systemd_dir,
            log_file=self._process_manager.log_path(name),
            pid_file=self._process_manager.pid_path(name),
            tune_sql=tuning.alter_system_sql(),
            reset_sql=tuning.reset_sql(),
        )

    async def start_restore(self, params: ProviderParams) -> None:
        """Validate inputs, size the load for this host and launch the script.

        Raises:
            ConfigurationError: If the connection string or version is missing.
            ValidationError: If the name or port is malformed.
            CommandError: If the launcher shell fails.
        """
        self.validate_config(params.config)
        validate_inputs(
            params.restore.name,
            params.port,
            connection_string=params.config.connection_string,
            postgres_version=params.config.postgres_version,
        )

        resources = self._resources_fn(self._settings.data_root)
        tuning = RestoreTuning.for_host(resources)
        logger.info(
            "Starting logical restore %s (port=%d, schema_only=%s, jobs=%d, "
            "cpu=%d, mem_gb=%.1f, disk_gb=%.1f)",
            params.restore.name,
            params.port,
            params.restore.schema_only,
            tuning.parallel_jobs,
            resources.cpu_cores,
            resources.total_memory_gb,
            resources.available_disk_gb,
        )

        script = self.render(params, tuning)
        await self._process_manager.launch(params.restore.name, script)
