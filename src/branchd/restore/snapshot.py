"""Physical restore from a Crunchy Bridge pgBackRest repository.

The provider looks up the cluster, mints a short-lived backup token and
writes the pgBackRest config to the script directory (``/tmp``), never to
the dataset: the restore dataset is cloned into branches later and would
carry the credentials with it.  The restore runs with ``--type=immediate
--target-action=promote`` so the result is an independent primary.

Schema-only is not supported; the orchestrator forces the flag off when
this provider is selected.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from branchd.config.models import BranchdSettings
from branchd.errors import ConfigurationError, ResourceError
from branchd.restore.backup_api import BackupApiClient
from branchd.restore.process import ProcessManager, validate_inputs
from branchd.restore.provider import ProviderParams, ProviderType
from branchd.restore.resources import service_name
from branchd.store.models import ServerConfig
from branchd.templates import render_script

logger = logging.getLogger(__name__)

SCRIPT_TEMPLATE = "snapshot_restore.sh.j2"
SCRIPT_PREFIX = "branchd_restore_cb"


class CrunchyBridgeProvider:
    """Restore strategy driven by Crunchy Bridge backup credentials.

    Args:
        settings: Service settings (paths, pool name, API URL).
        process_manager: Launches and tracks the restore script.
        client_factory: Builds an API client from ``(api_key, base_url)``.
    """

    provider_type = ProviderType.CRUNCHY_BRIDGE

    def __init__(
        self,
        settings: BranchdSettings,
        process_manager: ProcessManager,
        client_factory: Callable[[str, str], BackupApiClient] = BackupApiClient,
    ) -> None:
        self._settings = settings
        self._process_manager = process_manager
        self._client_factory = client_factory

    def validate_config(self, config: ServerConfig) -> None:
        if not config.crunchy_bridge_api_key:
            raise ConfigurationError("crunchy bridge API key is required")
        if not config.crunchy_bridge_cluster_name:
            raise ConfigurationError("crunchy bridge cluster name is required")
        if not config.crunchy_bridge_database_name:
            raise ConfigurationError("crunchy bridge database name is required")
        if not config.postgres_version:
            raise ConfigurationError("postgres version is required")
        logger.debug(
            "Snapshot source is postgres %s (admin port %d)",
            config.postgres_version,
            config.admin_port,
        )

    def pgbackrest_config_path(self, restore_name: str) -> Path:
        return self._settings.script_dir / f"pgbackrest_{restore_name}.conf"

    async def start_restore(self, params: ProviderParams) -> None:
        """Fetch backup credentials and launch the pgBackRest restore.

        Raises:
            ConfigurationError: If a Crunchy Bridge field is missing.
            ValidationError: If the name or port is malformed.
            NotFoundError: If the cluster does not exist.
            ResourceError: If the cluster is not in the ``ready`` state.
            BackupApiError: If the API request fails.
            CommandError: If the launcher shell fails.
        """
        config = params.config
        name = params.restore.name
        self.validate_config(config)
        validate_inputs(
            name,
            params.port,
            postgres_version=config.postgres_version,
            database_name=config.crunchy_bridge_database_name,
        )

        logger.info(
            "Starting Crunchy Bridge restore %s (cluster=%s, database=%s, port=%d)",
            name,
            config.crunchy_bridge_cluster_name,
            config.crunchy_bridge_database_name,
            params.port,
        )

        async with self._client_factory(
            config.crunchy_bridge_api_key, self._settings.backup_api_url
        ) as client:
            cluster = await client.find_cluster_by_name(config.crunchy_bridge_cluster_name)
            if cluster.state != "ready":
                raise ResourceError(
                    f"cluster {cluster.name} is not ready (state: {cluster.state})"
                )
            token = await client.create_backup_token(cluster.id)

        logger.info(
            "Backup token created (cluster_id=%s, repo_type=%s, stanza=%s)",
            cluster.id,
            token.type,
            token.stanza,
        )

        conf_path = self.pgbackrest_config_path(name)
        conf_path.write_text(token.render_pgbackrest_config(params.data_dir))
        conf_path.chmod(0o644)

        script = render_script(
            SCRIPT_TEMPLATE,
            pg_version=config.postgres_version,
            pg_port=params.port,
            restore_name=name,
            data_dir=params.data_dir,
            pgbackrest_conf=conf_path,
            stanza=token.stanza,
            dataset=self._settings.dataset_name(name),
            service_name=service_name(name),
            systemd_dir=self._settings.systemd_dir,
            log_file=self._process_manager.log_path(name),
            pid_file=self._process_manager.pid_path(name),
        )
        await self._process_manager.launch(name, script, prefix=SCRIPT_PREFIX)
