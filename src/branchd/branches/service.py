"""Synchronous branch creation and deletion.

A branch is a ZFS clone of the latest ready restore, started as its own
PostgreSQL cluster on a firewall-reserved port with freshly generated
credentials.  The record is written only after the clone script confirms
the database user exists; on any failure before that the reserved port is
released and nothing is persisted.
"""

import logging
import re
import secrets
from collections.abc import Collection
from dataclasses import dataclass

from branchd.branches.settings import encode_settings
from branchd.commands import run_script
from branchd.config.models import BranchdSettings
from branchd.errors import (
    BranchdError,
    BranchError,
    CommandError,
    ConfigurationError,
    DatabaseNotReadyError,
    NotFoundError,
    PortMismatchError,
    RestoreNotRunningError,
    ValidationError,
)
from branchd.restore.process import ProcessManager
from branchd.restore.resources import ResourceManager, service_name
from branchd.store.models import Branch, Restore, ServerConfig
from branchd.store.repository import Repository
from branchd.templates import render_script

logger = logging.getLogger(__name__)

USER_LENGTH = 16
PASSWORD_LENGTH = 32

USER_CREATED_MARKER = "USER_CREATION_SUCCESS=true"
DELETED_MARKER = "BRANCH_DELETION_SUCCESS=true"
DATABASE_NOT_READY_MARKER = "BRANCHD_ERROR:DATABASE_NOT_READY"
RESTORE_NOT_RUNNING_MARKER = "BRANCHD_ERROR:RESTORE_NOT_RUNNING"

_PORT_RE = re.compile(r"BRANCH_PORT=(\d+)")
_ERROR_RE = re.compile(r"(BRANCHD_ERROR.*)")
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$")


@dataclass(frozen=True)
class ForcedBranchMetadata:
    """Port and credentials a re-created branch must keep."""

    port: int
    user: str
    password: str


def generate_secret(length: int) -> str:
    """URL-safe random string of exactly ``length`` characters."""
    return secrets.token_urlsafe(length)[:length]


def validate_branch_name(name: str) -> None:
    """Reject names that are unsafe as dataset, unit and path components.

    Raises:
        ValidationError: On an empty, too long or malformed name, or one
            that could collide with a restore dataset.
    """
    if not _NAME_RE.match(name):
        raise ValidationError(
            f"invalid branch name {name!r}: use letters, digits, '-' and '_' "
            "(max 63 characters, starting with a letter or digit)"
        )
    if name.startswith("restore_"):
        raise ValidationError("branch names may not start with 'restore_'")


def extract_error_message(output: str) -> str:
    match = _ERROR_RE.search(output)
    return match.group(1).strip() if match else "-- no error message --"


def parse_branch_port(output: str) -> int:
    """Port announced by the clone script (last ``BRANCH_PORT=`` line).

    Raises:
        BranchError: If no port was announced.
    """
    matches = _PORT_RE.findall(output)
    if not matches:
        raise BranchError("branch creation script did not report a port")
    return int(matches[-1])


def raise_for_markers(output: str) -> None:
    """Map the script's stable error markers to exceptions."""
    if DATABASE_NOT_READY_MARKER in output:
        raise DatabaseNotReadyError()
    if RESTORE_NOT_RUNNING_MARKER in output:
        raise RestoreNotRunningError()


class BranchService:
    """Create, delete and list branches.

    Args:
        repository: Persistence for config, restores and branches.
        settings: Service settings (pool, paths, script timeout).
        resources: Branch port allocation.  Built from ``settings`` when
            omitted.
        allowed_settings: postgresql.conf keys operators may override.
            Defaults to ``settings.allowed_branch_settings``.
    """

    def __init__(
        self,
        repository: Repository,
        settings: BranchdSettings,
        resources: ResourceManager | None = None,
        allowed_settings: Collection[str] | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.resources = resources or ResourceManager(
            settings, ProcessManager(settings.log_dir, settings.script_dir)
        )
        self.allowed_settings = (
            settings.allowed_branch_settings if allowed_settings is None else allowed_settings
        )

    async def _load_source(self) -> tuple[ServerConfig, Restore]:
        config = await self.repository.get_config()
        if config is None:
            raise ConfigurationError("configuration not found, please complete onboarding first")
        restore = await self.repository.latest_ready_restore()
        if restore is None:
            raise NotFoundError("no ready restore found")
        return config, restore

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, name: str, created_by: str = "") -> Branch:
        """Clone the latest ready restore into a new branch.

        An existing branch with the same name is returned unchanged.

        Args:
            name: Branch name.
            created_by: Identifier of the requesting user.

        Returns:
            The new (or existing) branch.

        Raises:
            ValidationError: If the name is malformed.
            ConfigurationError: If no configuration exists.
            NotFoundError: If no restore is ready.
            DatabaseNotReadyError: If the restore is still recovering.
            RestoreNotRunningError: If the restore cluster is down.
            ResourceError: If no branch port is available.
            BranchError: If the clone script fails.
        """
        validate_branch_name(name)
        config, restore = await self._load_source()

        existing = await self.repository.find_branch_by_name(name)
        if existing is not None:
            logger.info(
                "Branch %s already exists (id=%s, restore_id=%s), returning it",
                name,
                existing.id,
                existing.restore_id,
            )
            return existing

        user = generate_secret(USER_LENGTH)
        password = generate_secret(PASSWORD_LENGTH)
        return await self._create(config, restore, name, created_by, user, password)

    async def create_with_forced_metadata(
        self, name: str, forced: ForcedBranchMetadata, created_by: str = ""
    ) -> Branch:
        """Re-create a branch keeping its port and credentials.

        Used when a branch is moved onto a newer restore.

        Raises:
            PortMismatchError: If the clone comes up on another port.
            ResourceError: If the forced port is taken.
            BranchError: If the clone script fails.
        """
        validate_branch_name(name)
        config, restore = await self._load_source()
        logger.info("Creating branch %s with forced port %d", name, forced.port)
        return await self._create(
            config,
            restore,
            name,
            created_by,
            forced.user,
            forced.password,
            forced_port=forced.port,
        )

    async def _create(
        self,
        config: ServerConfig,
        restore: Restore,
        name: str,
        created_by: str,
        user: str,
        password: str,
        forced_port: int | None = None,
    ) -> Branch:
        port = await self.resources.allocate_branch_port(forced_port)
        logger.info(
            "Creating branch %s from restore %s (port=%d)", name, restore.name, port
        )
        try:
            announced = await self._run_create_script(
                config, restore, name, user, password, port
            )
            if forced_port is not None and announced != forced_port:
                logger.error(
                    "Port mismatch for branch %s: expected %d, got %d",
                    name,
                    forced_port,
                    announced,
                )
                raise PortMismatchError(forced_port, announced)
        except BranchdError:
            await self.resources.release_branch_port(port)
            raise

        branch = await self.repository.create_branch(
            Branch(
                name=name,
                restore_id=restore.id,
                created_by=created_by,
                user=user,
                password=password,
                port=announced,
            )
        )
        logger.info("Branch %s created (id=%s, port=%d)", name, branch.id, branch.port)
        return branch

    async def _run_create_script(
        self,
        config: ServerConfig,
        restore: Restore,
        name: str,
        user: str,
        password: str,
        port: int,
    ) -> int:
        script = render_script(
            "create_branch.sh.j2",
            branch_name=name,
            source_dataset=self.settings.dataset_name(restore.name),
            branch_dataset=self.settings.dataset_name(name),
            branch_mountpoint=self.settings.restore_data_path(name),
            branch_port=port,
            source_port=restore.port,
            source_service=service_name(restore.name),
            pg_version=config.postgres_version,
            user=user,
            password=password,
            custom_conf=encode_settings(config.branch_postgresql_conf, self.allowed_settings),
            systemd_dir=self.settings.systemd_dir,
        )
        try:
            output = await run_script(
                script,
                timeout=self.settings.branch_script_timeout_seconds,
                label=f"create branch {name}",
            )
        except CommandError as e:
            logger.error("Branch creation script failed for %s:\n%s", name, e.output)
            raise_for_markers(e.output)
            raise BranchError(
                f"branch creation failed: {extract_error_message(e.output)}"
            ) from e

        raise_for_markers(output)
        if USER_CREATED_MARKER not in output:
            logger.error("Branch creation script did not confirm user for %s:\n%s", name, output)
            raise BranchError("branch creation failed: database user was not created")
        return parse_branch_port(output)

    # ------------------------------------------------------------------
    # Delete / list
    # ------------------------------------------------------------------

    async def delete(self, name: str) -> None:
        """Destroy a branch's cluster, clone and snapshot, then its record.

        Raises:
            NotFoundError: If no branch has this name.
            BranchError: If the deletion script fails or does not confirm.
        """
        branch = await self.repository.find_branch_by_name(name)
        if branch is None:
            raise NotFoundError(f"branch not found: {name}")
        restore = await self.repository.get_restore(branch.restore_id)

        script = render_script(
            "destroy_branch.sh.j2",
            branch_name=name,
            source_dataset=self.settings.dataset_name(restore.name),
            branch_dataset=self.settings.dataset_name(name),
            branch_mountpoint=self.settings.restore_data_path(name),
            systemd_dir=self.settings.systemd_dir,
        )
        logger.info("Deleting branch %s (id=%s)", name, branch.id)
        try:
            output = await run_script(
                script,
                timeout=self.settings.branch_script_timeout_seconds,
                label=f"delete branch {name}",
            )
        except CommandError as e:
            logger.error("Branch deletion script failed for %s:\n%s", name, e.output)
            raise BranchError(
                f"branch deletion failed: {extract_error_message(e.output)}"
            ) from e

        if DELETED_MARKER not in output:
            logger.error("Branch deletion script did not report success for %s:\n%s", name, output)
            raise BranchError("branch deletion script failed: script did not report success")

        await self.resources.release_branch_port(branch.port)
        await self.repository.delete_branch(branch.id)
        logger.info("Branch %s deleted", name)

    async def list_branches(self, restore_id: str | None = None) -> list[Branch]:
        return await self.repository.list_branches(restore_id)
