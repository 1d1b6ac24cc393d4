"""Restore strategies and the selection rule between them.

There are exactly two strategies.  They differ in configuration shape and
in schema-only support, so selection dispatches explicitly over
``ProviderType`` instead of looking providers up in a registry.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, assert_never

from branchd.config.models import BranchdSettings
from branchd.errors import ConfigurationError
from branchd.restore.process import ProcessManager
from branchd.store.models import Restore, ServerConfig


class ProviderType(str, Enum):
    """Restore strategy discriminator (also used as a log field)."""

    LOGICAL = "logical"
    CRUNCHY_BRIDGE = "crunchy_bridge"

    @property
    def supports_schema_only(self) -> bool:
        return self is ProviderType.LOGICAL


@dataclass
class ProviderParams:
    """Everything a provider needs to launch one restore."""

    restore: Restore
    config: ServerConfig
    port: int
    data_path: Path  # dataset mountpoint; the cluster lives in data_path / "data"

    @property
    def data_dir(self) -> Path:
        return self.data_path / "data"


class RestoreProvider(Protocol):
    """A way of materializing the source database into a new cluster.

    ``start_restore`` launches a detached background script and returns
    immediately; progress is observed through ``ProcessManager``.  The
    caller guarantees no other operation runs for the same restore name.
    """

    provider_type: ProviderType

    def validate_config(self, config: ServerConfig) -> None:
        """Fail fast on missing strategy-specific configuration.

        Raises:
            ConfigurationError: If a required field is empty.
        """
        ...

    async def start_restore(self, params: ProviderParams) -> None:
        """Launch the background restore for ``params.restore``."""
        ...


def provider_type_for(config: ServerConfig) -> ProviderType:
    """Pick the strategy for a configuration.

    Crunchy Bridge credentials win over a connection string.

    Raises:
        ConfigurationError: If neither source is configured.
    """
    if config.crunchy_bridge_api_key:
        return ProviderType.CRUNCHY_BRIDGE
    if config.connection_string:
        return ProviderType.LOGICAL
    raise ConfigurationError(
        "no restore source configured "
        "(need either a connection string or Crunchy Bridge credentials)"
    )


def select_provider(
    config: ServerConfig,
    settings: BranchdSettings,
    process_manager: ProcessManager,
) -> RestoreProvider:
    """Build the provider for ``config``.

    Raises:
        ConfigurationError: If no restore source is configured.
    """
    # Imported here: both modules import ProviderParams from this one.
    from branchd.restore.logical import LogicalRestoreProvider
    from branchd.restore.snapshot import CrunchyBridgeProvider

    provider_type = provider_type_for(config)
    if provider_type is ProviderType.LOGICAL:
        return LogicalRestoreProvider(settings, process_manager)
    if provider_type is ProviderType.CRUNCHY_BRIDGE:
        return CrunchyBridgeProvider(settings, process_manager)
    assert_never(provider_type)
