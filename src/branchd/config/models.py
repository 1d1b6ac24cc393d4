"""Pydantic models for branchd service settings."""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


DEFAULT_ALLOWED_BRANCH_SETTINGS: frozenset[str] = frozenset(
    {
        "max_connections",
        "max_parallel_workers",
        "max_worker_processes",
        "effective_io_concurrency",
        "random_page_cost",
        "shared_preload_libraries",
        "max_parallel_workers_per_gather",
        "shared_buffers",
        "work_mem",
        "maintenance_work_mem",
        "effective_cache_size",
        "max_wal_size",
        "wal_buffers",
        # Locale
        "timezone",
        "datestyle",
    }
)


# ============================================================================
# Service Settings
# ============================================================================


class BranchdSettings(BaseModel):
    """Host-level settings from branchd.toml.

    Path and range defaults are the on-disk contract shared with the
    restore and branch scripts; change them only together.
    """

    database_url: str = "postgresql://branchd@localhost:5432/branchd"
    redis_url: str = "redis://localhost:6379/0"

    # Filesystem layout
    log_dir: Path = Path("/var/log/branchd")
    data_root: Path = Path("/opt/branchd")
    zfs_pool: str = "tank"
    systemd_dir: Path = Path("/etc/systemd/system")
    script_dir: Path = Path("/tmp")

    # Port ranges (inclusive)
    restore_port_range: tuple[int, int] = (50000, 59999)
    branch_port_range: tuple[int, int] = (15432, 16432)
    port_lock_file: Path = Path("/tmp/branchd-port-allocation.lock")

    # Task queue
    poll_interval_seconds: float = 10.0
    max_polls: int = 4320  # 12 hours at 10s
    trigger_timeout_seconds: float = 600.0
    command_timeout_seconds: float = 60.0
    branch_script_timeout_seconds: float = 300.0
    worker_concurrency: int = 4
    refresh_interval_seconds: float = 60.0

    backup_api_url: str = "https://api.crunchybridge.com"

    allowed_branch_settings: frozenset[str] = Field(
        default=DEFAULT_ALLOWED_BRANCH_SETTINGS
    )

    log_level: str = "INFO"

    @field_validator("restore_port_range", "branch_port_range")
    @classmethod
    def _check_range(cls, value: tuple[int, int]) -> tuple[int, int]:
        start, end = value
        if not (1 <= start <= end <= 65535):
            raise ValueError(f"invalid port range: {start}-{end}")
        return value

    def restore_data_path(self, name: str) -> Path:
        """Mountpoint of a restore or branch dataset."""
        return self.data_root / name

    def dataset_name(self, name: str) -> str:
        """ZFS dataset backing a restore or branch."""
        return f"{self.zfs_pool}/{name}"
