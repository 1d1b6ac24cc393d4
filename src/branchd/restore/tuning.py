"""Temporary PostgreSQL settings for a bulk logical restore.

Durability is switched off while ``pg_restore`` loads data and switched
back on (``ALTER SYSTEM RESET``) before the restore is marked ready.
"""

from dataclasses import dataclass

from branchd.restore.sysinfo import HostResources

_RESET_PARAMETERS = (
    "fsync",
    "synchronous_commit",
    "full_page_writes",
    "autovacuum",
    "maintenance_work_mem",
    "max_wal_size",
    "checkpoint_timeout",
    "wal_buffers",
    "max_parallel_maintenance_workers",
)


def _pg_bool(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class RestoreTuning:
    """Settings applied to a restore cluster during the load."""

    parallel_jobs: int
    maintenance_work_mem: str
    max_wal_size: str
    max_parallel_maintenance_workers: int
    checkpoint_timeout: str = "30min"
    wal_buffers: str = "16MB"
    fsync: bool = False
    synchronous_commit: bool = False
    full_page_writes: bool = False
    autovacuum: bool = False

    @classmethod
    def for_host(cls, resources: HostResources) -> "RestoreTuning":
        """Size parallelism and memory from host metrics.

        - jobs: half the cores, at least 2
        - maintenance_work_mem: a quarter of RAM split across jobs; above
          2 GB per worker it drops to 1 GB, and never below 256 MB
        - max_wal_size: 10GB with more than 50 GB free disk, else 3GB
        """
        jobs = max(2, resources.cpu_cores // 2)

        mem_per_worker_gb = resources.total_memory_gb * 0.25 / jobs
        if mem_per_worker_gb > 2.0:
            mem_per_worker_gb = 1.0
        if mem_per_worker_gb < 0.25:
            mem_per_worker_gb = 0.25

        return cls(
            parallel_jobs=jobs,
            maintenance_work_mem="%.0fMB" % (mem_per_worker_gb * 1024),
            max_wal_size="10GB" if resources.available_disk_gb > 50 else "3GB",
            max_parallel_maintenance_workers=min(jobs, 6),
        )

    def alter_system_sql(self) -> list[str]:
        return [
            f"ALTER SYSTEM SET fsync = {_pg_bool(self.fsync)}",
            f"ALTER SYSTEM SET synchronous_commit = {_pg_bool(self.synchronous_commit)}",
            f"ALTER SYSTEM SET full_page_writes = {_pg_bool(self.full_page_writes)}",
            f"ALTER SYSTEM SET autovacuum = {_pg_bool(self.autovacuum)}",
            f"ALTER SYSTEM SET maintenance_work_mem = '{self.maintenance_work_mem}'",
            f"ALTER SYSTEM SET max_wal_size = '{self.max_wal_size}'",
            f"ALTER SYSTEM SET checkpoint_timeout = '{self.checkpoint_timeout}'",
            f"ALTER SYSTEM SET wal_buffers = '{self.wal_buffers}'",
            "ALTER SYSTEM SET max_parallel_maintenance_workers = "
            f"{self.max_parallel_maintenance_workers}",
        ]

    @staticmethod
    def reset_sql() -> list[str]:
        return [f"ALTER SYSTEM RESET {name}" for name in _RESET_PARAMETERS]
