"""Host metrics used to size a logical restore."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)

_GB = 1024**3


@dataclass(frozen=True)
class HostResources:
    """CPU, memory and free disk visible to the restore."""

    cpu_cores: int
    total_memory_gb: float
    available_disk_gb: float


def default_resources() -> HostResources:
    """Conservative fallback when metrics cannot be read."""
    return HostResources(
        cpu_cores=os.cpu_count() or 1,
        total_memory_gb=4.0,
        available_disk_gb=10.0,
    )


def get_resources(data_root: Path) -> HostResources:
    """Read host metrics with psutil.

    Free disk is measured on ``data_root`` (the ZFS pool mountpoint), or
    its nearest existing parent.  Any failure falls back to
    ``default_resources()``.
    """
    try:
        path = Path(data_root)
        while not path.exists() and path != path.parent:
            path = path.parent
        return HostResources(
            cpu_cores=psutil.cpu_count(logical=True) or os.cpu_count() or 1,
            total_memory_gb=psutil.virtual_memory().total / _GB,
            available_disk_gb=psutil.disk_usage(str(path)).free / _GB,
        )
    except (OSError, RuntimeError) as e:
        logger.warning("Failed to read host metrics, using defaults: %s", e)
        return default_resources()
