"""branchd: disposable PostgreSQL branches from restored copies of a source database.

Restores a source database (logically via pg_dump or physically from a
Crunchy Bridge backup) onto a ZFS dataset, optionally anonymizes it, and
clones it into per-user branches that each run as their own cluster.

Usage:
    from branchd import load_settings, Repository, AsyncPostgresAdapter
    from branchd import RestoreOrchestrator, BranchService
    from branchd import TaskQueue, Worker, RefreshScheduler
"""

__version__ = "0.1.0"

# Config
from branchd.config.loader import load_settings
from branchd.config.models import BranchdSettings

# Store
from branchd.store.postgres import AsyncPostgresAdapter
from branchd.store.repository import Repository

# Restores
from branchd.restore.orchestrator import RestoreOrchestrator, StartOutcome
from branchd.restore.status import RestoreStatus

# Branches
from branchd.branches.service import BranchService, ForcedBranchMetadata

# Anonymization
from branchd.anonymize import Anonymizer, generate_sql

# Tasks and scheduling
from branchd.refresh import RefreshScheduler
from branchd.tasks.queue import Task, TaskKind, TaskQueue
from branchd.tasks.worker import Worker

# Errors
from branchd.errors import BranchdError

__all__ = [
    # Config
    "load_settings",
    "BranchdSettings",
    # Store
    "AsyncPostgresAdapter",
    "Repository",
    # Restores
    "RestoreOrchestrator",
    "StartOutcome",
    "RestoreStatus",
    # Branches
    "BranchService",
    "ForcedBranchMetadata",
    # Anonymization
    "Anonymizer",
    "generate_sql",
    # Tasks
    "RefreshScheduler",
    "Task",
    "TaskKind",
    "TaskQueue",
    "Worker",
    # Errors
    "BranchdError",
]
