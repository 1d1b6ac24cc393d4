"""Restore lifecycle: providers, process and resource managers, orchestrator."""

from branchd.restore.orchestrator import RestoreOrchestrator, StartOutcome
from branchd.restore.process import ProcessManager
from branchd.restore.provider import ProviderParams, ProviderType, select_provider
from branchd.restore.resources import ResourceManager
from branchd.restore.retention import plan_retention
from branchd.restore.status import RestoreStatus

__all__ = [
    "RestoreOrchestrator",
    "StartOutcome",
    "ProcessManager",
    "ProviderParams",
    "ProviderType",
    "select_provider",
    "ResourceManager",
    "plan_retention",
    "RestoreStatus",
]
