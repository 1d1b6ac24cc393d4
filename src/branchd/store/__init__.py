"""Metadata store: client protocol, PostgreSQL adapter, models, repository."""

from branchd.store.base import DatabaseClient
from branchd.store.models import (
    AnonRule,
    Branch,
    Restore,
    RestoreUsage,
    ServerConfig,
    ValueType,
)
from branchd.store.postgres import AsyncPostgresAdapter
from branchd.store.repository import Repository

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
    "Repository",
    "AnonRule",
    "Branch",
    "Restore",
    "RestoreUsage",
    "ServerConfig",
    "ValueType",
]
