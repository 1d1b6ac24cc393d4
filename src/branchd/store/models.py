"""Pydantic models for the records branchd persists.

Rows come back from ``AsyncPostgresAdapter`` as dicts with ISO-formatted
timestamps; pydantic parses them back into ``datetime``.
"""

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from urllib.parse import urlparse

from pydantic import BaseModel, Field, model_validator

from branchd.errors import ConfigurationError

ADMIN_PORTS: dict[str, int] = {
    "14": 5414,
    "15": 5415,
    "16": 5416,
    "17": 5417,
}


def new_id() -> str:
    """Return a 26-char, time-ordered hex identifier."""
    return f"{time.time_ns() // 1_000_000:012x}{secrets.token_hex(7)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_restore_name(now: datetime | None = None) -> str:
    """Return ``restore_YYYYMMDDHHMMSS`` for the given (UTC) time."""
    now = now or utcnow()
    return f"restore_{now.astimezone(timezone.utc):%Y%m%d%H%M%S}"


# ============================================================================
# Server Configuration (singleton)
# ============================================================================


class ServerConfig(BaseModel):
    """Process-wide restore configuration, one row in ``config``."""

    id: str = Field(default_factory=new_id)
    connection_string: str = ""
    postgres_version: str = ""
    schema_only: bool = True

    # Crunchy Bridge (snapshot strategy); wins over connection_string
    crunchy_bridge_api_key: str = ""
    crunchy_bridge_cluster_name: str = ""
    crunchy_bridge_database_name: str = ""

    branch_postgresql_conf: str = ""
    post_restore_sql: str = ""

    refresh_schedule: str = ""  # cron, empty = no auto refresh
    last_refreshed_at: datetime | None = None
    next_refresh_at: datetime | None = None
    max_restores: int = Field(default=1, ge=1)

    created_at: datetime | None = None

    @property
    def uses_snapshot(self) -> bool:
        return bool(self.crunchy_bridge_api_key)

    @property
    def database_name(self) -> str:
        """Source database name parsed from ``connection_string``.

        Accepts URL form (``postgresql://.../mydb``) and keyword form
        (``host=... dbname=mydb``); falls back to ``postgres``.
        """
        conn = self.connection_string
        if conn.startswith(("postgresql://", "postgres://")):
            path = urlparse(conn).path
            if len(path) > 1:
                return path.lstrip("/")
        for part in conn.split():
            if part.startswith("dbname="):
                return part[len("dbname="):]
        return "postgres"

    @property
    def target_database(self) -> str:
        """Database name inside a finished restore."""
        if self.uses_snapshot:
            return self.crunchy_bridge_database_name
        return self.database_name

    @property
    def admin_port(self) -> int:
        """Fixed administrative port for ``postgres_version``.

        Raises:
            ConfigurationError: If the major version is not supported.
        """
        try:
            return ADMIN_PORTS[self.postgres_version]
        except KeyError:
            raise ConfigurationError(
                f"unsupported postgres version: {self.postgres_version!r}"
            ) from None


# ============================================================================
# Restores and Branches
# ============================================================================


class Restore(BaseModel):
    """One materialized copy of the source database."""

    id: str = Field(default_factory=new_id)
    name: str
    schema_only: bool = False
    schema_ready: bool = False
    data_ready: bool = False
    ready_at: datetime | None = None
    port: int = 0
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _data_implies_schema(self) -> "Restore":
        if self.data_ready and not self.schema_ready:
            raise ValueError("data_ready requires schema_ready")
        return self

    @property
    def is_ready(self) -> bool:
        return self.schema_ready and self.ready_at is not None


class RestoreUsage(BaseModel):
    """A restore together with the number of branches cloned from it."""

    restore: Restore
    branch_count: int = 0


class Branch(BaseModel):
    """A running clone of a ready restore."""

    id: str = Field(default_factory=new_id)
    name: str
    restore_id: str
    created_by: str = ""
    user: str
    password: str
    port: int = 0
    created_at: datetime | None = None


# ============================================================================
# Anonymization Rules
# ============================================================================


class ValueType(str, Enum):
    """SQL type a rule's template renders to."""

    TEXT = "text"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    NULL = "null"


class AnonRule(BaseModel):
    """Global rule: overwrite ``table.column`` with a rendered template."""

    id: str = Field(default_factory=new_id)
    table: str
    column: str
    template: str = ""
    value_type: ValueType = ValueType.TEXT
    created_at: datetime | None = None
