"""Typed access to restores, branches, config and anonymization rules.

Wraps a ``DatabaseClient`` and converts rows to pydantic models.  The
orchestrator, branch service and scheduler depend on this class only,
which keeps them testable with an in-memory fake.
"""

import logging
from datetime import datetime
from typing import Any

from branchd.errors import NotFoundError
from branchd.store.base import DatabaseClient
from branchd.store.models import (
    AnonRule,
    Branch,
    Restore,
    RestoreUsage,
    ServerConfig,
    utcnow,
)
from branchd.store.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

_RESTORE_FIELDS = set(Restore.model_fields)
_CONFIG_FIELDS = set(ServerConfig.model_fields)


class Repository:
    """Persistence operations used by the branchd control plane.

    Args:
        client: Any ``DatabaseClient`` implementation.
    """

    def __init__(self, client: DatabaseClient) -> None:
        self._client = client

    async def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        for statement in SCHEMA_SQL:
            await self._client.execute(statement)

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    async def get_config(self) -> ServerConfig | None:
        """Return the configuration singleton, or ``None`` before setup."""
        rows = await self._client.select("config", order_by="created_at")
        if not rows:
            return None
        return ServerConfig(**rows[0])

    async def save_config(self, config: ServerConfig) -> ServerConfig:
        """Insert or replace the configuration singleton."""
        data = config.model_dump(exclude={"created_at"})
        existing = await self.get_config()
        if existing is None:
            row = await self._client.insert("config", data)
        else:
            data.pop("id")
            row = await self._client.update("config", data, {"id": existing.id})
        return ServerConfig(**row)

    async def update_config(self, config_id: str, **fields: Any) -> ServerConfig:
        unknown = set(fields) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        row = await self._client.update("config", fields, {"id": config_id})
        return ServerConfig(**row)

    # ------------------------------------------------------------------
    # Restores
    # ------------------------------------------------------------------

    async def create_restore(self, name: str, schema_only: bool, port: int = 0) -> Restore:
        restore = Restore(name=name, schema_only=schema_only, port=port, created_at=utcnow())
        row = await self._client.insert("restores", restore.model_dump())
        return Restore(**row)

    async def get_restore(self, restore_id: str) -> Restore:
        """Load a restore by id.

        Raises:
            NotFoundError: If no such restore exists.
        """
        rows = await self._client.select("restores", filters={"id": restore_id})
        if not rows:
            raise NotFoundError(f"restore not found: {restore_id}")
        return Restore(**rows[0])

    async def get_restore_by_name(self, name: str) -> Restore | None:
        rows = await self._client.select("restores", filters={"name": name})
        return Restore(**rows[0]) if rows else None

    async def update_restore(self, restore_id: str, **fields: Any) -> Restore:
        unknown = set(fields) - _RESTORE_FIELDS
        if unknown:
            raise ValueError(f"Unknown restore fields: {sorted(unknown)}")
        row = await self._client.update("restores", fields, {"id": restore_id})
        return Restore(**row)

    async def delete_restore(self, restore_id: str) -> None:
        await self._client.delete("restores", {"id": restore_id})

    async def list_restores(self) -> list[Restore]:
        rows = await self._client.select("restores", order_by="created_at ASC")
        return [Restore(**row) for row in rows]

    async def count_restores(self) -> int:
        rows = await self._client.fetch("SELECT count(*) AS n FROM restores")
        return int(rows[0]["n"])

    async def list_restore_usage(self) -> list[RestoreUsage]:
        """All restores, oldest first, with their branch counts."""
        rows = await self._client.fetch(
            "SELECT r.*, count(b.id) AS branch_count "
            "FROM restores r LEFT JOIN branches b ON b.restore_id = r.id "
            "GROUP BY r.id ORDER BY r.created_at ASC"
        )
        usage: list[RestoreUsage] = []
        for row in rows:
            count = int(row.pop("branch_count"))
            usage.append(RestoreUsage(restore=Restore(**row), branch_count=count))
        return usage

    async def latest_ready_restore(self) -> Restore | None:
        """Most recently ready restore (by ``ready_at``)."""
        rows = await self._client.fetch(
            "SELECT * FROM restores "
            "WHERE schema_ready = TRUE AND ready_at IS NOT NULL "
            "ORDER BY ready_at DESC LIMIT 1"
        )
        return Restore(**rows[0]) if rows else None

    async def mark_restore_ready(
        self, restore_id: str, data_ready: bool, ready_at: datetime
    ) -> Restore | None:
        """Set readiness flags and ``ready_at`` in one statement.

        The update only matches while ``ready_at`` is still NULL, so of two
        concurrent completions exactly one wins.

        Returns:
            The ready restore, or ``None`` if it was already marked ready.
        """
        fields: dict[str, Any] = {"schema_ready": True, "ready_at": ready_at}
        if data_ready:
            fields["data_ready"] = True
        try:
            row = await self._client.update(
                "restores", fields, {"id": restore_id, "ready_at": None}
            )
        except LookupError:
            return None
        return Restore(**row)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def find_branch_by_name(self, name: str) -> Branch | None:
        rows = await self._client.select("branches", filters={"name": name})
        return Branch(**rows[0]) if rows else None

    async def create_branch(self, branch: Branch) -> Branch:
        data = branch.model_dump()
        data["created_at"] = data["created_at"] or utcnow()
        row = await self._client.insert("branches", data)
        return Branch(**row)

    async def delete_branch(self, branch_id: str) -> None:
        await self._client.delete("branches", {"id": branch_id})

    async def list_branches(self, restore_id: str | None = None) -> list[Branch]:
        filters = {"restore_id": restore_id} if restore_id else None
        rows = await self._client.select("branches", filters=filters, order_by="created_at ASC")
        return [Branch(**row) for row in rows]

    # ------------------------------------------------------------------
    # Anonymization rules
    # ------------------------------------------------------------------

    async def list_anon_rules(self) -> list[AnonRule]:
        rows = await self._client.select("anon_rules", order_by="created_at ASC")
        return [AnonRule(**row) for row in rows]

    async def add_anon_rule(self, rule: AnonRule) -> AnonRule:
        data = rule.model_dump()
        data["created_at"] = data["created_at"] or utcnow()
        row = await self._client.insert("anon_rules", data)
        return AnonRule(**row)

    async def delete_anon_rule(self, rule_id: str) -> None:
        await self._client.delete("anon_rules", {"id": rule_id})
