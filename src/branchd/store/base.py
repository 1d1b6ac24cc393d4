"""Database client protocol for the branchd metadata store.

All methods are ``async def``; the worker, scheduler and CLI share one
event loop per process.

Usage:
    from branchd.store.base import DatabaseClient

    async def count(client: DatabaseClient) -> int:
        rows = await client.fetch("SELECT count(*) AS n FROM restores")
        return rows[0]["n"]
"""

from typing import Any, Protocol


class DatabaseClient(Protocol):
    """Dict-based CRUD interface the ``Repository`` is written against.

    Identifiers (table and column names) are quoted by the implementation,
    so reserved words such as ``user`` or ``table`` are valid column names.
    """

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table.

        Args:
            table: Table name.
            columns: ``"*"`` or comma-separated column names.
            filters: Optional dict of field=value filters (all must match via AND).
            order_by: Optional ``ORDER BY`` expression.

        Returns:
            List of dicts, one per row.  Empty list if no matches.
        """
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert a row and return it as stored."""
        ...

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Update matching rows and return the first updated row.

        Raises:
            LookupError: If no rows match filters.
        """
        ...

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete matching rows."""
        ...

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a read query with named parameters and return all rows.

        Example:
            rows = await client.fetch(
                "SELECT * FROM restores WHERE ready_at IS NOT NULL "
                "ORDER BY ready_at DESC LIMIT 1"
            )
        """
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a statement that returns no rows (DDL, bulk updates)."""
        ...

    async def close(self) -> None:
        """Dispose of pooled connections."""
        ...
