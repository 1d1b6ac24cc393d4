"""Async PostgreSQL client for the branchd metadata store.

Provides ``AsyncPostgresAdapter``, an implementation of the
``DatabaseClient`` protocol on SQLAlchemy's async engine with the
``asyncpg`` driver.

Usage:
    from branchd.store.postgres import AsyncPostgresAdapter

    adapter = AsyncPostgresAdapter("postgresql://branchd@localhost/branchd")
    rows = await adapter.select("restores", order_by="created_at")
    await adapter.close()
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


def make_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Build the pooled engine shared by workers, the scheduler and the CLI.

    Pool of 5 plus 10 overflow, pre-pinged and recycled every 5 minutes.
    ``kwargs`` override any default.
    """
    defaults: dict[str, Any] = {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "echo": False,
        "connect_args": {"timeout": 5},
    }
    merged = {**defaults, **kwargs}

    return create_async_engine(database_url, **merged)


def normalize_url(database_url: str) -> str:
    """Rewrite ``postgres://`` and ``postgresql://`` to the asyncpg scheme."""
    url = database_url
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def quote_ident(name: str) -> str:
    """Double-quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class AsyncPostgresAdapter:
    """``DatabaseClient`` backed by SQLAlchemy's async engine and asyncpg.

    Args:
        database_url: PostgreSQL connection URL.  Accepts ``postgres://``,
            ``postgresql://``, or ``postgresql+asyncpg://`` schemes.
        **engine_kwargs: Engine option overrides, see ``make_engine``.
    """

    def __init__(self, database_url: str, **engine_kwargs: Any) -> None:
        self._engine: AsyncEngine = make_engine(
            normalize_url(database_url), **engine_kwargs
        )

    # ------------------------------------------------------------------
    # Table operations
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Rows of ``table`` matching every ``filters`` pair by equality."""
        params: dict[str, Any] = {}
        where_clause = ""
        if filters:
            where_clause = " WHERE " + self._where(filters, params, "p")

        if columns.strip() != "*":
            columns = ", ".join(quote_ident(c.strip()) for c in columns.split(","))
        order_clause = f" ORDER BY {order_by}" if order_by else ""

        return await self.fetch(
            f"SELECT {columns} FROM {quote_ident(table)}{where_clause}{order_clause}",
            params,
        )

    async def insert(self, table: str, data: dict) -> dict:
        """Insert one row and return it as stored, defaults included."""
        columns = list(data.keys())
        params = {f"v_{i}": self._param(v) for i, v in enumerate(data.values())}
        placeholders = ", ".join(f":v_{i}" for i in range(len(columns)))

        query = text(
            f"INSERT INTO {quote_ident(table)} "
            f"({', '.join(quote_ident(c) for c in columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )

        async with self._engine.begin() as conn:
            result = await conn.execute(query, params)
            return self._rows(result)[0]

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Apply ``data`` to the matching rows and return the first one.

        Raises:
            LookupError: If no row matched ``filters``.
        """
        params: dict[str, Any] = {}
        set_parts: list[str] = []
        for i, (k, v) in enumerate(data.items()):
            set_parts.append(f"{quote_ident(k)} = :set_{i}")
            params[f"set_{i}"] = self._param(v)

        where_clause = self._where(filters, params, "where")

        query = text(
            f"UPDATE {quote_ident(table)} SET {', '.join(set_parts)} "
            f"WHERE {where_clause} RETURNING *"
        )

        async with self._engine.begin() as conn:
            result = await conn.execute(query, params)
            rows = self._rows(result)
        if not rows:
            raise LookupError(f"No rows matched filters: {filters}")
        return rows[0]

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        params: dict[str, Any] = {}
        where_clause = self._where(filters, params, "p")
        query = text(f"DELETE FROM {quote_ident(table)} WHERE {where_clause}")

        async with self._engine.begin() as conn:
            await conn.execute(query, params)

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a read query and return every row as a dict."""
        async with self._engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            return self._rows(result)

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Run a statement that returns nothing, in its own transaction."""
        async with self._engine.begin() as conn:
            await conn.execute(text(sql), params or {})

    async def close(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _where(filters: dict[str, Any], params: dict[str, Any], prefix: str) -> str:
        parts: list[str] = []
        for i, (k, v) in enumerate(filters.items()):
            if v is None:
                parts.append(f"{quote_ident(k)} IS NULL")
                continue
            name = f"{prefix}_{i}"
            parts.append(f"{quote_ident(k)} = :{name}")
            params[name] = v
        return " AND ".join(parts)

    @staticmethod
    def _param(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    def _serialize_value(self, value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _serialize_row(self, row: dict) -> dict:
        return {k: self._serialize_value(v) for k, v in row.items()}

    def _rows(self, result: Any) -> list[dict]:
        """Materialize a result as JSON-friendly dicts (UUIDs and datetimes as strings)."""
        keys = list(result.keys())
        return [self._serialize_row(dict(zip(keys, row))) for row in result.fetchall()]
