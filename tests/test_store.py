"""Tests for the metadata repository and the asyncpg adapter helpers."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from branchd.errors import ConfigurationError, NotFoundError
from branchd.store.base import DatabaseClient
from branchd.store.models import (
    AnonRule,
    Branch,
    Restore,
    ServerConfig,
    ValueType,
    generate_restore_name,
    new_id,
)
from branchd.store.postgres import AsyncPostgresAdapter, normalize_url, quote_ident
from branchd.store.repository import Repository
from branchd.store.schema import SCHEMA_SQL

READY_AT = "2025-09-15T12:00:00+00:00"


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def repo(client: AsyncMock) -> Repository:
    return Repository(client)


def _restore_row(**overrides) -> dict:
    row = {
        "id": "r1",
        "name": "restore_20250915120000",
        "schema_only": False,
        "schema_ready": False,
        "data_ready": False,
        "ready_at": None,
        "port": 0,
        "created_at": READY_AT,
    }
    row.update(overrides)
    return row


# ============================================================================
# Models
# ============================================================================


class TestModels:
    """Record models and their derived properties."""

    def test_restore_name_from_time(self) -> None:
        now = datetime(2025, 9, 15, 12, 0, 5, tzinfo=timezone.utc)
        assert generate_restore_name(now) == "restore_20250915120005"

    def test_ids_are_unique_and_sortable(self) -> None:
        first, second = new_id(), new_id()
        assert first != second
        assert len(first) == 26

    def test_data_ready_requires_schema_ready(self) -> None:
        with pytest.raises(PydanticValidationError):
            Restore(name="r", data_ready=True)

    def test_is_ready(self) -> None:
        assert not Restore(name="r", schema_ready=True).is_ready
        assert Restore(name="r", schema_ready=True, ready_at=READY_AT).is_ready

    @pytest.mark.parametrize(
        "conn,expected",
        [
            ("postgresql://u:p@h:5432/appdb", "appdb"),
            ("postgres://u@h/appdb?sslmode=require", "appdb"),
            ("host=h port=5432 dbname=warehouse user=u", "warehouse"),
            ("postgresql://u@h", "postgres"),
        ],
    )
    def test_database_name(self, conn: str, expected: str) -> None:
        assert ServerConfig(connection_string=conn).database_name == expected

    def test_target_database_for_snapshot(self) -> None:
        config = ServerConfig(
            connection_string="postgresql://h/ignored",
            crunchy_bridge_api_key="k",
            crunchy_bridge_database_name="appdb",
        )
        assert config.uses_snapshot
        assert config.target_database == "appdb"

    def test_admin_port(self) -> None:
        assert ServerConfig(postgres_version="16").admin_port == 5416
        with pytest.raises(ConfigurationError, match="unsupported postgres version"):
            ServerConfig(postgres_version="12").admin_port


# ============================================================================
# Repository
# ============================================================================


class TestRepositoryConfig:
    async def test_no_config(self, repo: Repository, client: AsyncMock) -> None:
        client.select.return_value = []
        assert await repo.get_config() is None

    async def test_save_inserts_first_config(self, repo: Repository, client: AsyncMock) -> None:
        config = ServerConfig(postgres_version="16")
        client.select.return_value = []
        client.insert.return_value = config.model_dump()

        await repo.save_config(config)

        table, data = client.insert.await_args.args
        assert table == "config"
        assert "created_at" not in data

    async def test_update_rejects_unknown_fields(self, repo: Repository) -> None:
        with pytest.raises(ValueError, match="Unknown config fields"):
            await repo.update_config("c1", bogus=1)


class TestRepositoryRestores:
    async def test_create_restore(self, repo: Repository, client: AsyncMock) -> None:
        client.insert.side_effect = lambda table, data: data
        restore = await repo.create_restore("restore_x", schema_only=True)
        table, data = client.insert.await_args.args
        assert table == "restores"
        assert data["name"] == "restore_x"
        assert data["schema_only"] is True
        assert restore.created_at is not None

    async def test_get_restore_not_found(self, repo: Repository, client: AsyncMock) -> None:
        client.select.return_value = []
        with pytest.raises(NotFoundError, match="restore not found: r9"):
            await repo.get_restore("r9")

    async def test_update_rejects_unknown_fields(self, repo: Repository) -> None:
        with pytest.raises(ValueError, match="Unknown restore fields"):
            await repo.update_restore("r1", color="blue")

    async def test_mark_ready_schema_only(self, repo: Repository, client: AsyncMock) -> None:
        client.update.return_value = _restore_row(schema_ready=True, ready_at=READY_AT)
        ready_at = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)

        restore = await repo.mark_restore_ready("r1", data_ready=False, ready_at=ready_at)

        table, fields, filters = client.update.await_args.args
        assert (table, filters) == ("restores", {"id": "r1", "ready_at": None})
        assert fields == {"schema_ready": True, "ready_at": ready_at}
        assert restore.is_ready

    async def test_mark_ready_with_data(self, repo: Repository, client: AsyncMock) -> None:
        client.update.return_value = _restore_row(
            schema_ready=True, data_ready=True, ready_at=READY_AT
        )
        await repo.mark_restore_ready("r1", data_ready=True, ready_at=datetime.now(timezone.utc))
        assert client.update.await_args.args[1]["data_ready"] is True

    async def test_mark_ready_loses_to_earlier_completion(
        self, repo: Repository, client: AsyncMock
    ) -> None:
        client.update.side_effect = LookupError("No rows matched filters")
        ready_at = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)
        assert await repo.mark_restore_ready("r1", data_ready=True, ready_at=ready_at) is None

    async def test_list_restore_usage(self, repo: Repository, client: AsyncMock) -> None:
        client.fetch.return_value = [
            {**_restore_row(id="r1", name="a"), "branch_count": 2},
            {**_restore_row(id="r2", name="b"), "branch_count": 0},
        ]
        usage = await repo.list_restore_usage()
        assert [(u.restore.name, u.branch_count) for u in usage] == [("a", 2), ("b", 0)]
        assert "LEFT JOIN branches" in client.fetch.await_args.args[0]

    async def test_count(self, repo: Repository, client: AsyncMock) -> None:
        client.fetch.return_value = [{"n": 3}]
        assert await repo.count_restores() == 3

    async def test_latest_ready(self, repo: Repository, client: AsyncMock) -> None:
        client.fetch.return_value = []
        assert await repo.latest_ready_restore() is None
        assert "ORDER BY ready_at DESC" in client.fetch.await_args.args[0]


class TestRepositoryBranchesAndRules:
    async def test_create_branch_sets_created_at(self, repo: Repository, client: AsyncMock) -> None:
        client.insert.side_effect = lambda table, data: data
        branch = await repo.create_branch(
            Branch(name="b", restore_id="r1", user="u", password="p", port=15432)
        )
        assert client.insert.await_args.args[0] == "branches"
        assert branch.created_at is not None

    async def test_list_branches_filters_by_restore(self, repo: Repository, client: AsyncMock) -> None:
        client.select.return_value = []
        await repo.list_branches("r1")
        assert client.select.await_args.kwargs["filters"] == {"restore_id": "r1"}

    async def test_add_rule(self, repo: Repository, client: AsyncMock) -> None:
        client.insert.side_effect = lambda table, data: data
        rule = await repo.add_anon_rule(
            AnonRule(table="users", column="id", template="${i}", value_type=ValueType.INTEGER)
        )
        assert client.insert.await_args.args[0] == "anon_rules"
        assert rule.value_type is ValueType.INTEGER

    async def test_create_schema_runs_every_statement(self, repo: Repository, client: AsyncMock) -> None:
        await repo.create_schema()
        assert client.execute.await_count == len(SCHEMA_SQL)


# ============================================================================
# Adapter helpers
# ============================================================================


class TestAdapter:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
            ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
            ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
        ],
    )
    def test_normalize_url(self, url: str, expected: str) -> None:
        assert normalize_url(url) == expected

    def test_none_filter_matches_null(self) -> None:
        params: dict = {}
        clause = AsyncPostgresAdapter._where({"id": "r1", "ready_at": None}, params, "p")
        assert clause == '"id" = :p_0 AND "ready_at" IS NULL'
        assert params == {"p_0": "r1"}

    def test_quote_ident(self) -> None:
        assert quote_ident('a"b') == '"a""b"'

    async def test_serializes_datetimes(self) -> None:
        adapter = AsyncPostgresAdapter("postgresql://u@localhost/db")
        try:
            row = adapter._serialize_row({"ready_at": datetime(2025, 9, 15, tzinfo=timezone.utc)})
            assert row == {"ready_at": "2025-09-15T00:00:00+00:00"}
        finally:
            await adapter.close()

    def test_satisfies_protocol(self) -> None:
        for method in ("select", "insert", "update", "delete", "fetch", "execute", "close"):
            assert hasattr(DatabaseClient, method)
            assert hasattr(AsyncPostgresAdapter, method)
