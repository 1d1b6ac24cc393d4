"""DDL for the branchd metadata database."""

SCHEMA_SQL: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS config (
        id VARCHAR(26) PRIMARY KEY,
        connection_string TEXT NOT NULL DEFAULT '',
        postgres_version VARCHAR(8) NOT NULL DEFAULT '',
        schema_only BOOLEAN NOT NULL DEFAULT TRUE,
        crunchy_bridge_api_key TEXT NOT NULL DEFAULT '',
        crunchy_bridge_cluster_name TEXT NOT NULL DEFAULT '',
        crunchy_bridge_database_name TEXT NOT NULL DEFAULT '',
        branch_postgresql_conf TEXT NOT NULL DEFAULT '',
        post_restore_sql TEXT NOT NULL DEFAULT '',
        refresh_schedule TEXT NOT NULL DEFAULT '',
        last_refreshed_at TIMESTAMPTZ,
        next_refresh_at TIMESTAMPTZ,
        max_restores INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS restores (
        id VARCHAR(26) PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        schema_only BOOLEAN NOT NULL DEFAULT FALSE,
        schema_ready BOOLEAN NOT NULL DEFAULT FALSE,
        data_ready BOOLEAN NOT NULL DEFAULT FALSE,
        ready_at TIMESTAMPTZ,
        port INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (NOT data_ready OR schema_ready)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branches (
        id VARCHAR(26) PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        restore_id VARCHAR(26) NOT NULL REFERENCES restores (id),
        created_by TEXT NOT NULL DEFAULT '',
        "user" TEXT NOT NULL,
        password TEXT NOT NULL,
        port INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS anon_rules (
        id VARCHAR(26) PRIMARY KEY,
        "table" TEXT NOT NULL,
        "column" TEXT NOT NULL,
        template TEXT NOT NULL DEFAULT '',
        value_type VARCHAR(16) NOT NULL DEFAULT 'text',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_restores_ready_at ON restores (ready_at)",
    "CREATE INDEX IF NOT EXISTS idx_branches_restore_id ON branches (restore_id)",
]
