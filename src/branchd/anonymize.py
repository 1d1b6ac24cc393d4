"""Anonymization rules compiled to SQL and applied to a finished restore.

Each table gets one statement.  A CTE numbers every row in a stable order
(the single-column primary key when there is one, ``ctid`` otherwise) and
one ``UPDATE`` rewrites every targeted column from its template::

    -- Anonymize table: users
    WITH numbered_rows AS (
      SELECT ctid, row_number() OVER (ORDER BY ctid) AS _row_num
      FROM "users"
    )
    UPDATE "users"
    SET "email" = 'user_' || numbered_rows._row_num || '@x.com'
    FROM numbered_rows
    WHERE "users".ctid = numbered_rows.ctid
      AND ("users"."email" IS DISTINCT FROM 'user_' || numbered_rows._row_num || '@x.com');

The ``IS DISTINCT FROM`` guard leaves already-rewritten rows alone, so
applying the same rules twice yields the same state as applying them once.

Templates mark the row number with ``${index}`` (or the short form
``${i}``).
"""

import logging
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping

from branchd.commands import run_script
from branchd.errors import AnonymizationError, CommandError
from branchd.store.models import AnonRule, Restore, ServerConfig, ValueType
from branchd.templates import render_script

logger = logging.getLogger(__name__)

ROW_NUMBER = "numbered_rows._row_num"
PLACEHOLDER_RE = re.compile(r"\$\{(?:index|i)\}")

_TRUE_VALUES = {"true", "t", "1", "yes", "y", "on"}

PRIMARY_KEY_SQL = """\
SELECT n.nspname, c.relname, a.attname
FROM pg_index i
JOIN pg_class c ON c.oid = i.indrelid
JOIN pg_namespace n ON n.oid = c.relnamespace
JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = i.indkey[0]
WHERE i.indisprimary
  AND i.indnatts = 1
  AND n.nspname NOT IN ('pg_catalog', 'information_schema');"""


# ============================================================================
# Quoting
# ============================================================================


def quote_identifier(name: str) -> str:
    """Double-quote an identifier; ``schema.table`` is quoted per part."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# ============================================================================
# Compilation
# ============================================================================


def split_template(template: str) -> list[str | None]:
    """Split a template into literal segments and ``None`` for each placeholder.

    Empty literal segments are dropped, so ``"${i}"`` becomes ``[None]`` and
    ``"user_${i}@x.com"`` becomes ``["user_", None, "@x.com"]``.
    """
    parts: list[str | None] = []
    for i, literal in enumerate(PLACEHOLDER_RE.split(template)):
        if i > 0:
            parts.append(None)
        if literal:
            parts.append(literal)
    return parts


def render_expression(template: str, value_type: ValueType) -> str:
    """SQL expression producing a rule's value for the current row.

    Examples:
        >>> render_expression("user_${i}@x.com", ValueType.TEXT)
        "'user_' || numbered_rows._row_num::text || '@x.com'"
        >>> render_expression("${i}", ValueType.TEXT)
        'numbered_rows._row_num::text'
        >>> render_expression("${i}", ValueType.INTEGER)
        '(numbered_rows._row_num::text)::integer'
    """
    if value_type is ValueType.NULL:
        return "NULL"
    if value_type is ValueType.BOOLEAN:
        return "TRUE" if template.strip().lower() in _TRUE_VALUES else "FALSE"

    parts = split_template(template)

    if value_type is ValueType.INTEGER:
        pieces = [
            f"{ROW_NUMBER}::text" if part is None else quote_literal(part) for part in parts
        ]
        return "(" + (" || ".join(pieces) or "''") + ")::integer"

    if None not in parts:
        return quote_literal(template)
    return " || ".join(
        f"{ROW_NUMBER}::text" if part is None else quote_literal(part) for part in parts
    )


def generate_table_sql(table: str, rules: list[AnonRule], primary_key: str | None = None) -> str:
    """One numbered-rows UPDATE covering every rule for ``table``."""
    quoted_table = quote_identifier(table)
    order_by = quote_identifier(primary_key) if primary_key else "ctid"

    assignments: list[str] = []
    guards: list[str] = []
    for rule in rules:
        column = quote_identifier(rule.column)
        expression = render_expression(rule.template, rule.value_type)
        assignments.append(f"{column} = {expression}")
        guards.append(f"{quoted_table}.{column} IS DISTINCT FROM {expression}")

    return (
        f"-- Anonymize table: {table}\n"
        "WITH numbered_rows AS (\n"
        f"  SELECT ctid, row_number() OVER (ORDER BY {order_by}) AS _row_num\n"
        f"  FROM {quoted_table}\n"
        ")\n"
        f"UPDATE {quoted_table}\n"
        "SET " + ",\n    ".join(assignments) + "\n"
        "FROM numbered_rows\n"
        f"WHERE {quoted_table}.ctid = numbered_rows.ctid\n"
        "  AND (" + "\n    OR ".join(guards) + ");"
    )


def generate_sql(
    rules: Iterable[AnonRule], primary_keys: Mapping[str, str] | None = None
) -> str:
    """Compile rules to SQL, one statement per table.

    Tables appear in the order of their first rule.

    Args:
        rules: Anonymization rules.
        primary_keys: Single-column primary key per table name; tables
            missing here are ordered by ``ctid``.

    Returns:
        SQL text, or ``""`` when there are no rules.
    """
    by_table: dict[str, list[AnonRule]] = defaultdict(list)
    for rule in rules:
        by_table[rule.table].append(rule)

    primary_keys = primary_keys or {}
    return "\n\n".join(
        generate_table_sql(table, table_rules, primary_keys.get(table))
        for table, table_rules in by_table.items()
    )


def parse_primary_keys(output: str) -> dict[str, str]:
    """Parse ``schema|table|column`` rows from ``psql -tA``.

    Tables in ``public`` are also keyed by their bare name.
    """
    keys: dict[str, str] = {}
    for line in output.splitlines():
        fields = line.strip().split("|")
        if len(fields) != 3:
            continue
        schema, table, column = fields
        keys[f"{schema}.{table}"] = column
        if schema == "public":
            keys[table] = column
    return keys


# ============================================================================
# Execution
# ============================================================================


async def run_sql(
    sql: str,
    *,
    pg_version: str,
    port: int,
    database: str,
    tuples_only: bool = False,
    timeout: float | None = None,
    label: str = "psql",
) -> str:
    """Run SQL on a local cluster as the ``postgres`` user.

    Stops at the first error (``ON_ERROR_STOP``).

    Raises:
        CommandError: If psql fails or times out.
    """
    script = render_script(
        "run_sql.sh.j2",
        pg_version=pg_version,
        port=port,
        database=database,
        sql=sql,
        tuples_only=tuples_only,
    )
    return await run_script(script, timeout=timeout, label=label)


class Anonymizer:
    """Apply the configured rules to a restored database.

    Args:
        command_timeout: Timeout for the primary-key lookup.
    """

    def __init__(self, command_timeout: float = 60.0) -> None:
        self._command_timeout = command_timeout

    async def discover_primary_keys(self, restore: Restore, config: ServerConfig) -> dict[str, str]:
        output = await run_sql(
            PRIMARY_KEY_SQL,
            pg_version=config.postgres_version,
            port=restore.port,
            database=config.target_database,
            tuples_only=True,
            timeout=self._command_timeout,
            label=f"primary key lookup for {restore.name}",
        )
        return parse_primary_keys(output)

    async def apply(self, rules: list[AnonRule], restore: Restore, config: ServerConfig) -> int:
        """Rewrite the restored data according to ``rules``.

        Args:
            rules: Rules to apply; nothing runs when empty.
            restore: Finished restore (provides the port).
            config: Server configuration (version, target database).

        Returns:
            Number of rules applied.

        Raises:
            AnonymizationError: If key discovery or the UPDATEs fail.  The
                restored data is left in place.
        """
        if not rules:
            logger.info("No anonymization rules configured for %s, skipping", restore.name)
            return 0

        database = config.target_database
        logger.info(
            "Applying %d anonymization rules to %s (database=%s, port=%d)",
            len(rules),
            restore.name,
            database,
            restore.port,
        )

        try:
            primary_keys = await self.discover_primary_keys(restore, config)
            sql = generate_sql(rules, primary_keys)
            await run_sql(
                sql,
                pg_version=config.postgres_version,
                port=restore.port,
                database=database,
                label=f"anonymization of {restore.name}",
            )
        except CommandError as e:
            logger.error("Anonymization failed for %s: %s\n%s", restore.name, e, e.output)
            raise AnonymizationError(f"failed to apply anonymization rules: {e}") from e

        logger.info("Anonymization rules applied to %s", restore.name)
        return len(rules)
