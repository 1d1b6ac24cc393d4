"""Command line interface for branchd.

Usage:
    branchd init-db
    branchd config set --connection-string postgresql://app@db/appdb --postgres-version 16
    branchd config show
    branchd restore start [--schema-only]
    branchd restore list
    branchd restore status restore_20250915120000
    branchd restore complete restore_20250915120000
    branchd restore delete restore_20250915120000
    branchd branch create feature-x
    branchd branch delete feature-x
    branchd branch list
    branchd anonymize add users email "user_${index}@example.com"
    branchd anonymize list
    branchd anonymize delete 0193a4c2e8f1b7d5e9a0c3f6
    branchd anonymize preview
    branchd worker
    branchd scheduler

Commands:
    init-db    - Create the metadata tables
    config     - Set and show the restore source and refresh policy
    restore    - Start, inspect and delete restores
    branch     - Create, delete and list branches
    anonymize  - Manage anonymization rules and preview their SQL
    worker     - Run the restore task worker pool
    scheduler  - Run the refresh scheduler

Every command reads service settings from ``--config`` (default
``/etc/branchd/branchd.toml``).
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from branchd.anonymize import generate_sql
from branchd.branches.service import BranchService
from branchd.config.loader import load_settings
from branchd.config.models import BranchdSettings
from branchd.cron import next_refresh, validate_schedule
from branchd.errors import BranchdError, NotFoundError
from branchd.log import configure_logging
from branchd.refresh import RefreshScheduler
from branchd.restore.orchestrator import RestoreOrchestrator
from branchd.restore.status import RestoreStatus
from branchd.store.models import AnonRule, ServerConfig, ValueType, utcnow
from branchd.store.postgres import AsyncPostgresAdapter
from branchd.store.repository import Repository
from branchd.tasks.queue import TaskKind, TaskQueue
from branchd.tasks.worker import Worker

console = Console()

_STATUS_STYLES = {
    RestoreStatus.PENDING: "dim",
    RestoreStatus.RUNNING: "yellow",
    RestoreStatus.SUCCESS: "green",
    RestoreStatus.FAILED: "red",
    RestoreStatus.UNKNOWN: "red",
    RestoreStatus.NOT_FOUND: "red",
}


# ============================================================================
# Helpers
# ============================================================================


def _settings(args: argparse.Namespace) -> BranchdSettings:
    config_path = Path(args.config) if args.config else None
    settings = load_settings(config_path)
    configure_logging(args.log_level or settings.log_level, Console(stderr=True))
    return settings


def _repository(settings: BranchdSettings) -> Repository:
    return Repository(AsyncPostgresAdapter(settings.database_url))


def _error(message: object) -> int:
    console.print(f"[bold red]x[/bold red] {message}")
    return 1


def _install_stop_handler(stop) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop)


def _config_table(config: ServerConfig) -> Table:
    if config.uses_snapshot:
        source = "snapshot (Crunchy Bridge)"
    elif config.connection_string:
        source = f"logical (database {config.database_name})"
    else:
        source = "-"

    table = Table(title="Server configuration", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Source", source)
    table.add_row("Connection string", "set" if config.connection_string else "-")
    table.add_row("Postgres version", config.postgres_version or "-")
    table.add_row("Schema only", "yes" if config.schema_only else "no")
    table.add_row("Crunchy Bridge API key", "set" if config.crunchy_bridge_api_key else "-")
    table.add_row("Crunchy Bridge cluster", config.crunchy_bridge_cluster_name or "-")
    table.add_row("Crunchy Bridge database", config.crunchy_bridge_database_name or "-")
    table.add_row("Refresh schedule", config.refresh_schedule or "-")
    table.add_row(
        "Next refresh",
        config.next_refresh_at.isoformat(timespec="seconds") if config.next_refresh_at else "-",
    )
    table.add_row("Max restores", str(config.max_restores))
    table.add_row(
        "Branch settings", f"{len(config.branch_postgresql_conf.splitlines())} line(s)"
    )
    table.add_row("Post-restore SQL", "set" if config.post_restore_sql.strip() else "-")
    return table


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_init_db(args: argparse.Namespace) -> int:
    """Create the metadata tables (idempotent)."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        await repository.create_schema()
    finally:
        await repository.close()
    console.print("[bold green]v[/bold green] Metadata tables ready")
    return 0


_CONFIG_OPTIONS = (
    "connection_string",
    "postgres_version",
    "schema_only",
    "crunchy_bridge_api_key",
    "crunchy_bridge_cluster_name",
    "crunchy_bridge_database_name",
    "refresh_schedule",
    "max_restores",
)

# option dest -> config field read from the named file
_CONFIG_FILE_OPTIONS = {
    "branch_conf_file": "branch_postgresql_conf",
    "post_restore_sql_file": "post_restore_sql",
}


async def _async_config_set(args: argparse.Namespace) -> int:
    """Create or update the server configuration singleton.

    Only the options given on the command line change; a new refresh
    schedule also recomputes the next refresh time.
    """
    fields: dict[str, object] = {}
    for name in _CONFIG_OPTIONS:
        value = getattr(args, name)
        if value is not None:
            fields[name] = value
    for option, field in _CONFIG_FILE_OPTIONS.items():
        path = getattr(args, option)
        if path is not None:
            fields[field] = Path(path).read_text()
    if not fields:
        return _error("Nothing to update, pass at least one option")

    settings = _settings(args)
    repository = _repository(settings)
    try:
        if "refresh_schedule" in fields:
            schedule = str(fields["refresh_schedule"])
            validate_schedule(schedule)
            fields["next_refresh_at"] = next_refresh(schedule, utcnow())
        existing = await repository.get_config()
        current = existing.model_dump() if existing else {}
        config = await repository.save_config(ServerConfig.model_validate({**current, **fields}))
    except BranchdError as e:
        return _error(e)
    except PydanticValidationError as e:
        return _error(f"Invalid server configuration: {e}")
    finally:
        await repository.close()

    console.print("[bold green]v[/bold green] Configuration saved")
    console.print(_config_table(config))
    return 0


async def _async_config_show(args: argparse.Namespace) -> int:
    settings = _settings(args)
    repository = _repository(settings)
    try:
        config = await repository.get_config()
    finally:
        await repository.close()

    if config is None:
        console.print("[yellow]No configuration yet, run 'branchd config set'.[/yellow]")
        return 1
    console.print(_config_table(config))
    return 0


async def _async_restore_start(args: argparse.Namespace) -> int:
    """Create a restore and queue its start task."""
    settings = _settings(args)
    repository = _repository(settings)
    queue = TaskQueue.from_url(settings.redis_url)
    try:
        orchestrator = RestoreOrchestrator(repository, settings)
        restore = await orchestrator.create_restore(schema_only=args.schema_only)
        await queue.enqueue(TaskKind.START, restore.id)
    except BranchdError as e:
        return _error(e)
    finally:
        await queue.close()
        await repository.close()

    console.print(
        f"[bold green]v[/bold green] Restore [bold cyan]{restore.name}[/bold cyan] queued "
        f"(schema_only={restore.schema_only})"
    )
    return 0


async def _async_restore_list(args: argparse.Namespace) -> int:
    """Print every restore with its status and branch count."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        orchestrator = RestoreOrchestrator(repository, settings)
        usages = await repository.list_restore_usage()

        table = Table(title="Restores")
        table.add_column("Name", style="cyan")
        table.add_column("Status")
        table.add_column("Schema only")
        table.add_column("Port", justify="right")
        table.add_column("Ready at")
        table.add_column("Branches", justify="right")

        for usage in usages:
            restore = usage.restore
            status, _ = orchestrator.describe(restore)
            style = _STATUS_STYLES[status]
            table.add_row(
                restore.name,
                f"[{style}]{status.value}[/{style}]",
                "yes" if restore.schema_only else "no",
                str(restore.port or "-"),
                restore.ready_at.isoformat(timespec="seconds") if restore.ready_at else "-",
                str(usage.branch_count),
            )
    finally:
        await repository.close()

    if not usages:
        console.print("[yellow]No restores.[/yellow]")
        return 0
    console.print(table)
    return 0


async def _async_restore_status(args: argparse.Namespace) -> int:
    """Show one restore's status and, when terminal, its log tail."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        orchestrator = RestoreOrchestrator(repository, settings)
        restore = await orchestrator.get_by_name(args.name)
        status, tail = orchestrator.describe(restore)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    style = _STATUS_STYLES[status]
    table = Table(title=f"Restore {restore.name}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{status.value}[/{style}]")
    table.add_row("Schema only", "yes" if restore.schema_only else "no")
    table.add_row("Schema ready", "yes" if restore.schema_ready else "no")
    table.add_row("Data ready", "yes" if restore.data_ready else "no")
    table.add_row("Port", str(restore.port or "-"))
    table.add_row("Log", str(orchestrator.process_manager.log_path(restore.name)))
    console.print(table)

    if tail and status.is_terminal and status is not RestoreStatus.SUCCESS:
        console.print("\n[bold]Log tail:[/bold]")
        console.print(tail, markup=False, highlight=False)
    return 0


async def _async_restore_complete(args: argparse.Namespace) -> int:
    """Retry the post-restore steps of a restore whose script succeeded.

    Runs the same check the worker runs: post-restore SQL, anonymization,
    readiness, then the retention sweep.
    """
    settings = _settings(args)
    repository = _repository(settings)
    try:
        orchestrator = RestoreOrchestrator(repository, settings)
        restore = await orchestrator.get_by_name(args.name)
        status = await orchestrator.poll(restore.id)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    if status is RestoreStatus.RUNNING:
        console.print(f"[yellow]Restore {args.name} is still running[/yellow]")
        return 0
    console.print(f"[bold green]v[/bold green] Restore [cyan]{args.name}[/cyan] is ready")
    return 0


async def _async_restore_delete(args: argparse.Namespace) -> int:
    """Kill, clean up and delete a restore without branches."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        orchestrator = RestoreOrchestrator(repository, settings)
        restore = await orchestrator.get_by_name(args.name)
        await orchestrator.delete(restore)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    console.print(f"[bold green]v[/bold green] Restore [cyan]{args.name}[/cyan] deleted")
    return 0


async def _async_branch_create(args: argparse.Namespace) -> int:
    """Create a branch and print its connection details."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        service = BranchService(repository, settings)
        branch = await service.create(args.name, created_by=args.created_by)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    table = Table(title=f"Branch {branch.name}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Port", str(branch.port))
    table.add_row("User", branch.user)
    table.add_row("Password", branch.password)
    console.print(table)
    return 0


async def _async_branch_delete(args: argparse.Namespace) -> int:
    """Delete a branch and its clone."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        await BranchService(repository, settings).delete(args.name)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    console.print(f"[bold green]v[/bold green] Branch [cyan]{args.name}[/cyan] deleted")
    return 0


async def _async_branch_list(args: argparse.Namespace) -> int:
    """Print every branch."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        branches = await BranchService(repository, settings).list_branches()
        restores = {r.id: r.name for r in await repository.list_restores()}
    finally:
        await repository.close()

    if not branches:
        console.print("[yellow]No branches.[/yellow]")
        return 0

    table = Table(title="Branches")
    table.add_column("Name", style="cyan")
    table.add_column("Restore")
    table.add_column("Port", justify="right")
    table.add_column("User")
    table.add_column("Created by")
    for branch in branches:
        table.add_row(
            branch.name,
            restores.get(branch.restore_id, branch.restore_id),
            str(branch.port),
            branch.user,
            branch.created_by or "-",
        )
    console.print(table)
    return 0


async def _async_anonymize_add(args: argparse.Namespace) -> int:
    """Add a global anonymization rule."""
    if not args.table.strip() or not args.column.strip():
        return _error("Table and column must not be empty")

    settings = _settings(args)
    repository = _repository(settings)
    try:
        rule = await repository.add_anon_rule(
            AnonRule(
                table=args.table,
                column=args.column,
                template=args.template,
                value_type=ValueType(args.type),
            )
        )
    finally:
        await repository.close()

    console.print(
        f"[bold green]v[/bold green] Rule [cyan]{rule.table}.{rule.column}[/cyan] added "
        f"(id={rule.id})"
    )
    return 0


async def _async_anonymize_list(args: argparse.Namespace) -> int:
    settings = _settings(args)
    repository = _repository(settings)
    try:
        rules = await repository.list_anon_rules()
    finally:
        await repository.close()

    if not rules:
        console.print("[yellow]No anonymization rules configured.[/yellow]")
        return 0

    table = Table(title="Anonymization rules")
    table.add_column("ID", style="dim")
    table.add_column("Table", style="cyan")
    table.add_column("Column", style="cyan")
    table.add_column("Type")
    table.add_column("Template")
    for rule in rules:
        table.add_row(rule.id, rule.table, rule.column, rule.value_type.value, rule.template)
    console.print(table)
    return 0


async def _async_anonymize_delete(args: argparse.Namespace) -> int:
    settings = _settings(args)
    repository = _repository(settings)
    try:
        rules = await repository.list_anon_rules()
        if not any(rule.id == args.rule_id for rule in rules):
            raise NotFoundError(f"anonymization rule not found: {args.rule_id}")
        await repository.delete_anon_rule(args.rule_id)
    except BranchdError as e:
        return _error(e)
    finally:
        await repository.close()

    console.print(f"[bold green]v[/bold green] Rule [cyan]{args.rule_id}[/cyan] deleted")
    return 0


async def _async_anonymize_preview(args: argparse.Namespace) -> int:
    """Print the SQL the configured rules compile to (ordered by ctid)."""
    settings = _settings(args)
    repository = _repository(settings)
    try:
        rules = await repository.list_anon_rules()
    finally:
        await repository.close()

    if not rules:
        console.print("[yellow]No anonymization rules configured.[/yellow]")
        return 0
    console.print(Syntax(generate_sql(rules), "sql", word_wrap=True))
    return 0


async def _async_worker(args: argparse.Namespace) -> int:
    """Run the worker pool until SIGINT/SIGTERM."""
    settings = _settings(args)
    repository = _repository(settings)
    queue = TaskQueue.from_url(settings.redis_url)
    worker = Worker(queue, RestoreOrchestrator(repository, settings), settings)
    _install_stop_handler(worker.stop)
    try:
        await worker.run()
    finally:
        await queue.close()
        await repository.close()
    return 0


async def _async_scheduler(args: argparse.Namespace) -> int:
    """Run the refresh scheduler until SIGINT/SIGTERM."""
    settings = _settings(args)
    repository = _repository(settings)
    queue = TaskQueue.from_url(settings.redis_url)
    scheduler = RefreshScheduler(repository, queue, interval=settings.refresh_interval_seconds)
    _install_stop_handler(scheduler.stop)
    try:
        await scheduler.run()
    finally:
        await queue.close()
        await repository.close()
    return 0


# ============================================================================
# Command wrappers
# ============================================================================


def _run(coro) -> int:
    try:
        return asyncio.run(coro)
    except FileNotFoundError as e:
        return _error(e)
    except ValueError as e:
        return _error(f"Invalid configuration: {e}")


def cmd_init_db(args: argparse.Namespace) -> int:
    return _run(_async_init_db(args))


def cmd_config_set(args: argparse.Namespace) -> int:
    return _run(_async_config_set(args))


def cmd_config_show(args: argparse.Namespace) -> int:
    return _run(_async_config_show(args))


def cmd_restore_start(args: argparse.Namespace) -> int:
    return _run(_async_restore_start(args))


def cmd_restore_list(args: argparse.Namespace) -> int:
    return _run(_async_restore_list(args))


def cmd_restore_status(args: argparse.Namespace) -> int:
    return _run(_async_restore_status(args))


def cmd_restore_complete(args: argparse.Namespace) -> int:
    return _run(_async_restore_complete(args))


def cmd_restore_delete(args: argparse.Namespace) -> int:
    return _run(_async_restore_delete(args))


def cmd_branch_create(args: argparse.Namespace) -> int:
    return _run(_async_branch_create(args))


def cmd_branch_delete(args: argparse.Namespace) -> int:
    return _run(_async_branch_delete(args))


def cmd_branch_list(args: argparse.Namespace) -> int:
    return _run(_async_branch_list(args))


def cmd_anonymize_add(args: argparse.Namespace) -> int:
    return _run(_async_anonymize_add(args))


def cmd_anonymize_list(args: argparse.Namespace) -> int:
    return _run(_async_anonymize_list(args))


def cmd_anonymize_delete(args: argparse.Namespace) -> int:
    return _run(_async_anonymize_delete(args))


def cmd_anonymize_preview(args: argparse.Namespace) -> int:
    return _run(_async_anonymize_preview(args))


def cmd_worker(args: argparse.Namespace) -> int:
    """Run the worker pool.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return _run(_async_worker(args))


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Run the refresh scheduler.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return _run(_async_scheduler(args))


# ============================================================================
# Entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branchd",
        description="Disposable PostgreSQL branches from restored copies of a source database",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to branchd.toml (default: /etc/branchd/branchd.toml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level (DEBUG, INFO, WARNING, ...)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init-db
    p_init = subparsers.add_parser("init-db", help="Create the metadata tables")
    p_init.set_defaults(func=cmd_init_db)

    # config
    p_config = subparsers.add_parser("config", help="Server configuration")
    config_sub = p_config.add_subparsers(dest="config_command", required=True)

    p_set = config_sub.add_parser("set", help="Create or update the server configuration")
    p_set.add_argument("--connection-string", dest="connection_string", help="Source database URL")
    p_set.add_argument("--postgres-version", dest="postgres_version", help="Source major version")
    p_set.add_argument(
        "--schema-only",
        dest="schema_only",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Default restore mode",
    )
    p_set.add_argument("--crunchy-bridge-api-key", dest="crunchy_bridge_api_key")
    p_set.add_argument("--crunchy-bridge-cluster-name", dest="crunchy_bridge_cluster_name")
    p_set.add_argument("--crunchy-bridge-database-name", dest="crunchy_bridge_database_name")
    p_set.add_argument(
        "--refresh-schedule",
        dest="refresh_schedule",
        help="Cron expression for automatic refresh (empty string disables)",
    )
    p_set.add_argument("--max-restores", dest="max_restores", type=int)
    p_set.add_argument(
        "--branch-conf-file",
        dest="branch_conf_file",
        help="File of postgresql.conf overrides applied to new branches",
    )
    p_set.add_argument(
        "--post-restore-sql-file",
        dest="post_restore_sql_file",
        help="File of SQL run on every restore before anonymization",
    )
    p_set.set_defaults(func=cmd_config_set)

    p_show = config_sub.add_parser("show", help="Show the server configuration")
    p_show.set_defaults(func=cmd_config_show)

    # restore
    p_restore = subparsers.add_parser("restore", help="Manage restores")
    restore_sub = p_restore.add_subparsers(dest="restore_command", required=True)

    p_start = restore_sub.add_parser("start", help="Create a restore and queue it")
    p_start.add_argument(
        "--schema-only",
        action="store_true",
        default=None,
        help="Copy structure only (default: the configured setting)",
    )
    p_start.set_defaults(func=cmd_restore_start)

    p_rlist = restore_sub.add_parser("list", help="List restores")
    p_rlist.set_defaults(func=cmd_restore_list)

    p_status = restore_sub.add_parser("status", help="Show a restore's status")
    p_status.add_argument("name", help="Restore name")
    p_status.set_defaults(func=cmd_restore_status)

    p_complete = restore_sub.add_parser(
        "complete", help="Retry post-restore SQL and anonymization of a finished restore"
    )
    p_complete.add_argument("name", help="Restore name")
    p_complete.set_defaults(func=cmd_restore_complete)

    p_rdelete = restore_sub.add_parser("delete", help="Delete a restore without branches")
    p_rdelete.add_argument("name", help="Restore name")
    p_rdelete.set_defaults(func=cmd_restore_delete)

    # branch
    p_branch = subparsers.add_parser("branch", help="Manage branches")
    branch_sub = p_branch.add_subparsers(dest="branch_command", required=True)

    p_create = branch_sub.add_parser("create", help="Create a branch from the latest restore")
    p_create.add_argument("name", help="Branch name")
    p_create.add_argument("--created-by", default="", help="Requesting user")
    p_create.set_defaults(func=cmd_branch_create)

    p_bdelete = branch_sub.add_parser("delete", help="Delete a branch")
    p_bdelete.add_argument("name", help="Branch name")
    p_bdelete.set_defaults(func=cmd_branch_delete)

    p_blist = branch_sub.add_parser("list", help="List branches")
    p_blist.set_defaults(func=cmd_branch_list)

    # anonymize
    p_anon = subparsers.add_parser("anonymize", help="Anonymization rules")
    anon_sub = p_anon.add_subparsers(dest="anonymize_command", required=True)

    p_add = anon_sub.add_parser("add", help="Add an anonymization rule")
    p_add.add_argument("table", help="Table name (optionally schema-qualified)")
    p_add.add_argument("column", help="Column name")
    p_add.add_argument("template", help="Value template; ${index} is the row number")
    p_add.add_argument(
        "--type",
        default=ValueType.TEXT.value,
        choices=[t.value for t in ValueType],
        help="SQL type of the rendered value (default: text)",
    )
    p_add.set_defaults(func=cmd_anonymize_add)

    p_alist = anon_sub.add_parser("list", help="List anonymization rules")
    p_alist.set_defaults(func=cmd_anonymize_list)

    p_adelete = anon_sub.add_parser("delete", help="Delete an anonymization rule")
    p_adelete.add_argument("rule_id", help="Rule id (see 'anonymize list')")
    p_adelete.set_defaults(func=cmd_anonymize_delete)

    p_preview = anon_sub.add_parser("preview", help="Print the compiled anonymization SQL")
    p_preview.set_defaults(func=cmd_anonymize_preview)

    # long-running services
    p_worker = subparsers.add_parser("worker", help="Run the restore task worker pool")
    p_worker.set_defaults(func=cmd_worker)

    p_scheduler = subparsers.add_parser("scheduler", help="Run the refresh scheduler")
    p_scheduler.set_defaults(func=cmd_scheduler)

    return parser


def main() -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
