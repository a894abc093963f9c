"""
Command line interface for pgmgr.

Commands:
- migration: Create a new pair of migration files
- config: Show the resolved configuration
- db create / drop: Create or drop the database
- db dump / load: Dump the database to the dump file, or load it back
- db version / status: Show the current migration version or full status
- db migrate / rollback: Apply pending migrations, or revert the latest one

Every global option can also be given as a ``PGMGR_*`` environment variable
(``PGMGR_DATABASE``, ``PGMGR_MIGRATION_FOLDER`` ...), including variables
from a ``.env`` file in the working directory.
"""

from typing import Any, NoReturn, Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pgmgr import __version__
from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import configure_logging
from pgmgr.config.settings import DEFAULT_CONFIG_FILE, load_config
from pgmgr.dump.pipeline import DumpPipeline
from pgmgr.migrations.exceptions import PgmgrError
from pgmgr.migrations.runner import MigrationRunner, create_migration
from pgmgr.migrations.state import UNVERSIONED

console = Console()
err_console = Console(stderr=True)


def _fail(error: Exception, process: Optional[str] = None) -> NoReturn:
    err_console.print(f"[red]{escape(str(error))}[/]", highlight=False)
    if process:
        err_console.print()
        err_console.print(f"[red]ERROR! Aborting the {process} process.[/]")
    raise SystemExit(1) from error


def _config(ctx: click.Context) -> Config:
    """Resolve the configuration once per invocation."""
    state = ctx.ensure_object(dict)
    if "config" not in state:
        try:
            state["config"] = load_config(state.get("config_file"), state.get("arguments", {}))
        except PgmgrError as e:
            _fail(e)
    return state["config"]


@click.group()
@click.version_option(__version__, prog_name="pgmgr")
@click.option(
    "--config-file",
    "-c",
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    envvar="PGMGR_CONFIG_FILE",
    help="JSON or YAML file with the pgmgr configuration.",
)
@click.option("--username", "-u", envvar="PGMGR_USERNAME", help="Database user.")
@click.option("--password", "-P", envvar="PGMGR_PASSWORD", help="Database password.")
@click.option("--database", "-d", envvar="PGMGR_DATABASE", help="Database name.")
@click.option("--host", "-H", envvar="PGMGR_HOST", help="Database host.")
@click.option("--port", "-p", type=int, envvar="PGMGR_PORT", help="Database port.")
@click.option("--url", envvar="PGMGR_URL", help="Connection URL; overrides the other connection options.")
@click.option("--sslmode", envvar="PGMGR_SSLMODE", help="SSL mode for the connection.")
@click.option("--dump-file", envvar="PGMGR_DUMP_FILE", help="File to dump the database to, or load it from.")
@click.option("--migration-folder", envvar="PGMGR_MIGRATION_FOLDER", help="Folder containing the migration files.")
@click.option("--migration-table", envvar="PGMGR_MIGRATION_TABLE", help="Table tracking applied migrations.")
@click.option(
    "--column-type",
    type=click.Choice(["integer", "string"]),
    envvar="PGMGR_COLUMN_TYPE",
    help="Column type of the migration table's version column.",
)
@click.option(
    "--format",
    "format_",
    type=click.Choice(["unix", "datetime"]),
    envvar="PGMGR_FORMAT",
    help="Version format of new migrations.",
)
@click.option(
    "--seed-tables",
    multiple=True,
    envvar="PGMGR_SEED_TABLES",
    help="Tables whose data is dumped; repeat or separate with commas.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_file: str, format_: Optional[str], verbose: bool, **arguments: Any):
    """Manage PostgreSQL migrations, dumps and loads."""
    if verbose:
        configure_logging(level="DEBUG")

    arguments["format"] = format_
    state = ctx.ensure_object(dict)
    state["config_file"] = config_file
    state["arguments"] = arguments


@cli.command("migration")
@click.argument("name")
@click.option("--no-txn", is_flag=True, help="Run the migration outside of a transaction.")
@click.pass_context
def migration(ctx: click.Context, name: str, no_txn: bool):
    """Create a new pair of up/down migration files.

    Examples:
        pgmgr migration add_users_table

        # for statements such as CREATE INDEX CONCURRENTLY
        pgmgr migration add_users_email_index --no-txn
    """
    config = _config(ctx)
    try:
        up_path, down_path = create_migration(config, name, no_txn=no_txn)
    except (ValueError, OSError) as e:
        _fail(e)
    console.print(f"[green]Created[/] {up_path}")
    console.print(f"[green]Created[/] {down_path}")


@cli.command("config")
@click.pass_context
def show_config(ctx: click.Context):
    """Show the resolved configuration, with the password masked."""
    config = _config(ctx)
    console.print_json(config.redacted().model_dump_json(by_alias=True))


@cli.group("db")
def db():
    """Database commands."""


@db.command("create")
@click.pass_context
def create(ctx: click.Context):
    """Create the database."""
    config = _config(ctx)
    try:
        DumpPipeline(config).create_database()
    except PgmgrError as e:
        _fail(e)
    console.print(f"[green]Database {config.database} created successfully.[/]")


@db.command("drop")
@click.pass_context
def drop(ctx: click.Context):
    """Drop the database."""
    config = _config(ctx)
    try:
        DumpPipeline(config).drop_database()
    except PgmgrError as e:
        _fail(e)
    console.print(f"[green]Database {config.database} dropped successfully.[/]")


@db.command("dump")
@click.pass_context
def dump(ctx: click.Context):
    """Dump the database schema, data, roles and settings to the dump file."""
    config = _config(ctx)
    try:
        path = DumpPipeline(config).dump()
    except PgmgrError as e:
        _fail(e)
    console.print(f"[green]Database dumped to {path} successfully.[/]")


@db.command("load")
@click.pass_context
def load(ctx: click.Context):
    """Load the database from the dump file."""
    config = _config(ctx)
    try:
        DumpPipeline(config).load()
    except PgmgrError as e:
        _fail(e)
    console.print(f"[green]Database loaded from {config.dump_path()} successfully.[/]")


@db.command("version")
@click.pass_context
def version(ctx: click.Context):
    """Show the latest applied migration version."""
    config = _config(ctx)
    try:
        current = MigrationRunner(config).version()
    except PgmgrError as e:
        _fail(e)

    if current == UNVERSIONED:
        console.print(
            f"Database has no {config.migration_table} table; run `pgmgr db migrate` to create it.",
            highlight=False,
        )
    else:
        console.print(f"Latest migration version: {current}", highlight=False)


@db.command("status")
@click.pass_context
def status(ctx: click.Context):
    """Show applied and pending migrations."""
    config = _config(ctx)
    try:
        result = MigrationRunner(config).status()
    except PgmgrError as e:
        _fail(e)

    current = result["current_version"]
    console.print(f"[bold cyan]Current Version:[/] {current if current != UNVERSIONED else 'None'}")
    console.print(f"[bold cyan]Applied Migrations:[/] {len(result['applied'])}")
    console.print()

    if result["pending"]:
        table = Table(title="Pending Migrations")
        table.add_column("Version", style="cyan")
        table.add_column("File", style="green")
        table.add_column("Transaction", style="yellow")
        for m in result["pending"]:
            table.add_row(str(m.version), m.filename, "yes" if m.wrap_in_transaction else "no")
        console.print(table)
    else:
        console.print("[green]No pending migrations - database is up to date[/]")


@db.command("migrate")
@click.pass_context
def migrate(ctx: click.Context):
    """Apply all pending migrations."""
    config = _config(ctx)
    try:
        applied = MigrationRunner(config).migrate()
    except PgmgrError as e:
        _fail(e, "migration")

    if applied:
        console.print(f"[green]Applied {len(applied)} migration(s):[/]")
        for m in applied:
            console.print(f"  • {m.filename}")
    else:
        console.print("[yellow]Nothing to do; all migrations already applied.[/]")


@db.command("rollback")
@click.pass_context
def rollback(ctx: click.Context):
    """Revert the latest applied migration."""
    config = _config(ctx)
    try:
        reverted = MigrationRunner(config).rollback()
    except PgmgrError as e:
        _fail(e, "rollback")

    if reverted is not None:
        console.print(f"[green]Rolled back {reverted.filename}[/]")
    else:
        console.print("[yellow]No migration to roll back.[/]")


def main() -> None:
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
