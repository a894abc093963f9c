"""
Migration runner for pgmgr.

Provides the MigrationRunner class that handles:
- Discovery and ordering of SQL migration files
- Applying pending migrations, each in its own transaction unless marked
  ``.no_txn.``
- Rolling back the latest applied migration
- Lock-aware retry of migrations that time out waiting for locks
- Status reporting

Runs are strictly sequential: a migration is fully applied, or has failed and
been rolled back, before the next one is considered. The first failure halts
the run.
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.db_adapter import (
    PostgresExecutor,
    PostgresSession,
    error_location,
    execution_error,
    format_database_error,
)
from pgmgr.migrations.discovery import Direction, Migration, discover_migrations
from pgmgr.migrations.exceptions import ExecutionError
from pgmgr.migrations.locking import retry_until_success
from pgmgr.migrations.state import UNVERSIONED, VersionStore

log = get_logger(__name__)

DATETIME_VERSION_FORMAT = "%Y%m%d%H%M%S"

UP_TEMPLATE = "-- Migration goes here.\n"
DOWN_TEMPLATE = "-- Rollback of migration goes here. If you don't want to write it, delete this file.\n"


class MigrationRunner:
    """Applies and reverts SQL migrations against one database.

    Args:
        config: Resolved configuration
        executor: Session factory; built from ``config`` when omitted
        store: Version store; built from ``executor`` and ``config`` when omitted
        sleep: Sleep function used between lock retries
    """

    def __init__(
        self,
        config: Config,
        executor: Optional[PostgresExecutor] = None,
        store: Optional[VersionStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.executor = executor or PostgresExecutor.from_config(config)
        self.store = store or VersionStore(self.executor, config)
        self._sleep = sleep

    def discover_migrations(self, direction: Direction) -> list[Migration]:
        return discover_migrations(self.config.migration_folder, direction)

    def version(self) -> int:
        """Current database version, or -1 if no tracking table exists yet."""
        return self.store.version()

    def migrate(self) -> list[Migration]:
        """Apply all pending migrations in ascending version order.

        Already applied migrations are skipped, so running this twice with the
        same set of files applies nothing the second time.

        Returns:
            The migrations applied by this run

        Raises:
            MigrationDiscoveryError: If the migration folder cannot be read
            ExecutionError: If a migration fails; later migrations are not attempted
        """
        migrations = self.discover_migrations("up")
        self.store.initialize()

        applied: list[Migration] = []
        for migration in migrations:
            if self.store.is_applied(migration.version):
                continue
            self._apply_migration(migration, "up")
            applied.append(migration)

        if not applied:
            log.info("Nothing to do; all migrations already applied.")
        return applied

    def rollback(self) -> Optional[Migration]:
        """Revert the migration matching the current version.

        Down files are optional; when there is none for the current version
        nothing happens.

        Returns:
            The reverted migration, or None
        """
        migrations = self.discover_migrations("down")
        current = self.store.version()
        if current == UNVERSIONED:
            log.info("No migrations applied; nothing to roll back.")
            return None

        target = next((m for m in migrations if m.version == current), None)
        if target is None:
            log.info(f"No rollback file for version {current}; nothing to do.")
            return None

        self._apply_migration(target, "down")
        return target

    def status(self) -> dict[str, Any]:
        """Get the current migration status.

        Returns:
            Dictionary with:
            - current_version: Latest applied version, or -1
            - applied: Recorded versions in ascending order
            - pending: Up migrations that are not recorded yet
        """
        applied = self.store.applied_versions()
        applied_set = set(applied)
        pending = [m for m in self.discover_migrations("up") if m.version not in applied_set]
        return {
            "current_version": applied[-1] if applied else UNVERSIONED,
            "applied": applied,
            "pending": pending,
        }

    def _apply_migration(self, migration: Migration, direction: Direction) -> None:
        verb = "Applying" if direction == "up" else "Reverting"
        log.info(f"== {verb} {migration.filename} ==")
        start_time = time.time()

        lock = self.config.lock_config
        retry_until_success(
            lambda: self._apply_once(migration, direction),
            lock.retry_delay,
            lock.max_retries,
            sleep=self._sleep,
        )

        execution_time_ms = int((time.time() - start_time) * 1000)
        log.info(f"== Completed in {execution_time_ms} ms ==")

    def _apply_once(self, migration: Migration, direction: Direction) -> None:
        contents = migration.read()
        lock = self.config.lock_config

        with self.executor.session() as session:
            session.set_timeouts(lock.statement_timeout, lock.lock_timeout)
            try:
                if migration.wrap_in_transaction:
                    with session.transaction():
                        self._run(session, contents, migration, direction)
                else:
                    self._run(session, contents, migration, direction)
            except ExecutionError as e:
                if e.error is None:
                    raise
                line, column = error_location(contents, e.error.position)
                raise execution_error(
                    format_database_error(contents, e.error),
                    e.error,
                    migration_version=migration.version,
                    line=line,
                    column=column,
                ) from e

    def _run(self, session: PostgresSession, contents: str, migration: Migration, direction: Direction) -> None:
        session.execute(contents)
        if direction == "up":
            self.store.insert(session, migration.version)
        else:
            self.store.delete(session, migration.version)


def generate_version(format: str, now: Optional[datetime] = None) -> str:
    """Return a new migration version for the given version format."""
    now = now or datetime.now()
    if format == "datetime":
        return now.strftime(DATETIME_VERSION_FORMAT)
    return str(int(now.timestamp()))


def create_migration(
    config: Config,
    name: str,
    no_txn: bool = False,
    now: Optional[datetime] = None,
) -> tuple[Path, Path]:
    """Write a new, empty pair of up/down migration files.

    Args:
        config: Resolved configuration; provides the folder and version format
        name: Descriptive part of the file name
        no_txn: Mark the migration to run outside of a transaction
        now: Clock value for the version, defaults to the current time

    Returns:
        Paths of the up and down files

    Raises:
        ValueError: If the name is empty or contains a path separator
        FileExistsError: If a file with the generated name already exists
    """
    if not name or "/" in name or "\\" in name:
        raise ValueError(f"Invalid migration name: {name!r}")

    prefix = f"{generate_version(config.format, now)}_{name}"
    if no_txn:
        prefix += ".no_txn"

    folder = Path(config.migration_folder or ".")
    folder.mkdir(parents=True, exist_ok=True)

    up_path = folder / f"{prefix}.up.sql"
    down_path = folder / f"{prefix}.down.sql"
    for path in (up_path, down_path):
        if path.exists():
            raise FileExistsError(f"Migration file {path} already exists")

    for path, template in ((up_path, UP_TEMPLATE), (down_path, DOWN_TEMPLATE)):
        with path.open("x", encoding="utf-8") as f:
            f.write(template)
        log.info(f"Created {path}")
    return up_path, down_path
