"""
Migration state tracking.

Applied migrations are recorded as one row per version in a tracking table
(``schema_migrations`` by default). The table has a single ``version``
column, either ``INTEGER`` or ``CHARACTER VARYING (255)`` depending on the
configured column type, and is created lazily together with its schema.
"""

from typing import Union

from psycopg.sql import SQL, Identifier

from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.db_adapter import PostgresExecutor, PostgresSession

log = get_logger(__name__)

UNVERSIONED = -1


class VersionStore:
    """Reads and writes the migration tracking table.

    Read operations and ``initialize`` open their own session. ``insert`` and
    ``delete`` run on the caller's session so they can share the migration's
    transaction.
    """

    def __init__(self, executor: PostgresExecutor, config: Config):
        self.executor = executor
        self.config = config

    @property
    def table(self) -> Identifier:
        return self.config.migration_table_identifier()

    def typed_version(self, version: int) -> Union[int, str]:
        """Coerce a version to the Python type matching the column type."""
        if self.config.column_type == "string":
            return str(version)
        return int(version)

    def table_exists(self, session: PostgresSession) -> bool:
        schema, table = self.config.migration_table_parts()
        if schema is None:
            return bool(
                session.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM pg_catalog.pg_tables WHERE tablename = %s)",
                    (table,),
                )
            )
        return bool(
            session.fetchval(
                "SELECT EXISTS(SELECT 1 FROM pg_catalog.pg_tables WHERE schemaname = %s AND tablename = %s)",
                (schema, table),
            )
        )

    def version(self) -> int:
        """Return the highest recorded version, or UNVERSIONED without a tracking table."""
        with self.executor.session() as session:
            if not self.table_exists(session):
                return UNVERSIONED
            # cast so that string columns compare numerically
            value = session.fetchval(SQL("SELECT COALESCE(MAX(version::bigint), -1) FROM {}").format(self.table))
        return int(value)

    def applied_versions(self) -> list[int]:
        """Return all recorded versions in ascending order."""
        with self.executor.session() as session:
            if not self.table_exists(session):
                return []
            rows = session.fetchall(SQL("SELECT version::text AS version FROM {}").format(self.table))
        return sorted(int(row["version"]) for row in rows)

    def initialize(self) -> None:
        """Create the tracking table, and its schema if qualified, unless they exist."""
        schema, _ = self.config.migration_table_parts()
        with self.executor.session() as session:
            if schema is not None:
                exists = session.fetchval(
                    "SELECT EXISTS(SELECT 1 FROM pg_catalog.pg_namespace WHERE nspname = %s)",
                    (schema,),
                )
                if not exists:
                    log.info(f"Creating schema {schema}")
                    session.execute(SQL("CREATE SCHEMA {}").format(Identifier(schema)))

            if self.table_exists(session):
                return

            log.info(f"Creating migration table {self.config.migration_table}")
            session.execute(
                SQL("CREATE TABLE {} (version {} NOT NULL UNIQUE)").format(
                    self.table, SQL(self.config.version_column_type())
                )
            )

    def is_applied(self, version: int) -> bool:
        with self.executor.session() as session:
            return bool(
                session.fetchval(
                    SQL("SELECT EXISTS(SELECT 1 FROM {} WHERE version = %s)").format(self.table),
                    (self.typed_version(version),),
                )
            )

    def insert(self, session: PostgresSession, version: int) -> None:
        session.execute(
            SQL("INSERT INTO {} (version) VALUES (%s)").format(self.table),
            (self.typed_version(version),),
        )

    def delete(self, session: PostgresSession, version: int) -> None:
        session.execute(
            SQL("DELETE FROM {} WHERE version = %s").format(self.table),
            (self.typed_version(version),),
        )
