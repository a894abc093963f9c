"""
Configuration models for pgmgr.

The models mirror the keys of the ``.pgmgr.json`` configuration file, which
uses hyphenated names (``migration-folder``, ``lock-config`` ...). Field names
are accepted as well, so code and tests can construct configs directly.

Resolution of these models from files, environment variables and command
line arguments lives in :mod:`pgmgr.config.settings`.
"""

from typing import List, Optional

from psycopg.sql import Identifier
from pydantic import BaseModel, ConfigDict, Field


def _hyphenate(name: str) -> str:
    return name.replace("_", "-")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=_hyphenate,
        populate_by_name=True,
        extra="ignore",
        validate_assignment=True,
    )


DEFAULT_STATEMENT_TIMEOUT = 1000
DEFAULT_LOCK_TIMEOUT = 200
DEFAULT_MAX_RETRIES = 10
DEFAULT_RETRY_DELAY = 5


class LockConfig(_ConfigModel):
    """Lock handling while applying migrations.

    Within a migration the timeouts can still be changed with plain
    ``SET statement_timeout TO ...`` / ``SET lock_timeout TO ...`` statements.

    A value of 0 means "use the default". ``max_retries = -1`` disables
    retries; ``retry_delay = -1`` retries without sleeping.
    """

    statement_timeout: int = Field(DEFAULT_STATEMENT_TIMEOUT, description="Per-statement time budget in ms")
    lock_timeout: int = Field(DEFAULT_LOCK_TIMEOUT, description="Time to wait for a lock in ms")
    max_retries: int = Field(DEFAULT_MAX_RETRIES, description="Retries after a lock-related failure")
    retry_delay: int = Field(DEFAULT_RETRY_DELAY, description="Seconds to sleep between retries")


class DumpConfig(_ConfigModel):
    """Filters and options for ``pg_dump`` when producing a dump artifact."""

    exclude_schemas: List[str] = Field(default_factory=list)
    exclude_tables: List[str] = Field(default_factory=list)
    exclude_data_tables: List[str] = Field(default_factory=list)
    include_schemas: List[str] = Field(default_factory=list)
    include_tables: List[str] = Field(default_factory=list)
    no_privileges: bool = Field(False, description="Pass --no-privileges to the schema dump")
    no_owner: bool = Field(False, description="Pass --no-owner to the schema dump")
    compress: bool = Field(False, description="gzip the dump artifact")

    def _filter_flags(self, tables: List[str]) -> list[str]:
        args: list[str] = []
        for schema in self.exclude_schemas:
            args += ["-N", schema]
        for table in self.exclude_tables:
            args += ["-T", table]
        for schema in self.include_schemas:
            args += ["-n", schema]
        for table in tables:
            args += ["-t", table]
        return args

    def schema_flags(self) -> list[str]:
        """pg_dump flags selecting which objects end up in the schema dump."""
        return self._filter_flags(self.include_tables)

    def data_flags(self, seed_tables: List[str]) -> list[str]:
        """pg_dump flags for the data dump.

        ``seed_tables`` takes precedence over ``include_tables``; with neither,
        the data of every table is dumped.
        """
        return self._filter_flags(seed_tables or self.include_tables) + self.data_exclusion_flags()

    def privilege_flags(self) -> list[str]:
        args: list[str] = []
        if self.no_privileges:
            args.append("--no-privileges")
        if self.no_owner:
            args.append("--no-owner")
        return args

    def data_exclusion_flags(self) -> list[str]:
        return [f"--exclude-table-data={table}" for table in self.exclude_data_tables]


class Config(_ConfigModel):
    """Fully resolved pgmgr configuration."""

    # connection
    username: str = ""
    password: str = ""
    database: str = ""
    host: str = "localhost"
    port: int = 5432
    url: str = ""
    sslmode: str = "disable"

    # file paths
    dump_file: str = "dump.sql"
    migration_folder: str = ""

    # options
    migration_table: str = "schema_migrations"
    seed_tables: List[str] = Field(default_factory=list)
    user_roles: List[str] = Field(default_factory=list)
    # validated by pgmgr.config.settings.validate
    column_type: str = "integer"
    format: str = "unix"

    lock_config: LockConfig = Field(default_factory=LockConfig)
    dump_config: DumpConfig = Field(default_factory=DumpConfig)

    def migration_table_identifier(self) -> Identifier:
        """The tracking table as an SQL identifier, schema-qualified if configured."""
        schema, table = self.migration_table_parts()
        if schema is None:
            return Identifier(table)
        return Identifier(schema, table)

    def migration_table_parts(self) -> tuple[Optional[str], str]:
        """Split ``schema.table`` into its parts; the schema is None when absent."""
        if "." not in self.migration_table:
            return None, self.migration_table
        schema, table = self.migration_table.split(".", 1)
        return schema, table

    def version_column_type(self) -> str:
        if self.column_type == "string":
            return "CHARACTER VARYING (255)"
        return "INTEGER"

    def dump_path(self) -> str:
        """Path of the artifact on disk, with the gzip suffix when compressed."""
        if self.dump_config.compress:
            return self.dump_file + ".gz"
        return self.dump_file

    def redacted(self) -> "Config":
        """Copy suitable for display, with secrets masked."""
        return self.model_copy(update={"password": "****" if self.password else ""})

