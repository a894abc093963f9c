"""
Database dump and load.

A dump is a single SQL script that recreates a database from nothing. It is
assembled from five segments, always written in this order:

1. roles and memberships referenced by the schema (see :mod:`pgmgr.dump.roles`)
2. schema DDL from ``pg_dump --schema-only``
3. table data from ``pg_dump --data-only``
4. database-level settings (``ALTER DATABASE ... SET``)
5. database ownership (``ALTER DATABASE ... OWNER TO``)

Settings and ownership refer to the database through the psql variable
``DBNAME``, which :meth:`DumpPipeline.load` sets to the target database, so a
dump can be loaded under a different name.
"""

import gzip
import os
import tempfile
from pathlib import Path
from typing import Optional

from psycopg.sql import SQL, Identifier, Literal

from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import get_logger
from pgmgr.dump.executor import CommandExecutor, PgTools
from pgmgr.dump.roles import RoleExtractor
from pgmgr.migrations.db_adapter import PostgresExecutor
from pgmgr.migrations.exceptions import ExecutionError

log = get_logger(__name__)

DBNAME_VARIABLE = ':"DBNAME"'

# Settings whose stored value is already a SQL list and must not be quoted as one string
LIST_SETTINGS = {
    "search_path",
    "session_preload_libraries",
    "shared_preload_libraries",
    "local_preload_libraries",
    "temp_tablespaces",
    "unix_socket_directories",
}

SETTINGS_QUERY = """
SELECT UNNEST(setconfig) AS setting
FROM pg_catalog.pg_db_role_setting
JOIN pg_catalog.pg_database ON pg_database.oid = setdatabase
WHERE setrole = 0
AND datname = %s
"""

OWNER_QUERY = """
SELECT pg_catalog.pg_get_userbyid(datdba) AS owner
FROM pg_catalog.pg_database
WHERE datname = %s
"""


def render_setting(setting: str) -> Optional[str]:
    """Turn a ``name=value`` entry of ``pg_db_role_setting`` into a statement."""
    name, sep, value = setting.strip().partition("=")
    name = name.strip()
    if not name or not sep:
        return None

    value = value.strip()
    rendered = SQL(value) if value and name in LIST_SETTINGS else Literal(value)
    return SQL("ALTER DATABASE {} SET {} TO {};").format(SQL(DBNAME_VARIABLE), SQL(name), rendered).as_string()


def _ensure_newline(segment: bytes) -> bytes:
    if segment and not segment.endswith(b"\n"):
        return segment + b"\n"
    return segment


class DumpPipeline:
    """Dumps a database into a single SQL script and loads it back.

    Args:
        config: Resolved configuration
        executor: Session factory for the queries run during a dump
        commands: Runner for the PostgreSQL client binaries
    """

    def __init__(
        self,
        config: Config,
        executor: Optional[PostgresExecutor] = None,
        commands: Optional[CommandExecutor] = None,
    ):
        self.config = config
        self.executor = executor or PostgresExecutor.from_config(config)
        self.tools = PgTools(config, commands)
        self.roles = RoleExtractor(self.executor, config.user_roles)

    def dump_schema(self) -> bytes:
        dump_config = self.config.dump_config
        return self.tools.pg_dump(["--schema-only", *dump_config.schema_flags(), *dump_config.privilege_flags()])

    def dump_roles(self, schema: bytes) -> bytes:
        try:
            schema_sql = schema.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExecutionError(f"Schema dump of {self.config.database} is not valid UTF-8: {e}") from e
        return self.roles.extract(schema_sql).encode("utf-8")

    def dump_data(self) -> bytes:
        for table in self.config.seed_tables:
            log.info(f"Pulling data for {table}")
        args = ["--data-only", "--disable-triggers", *self.config.dump_config.data_flags(self.config.seed_tables)]
        return self.tools.pg_dump(args)

    def dump_settings(self) -> bytes:
        with self.executor.session() as session:
            rows = session.fetchall(SETTINGS_QUERY, (self.config.database,))
        statements = [render_setting(row["setting"]) for row in rows]
        return "".join(f"{s}\n" for s in statements if s).encode("utf-8")

    def dump_ownership(self) -> bytes:
        with self.executor.session() as session:
            owner = session.fetchval(OWNER_QUERY, (self.config.database,))
        if owner is None:
            raise ExecutionError(f"Database {self.config.database} not found")
        statement = SQL("ALTER DATABASE {} OWNER TO {};").format(SQL(DBNAME_VARIABLE), Identifier(owner))
        return f"{statement.as_string()}\n".encode("utf-8")

    def dump(self) -> Path:
        """Write the dump artifact and return its path.

        The artifact is written to a temporary file next to the target and
        renamed into place, so an interrupted dump never leaves a truncated
        file behind.

        Raises:
            CommandError: If pg_dump fails
            ExecutionError: If a catalog query fails
        """
        log.info(f"Dumping database {self.config.database}")
        schema = self.dump_schema()
        roles = self.dump_roles(schema)
        data = self.dump_data()
        settings = self.dump_settings()
        ownership = self.dump_ownership()

        # roles must precede the schema, whose ACLs refer to them
        contents = b"".join(_ensure_newline(s) for s in (roles, schema, data, settings, ownership))
        if self.config.dump_config.compress:
            contents = gzip.compress(contents)

        path = Path(self.config.dump_path())
        self._write_atomic(path, contents)
        log.info(f"Database dumped to {path}")
        return path

    def _write_atomic(self, path: Path, contents: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(contents)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self) -> None:
        """Replay the dump artifact into the configured database with psql."""
        path = Path(self.config.dump_path())
        if not path.is_file():
            raise ExecutionError(f"Dump file {path} does not exist")

        log.info(f"Loading {path} into {self.config.database}")
        variables = ["-v", f"DBNAME={self.config.database}"]
        if self.config.dump_config.compress:
            self.tools.psql([*variables, "-f", "-"], input=gzip.decompress(path.read_bytes()))
        else:
            self.tools.psql([*variables, "-f", str(path)])

    def create_database(self) -> None:
        log.info(f"Creating database {self.config.database}")
        self.tools.createdb()

    def drop_database(self) -> None:
        log.info(f"Dropping database {self.config.database}")
        self.tools.dropdb()
