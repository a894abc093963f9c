"""
Database access for pgmgr.

Wraps psycopg connections behind a small session interface used by the
version store, the migration runner and the dump pipeline. Driver exceptions
are translated here, at the execution boundary, into ``DatabaseErrorInfo``
carried by pgmgr's own exception types; nothing above this module looks at
psycopg error classes.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg.sql import Composable

from pgmgr.config.configuration import Config
from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.exceptions import (
    DatabaseConnectionError,
    ExecutionError,
    LockingError,
)
from pgmgr.migrations.locking import is_locking_error

log = get_logger(__name__)

Query = str | Composable
Params = Sequence[Any] | Mapping[str, Any]


@dataclass(frozen=True)
class DatabaseErrorInfo:
    """Structured error reported by the server.

    Attributes:
        code: SQLSTATE code (e.g. ``55P03`` for lock_not_available)
        position: 1-based character offset of the error in the statement text
        message: Primary error message
        detail: Optional detail message
        severity: Severity as reported by the server
    """

    code: str | None
    position: int | None
    message: str
    detail: str | None = None
    severity: str = "ERROR"

    def __str__(self) -> str:
        return f"{self.severity}:  {self.message}"


def database_error_from(exc: psycopg.Error) -> DatabaseErrorInfo:
    """Build a DatabaseErrorInfo from a psycopg exception."""
    diag = exc.diag
    position = None
    if diag.statement_position:
        try:
            position = int(diag.statement_position)
        except ValueError:
            position = None

    message = diag.message_primary or str(exc).strip()
    return DatabaseErrorInfo(
        code=diag.sqlstate or exc.sqlstate,
        position=position,
        message=message,
        detail=diag.message_detail,
        severity=diag.severity_nonlocalized or diag.severity or "ERROR",
    )


def error_location(contents: str, position: int | None) -> tuple[int, int]:
    """Convert a server-reported character position into (line, column).

    Lines are 1-based; the column counts characters after the last newline
    preceding the position. A missing position maps to (1, 0).
    """
    pos = max(position or 0, 0)
    prefix = contents[:pos]
    line = prefix.count("\n") + 1
    column = pos - prefix.rfind("\n") - 1
    return line, column


def format_database_error(contents: str, error: DatabaseErrorInfo) -> str:
    """Render an error for an operator, pointing at the failing statement."""
    line, column = error_location(contents, error.position)
    return f"PGERROR: line {line} pos {column}: {error.message}. {error.detail or ''}".rstrip()


def execution_error(message: str, error: DatabaseErrorInfo | None = None, **kwargs: Any) -> ExecutionError:
    """Return a LockingError or an ExecutionError depending on the message text."""
    if is_locking_error(message) or (error is not None and is_locking_error(error)):
        return LockingError(message, error=error, **kwargs)
    return ExecutionError(message, error=error, **kwargs)


def conninfo_from_config(config: Config) -> str:
    """Build a libpq connection string from the resolved configuration."""
    params: dict[str, Any] = {
        "user": config.username,
        "password": config.password,
        "dbname": config.database,
        "host": config.host,
        "port": config.port,
        "sslmode": config.sslmode,
    }
    return make_conninfo(**{k: v for k, v in params.items() if v not in (None, "", 0)})


class PostgresSession:
    """A single open database session.

    The underlying connection runs in autocommit mode; use ``transaction()``
    to group statements.
    """

    def __init__(self, connection: psycopg.Connection):
        self._conn = connection

    def execute(self, sql: Query, params: Params | None = None) -> None:
        """Execute a statement (or, without params, a batch of statements)."""
        try:
            if params is None:
                self._conn.execute(sql)  # type: ignore[arg-type]
            else:
                self._conn.execute(sql, params)  # type: ignore[arg-type]
        except psycopg.Error as e:
            info = database_error_from(e)
            raise execution_error(str(info), info) from e

    def fetchall(self, sql: Query, params: Params | None = None) -> list[dict[str, Any]]:
        """Execute a query and fetch all rows as dictionaries."""
        try:
            with self._conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(sql, params)  # type: ignore[arg-type]
                return cursor.fetchall()
        except psycopg.Error as e:
            info = database_error_from(e)
            raise execution_error(str(info), info) from e

    def fetchone(self, sql: Query, params: Params | None = None) -> dict[str, Any] | None:
        """Execute a query and fetch the first row, or None."""
        rows = self.fetchall(sql, params)
        return rows[0] if rows else None

    def fetchval(self, sql: Query, params: Params | None = None) -> Any:
        """Execute a query and return the first column of the first row."""
        row = self.fetchone(sql, params)
        if row is None:
            return None
        return next(iter(row.values()))

    @contextmanager
    def transaction(self) -> Iterator["PostgresSession"]:
        """Run the block in a transaction; any exception rolls it back."""
        try:
            with self._conn.transaction():
                yield self
        except psycopg.Error as e:
            # COMMIT itself can fail, e.g. on deferred constraints
            info = database_error_from(e)
            raise execution_error(str(info), info) from e

    def set_timeouts(self, statement_timeout: int, lock_timeout: int) -> None:
        """Apply session-level statement and lock timeouts, in milliseconds."""
        self.execute(
            "SELECT set_config('statement_timeout', %s, false), set_config('lock_timeout', %s, false)",
            (str(statement_timeout), str(lock_timeout)),
        )


class PostgresExecutor:
    """Opens sessions against one database.

    Every operation acquires its own session; sessions are closed on every
    exit path of the ``with`` block that opened them.
    """

    def __init__(self, conninfo: str):
        self.conninfo = conninfo

    @classmethod
    def from_config(cls, config: Config) -> "PostgresExecutor":
        return cls(conninfo_from_config(config))

    @contextmanager
    def session(self) -> Iterator[PostgresSession]:
        try:
            conn = psycopg.connect(self.conninfo, autocommit=True)
        except psycopg.OperationalError as e:
            raise DatabaseConnectionError(f"Could not connect to the database: {e}") from e

        try:
            yield PostgresSession(conn)
        finally:
            conn.close()
