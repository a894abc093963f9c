"""
Exception classes for pgmgr.

Provides specific exception types for the different failure scenarios of the
migration engine and the dump pipeline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pgmgr.migrations.db_adapter import DatabaseErrorInfo


class PgmgrError(Exception):
    """Base exception for all pgmgr errors."""

    pass


class ConfigValidationError(PgmgrError):
    """Raised when the resolved configuration is invalid.

    Always raised before any database I/O takes place.
    """

    pass


class DatabaseConnectionError(PgmgrError):
    """Raised when a database session cannot be opened. Never retried."""

    pass


class MigrationDiscoveryError(PgmgrError):
    """Raised when the migration folder cannot be read."""

    def __init__(self, message: str, folder: str | None = None):
        self.folder = folder
        super().__init__(message)


class ExecutionError(PgmgrError):
    """Raised when a SQL statement or a dump stage fails.

    Attributes:
        error: Structured database error, when the failure came from the server
        migration_version: Version of the migration being applied, if any
        line: 1-based line of the failing statement inside the migration file
        column: Column of the failing statement inside the migration file
    """

    def __init__(
        self,
        message: str,
        error: DatabaseErrorInfo | None = None,
        migration_version: int | None = None,
        line: int | None = None,
        column: int | None = None,
    ):
        self.error = error
        self.migration_version = migration_version
        self.line = line
        self.column = column
        super().__init__(message)


class LockingError(ExecutionError):
    """Raised when a statement failed because it could not obtain a lock in time."""

    pass


class RetriesExceededError(LockingError):
    """Raised when a locking error persisted after all retries were used.

    The last locking error is available as ``__cause__``.
    """

    pass


class CommandError(ExecutionError):
    """Raised when an external PostgreSQL client binary exits with a failure."""

    def __init__(self, message: str, command: str, returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(message)
