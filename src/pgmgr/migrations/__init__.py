"""
SQL migration engine for pgmgr.

Discovers versioned SQL migration files, applies and reverts them with
transaction safety, records applied versions in a tracking table and retries
migrations that fail on lock timeouts.
"""

from pgmgr.migrations.discovery import Migration, discover_migrations
from pgmgr.migrations.exceptions import (
    ConfigValidationError,
    DatabaseConnectionError,
    ExecutionError,
    LockingError,
    MigrationDiscoveryError,
    PgmgrError,
    RetriesExceededError,
)
from pgmgr.migrations.runner import MigrationRunner, create_migration
from pgmgr.migrations.state import UNVERSIONED, VersionStore

__all__ = [
    "UNVERSIONED",
    "ConfigValidationError",
    "DatabaseConnectionError",
    "ExecutionError",
    "LockingError",
    "Migration",
    "MigrationDiscoveryError",
    "MigrationRunner",
    "PgmgrError",
    "RetriesExceededError",
    "VersionStore",
    "create_migration",
    "discover_migrations",
]
