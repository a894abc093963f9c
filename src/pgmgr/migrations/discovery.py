"""
Migration file discovery.

Migrations are plain SQL files named ``<version>_<name>[.no_txn].<up|down>.sql``
where ``<version>`` is a run of digits (a unix timestamp or a compact
``YYYYMMDDHHMMSS`` datetime). Files carrying the ``.no_txn.`` marker are run
outside of a transaction, which is required for statements such as
``CREATE INDEX CONCURRENTLY``.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.exceptions import ExecutionError, MigrationDiscoveryError

log = get_logger(__name__)

Direction = Literal["up", "down"]

MIGRATION_PATTERN = re.compile(r"^(?P<version>[0-9]+)_.+\.(?P<direction>up|down)\.sql$")
NO_TRANSACTION_MARKER = ".no_txn."


@dataclass(frozen=True)
class Migration:
    """A single migration file.

    Attributes:
        filename: File name inside the migration folder
        version: Version parsed from the leading digits of the file name
        folder: Folder the file was found in
    """

    filename: str
    version: int
    folder: str = ""

    @property
    def wrap_in_transaction(self) -> bool:
        return NO_TRANSACTION_MARKER not in self.filename

    @property
    def path(self) -> Path:
        return Path(self.folder) / self.filename

    @property
    def direction(self) -> str:
        match = MIGRATION_PATTERN.match(self.filename)
        return match.group("direction") if match else ""

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ExecutionError(
                f"Could not read migration {self.filename}: {e}", migration_version=self.version
            ) from e


def parse_migration(filename: str, folder: str = "") -> Migration | None:
    """Build a Migration from a file name, or return None if it does not match."""
    match = MIGRATION_PATTERN.match(filename)
    if match is None:
        return None
    return Migration(filename=filename, version=int(match.group("version")), folder=folder)


def discover_migrations(folder: str | os.PathLike[str], direction: Direction) -> list[Migration]:
    """Return the migrations of one direction found in ``folder``.

    Only the immediate entries of the folder are considered; anything that
    does not match the naming convention is ignored. The result is sorted by
    version, then file name.

    Raises:
        MigrationDiscoveryError: If the folder cannot be listed
    """
    if direction not in ("up", "down"):
        raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")

    folder_path = Path(folder)
    try:
        entries = list(os.scandir(folder_path))
    except OSError as e:
        raise MigrationDiscoveryError(
            f"Could not read migration folder {folder_path}: {e.strerror or e}", folder=str(folder_path)
        ) from e

    migrations: list[Migration] = []
    for entry in entries:
        migration = parse_migration(entry.name, str(folder_path))
        if migration is None or migration.direction != direction or not entry.is_file():
            continue
        migrations.append(migration)

    migrations.sort(key=lambda m: (m.version, m.filename))
    log.debug(f"Found {len(migrations)} {direction} migrations in {folder_path}")
    return migrations
