from contextlib import contextmanager
from typing import Any, Callable, Optional

import pytest
from psycopg.sql import Composable

from pgmgr.config.configuration import Config, LockConfig
from pgmgr.dump.executor import CommandExecutor, CommandResult


def _render(sql: Any) -> str:
    return sql.as_string() if isinstance(sql, Composable) else sql


class FakeSession:
    """Records statements instead of sending them to a server."""

    def __init__(self, executor: "FakeExecutor"):
        self.executor = executor

    def execute(self, sql: str, params: Any = None) -> None:
        sql = _render(sql)
        self.executor.statements.append(sql)
        if self.executor.on_execute is not None:
            self.executor.on_execute(sql)

    def fetchall(self, sql: str, params: Any = None) -> list[dict[str, Any]]:
        sql = _render(sql)
        self.executor.queries.append((sql, params))
        for key, rows in self.executor.responses:
            if key in sql:
                return rows
        return []

    def fetchone(self, sql: str, params: Any = None) -> Optional[dict[str, Any]]:
        rows = self.fetchall(sql, params)
        return rows[0] if rows else None

    def fetchval(self, sql: str, params: Any = None) -> Any:
        row = self.fetchone(sql, params)
        return next(iter(row.values())) if row else None

    @contextmanager
    def transaction(self):
        self.executor.statements.append("BEGIN")
        try:
            yield self
        except Exception:
            self.executor.statements.append("ROLLBACK")
            raise
        self.executor.statements.append("COMMIT")

    def set_timeouts(self, statement_timeout: int, lock_timeout: int) -> None:
        self.executor.statements.append(f"SET TIMEOUTS {statement_timeout} {lock_timeout}")


class FakeExecutor:
    """Stands in for PostgresExecutor.

    Attributes:
        statements: Every executed statement, plus BEGIN/COMMIT/ROLLBACK markers
        queries: Every (sql, params) passed to fetchall
        responses: (substring, rows) pairs answering fetchall by first match
        on_execute: Hook called with each executed statement; may raise
    """

    def __init__(self):
        self.statements: list[str] = []
        self.queries: list[tuple[str, Any]] = []
        self.responses: list[tuple[str, list[dict[str, Any]]]] = []
        self.on_execute: Optional[Callable[[str], None]] = None
        self.opened = 0
        self.closed = 0

    @contextmanager
    def session(self):
        self.opened += 1
        try:
            yield FakeSession(self)
        finally:
            self.closed += 1


class FakeVersionStore:
    """In-memory VersionStore; bookkeeping statements go through the session."""

    def __init__(self, applied: Optional[set[int]] = None):
        self.applied: set[int] = set(applied or ())
        self.initialized = False

    def initialize(self) -> None:
        self.initialized = True

    def version(self) -> int:
        return max(self.applied) if self.applied else -1

    def applied_versions(self) -> list[int]:
        return sorted(self.applied)

    def is_applied(self, version: int) -> bool:
        return version in self.applied

    def insert(self, session: FakeSession, version: int) -> None:
        session.execute(f"INSERT {version}")
        self.applied.add(version)

    def delete(self, session: FakeSession, version: int) -> None:
        session.execute(f"DELETE {version}")
        self.applied.discard(version)


class FakeCommandExecutor(CommandExecutor):
    """Records command invocations and answers them from canned results."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.results: list[tuple[Callable[[str, list[str]], bool], CommandResult]] = []

    def respond(self, predicate: Callable[[str, list[str]], bool], result: CommandResult) -> None:
        self.results.append((predicate, result))

    def run(self, command, args, input=None, env=None) -> CommandResult:
        args = list(args)
        self.calls.append({"command": command, "args": args, "input": input, "env": dict(env or {})})
        for predicate, result in self.results:
            if predicate(command, args):
                return result
        return CommandResult(0)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_store() -> FakeVersionStore:
    return FakeVersionStore()


@pytest.fixture
def fake_commands() -> FakeCommandExecutor:
    return FakeCommandExecutor()


@pytest.fixture
def migrations_dir(tmp_path):
    folder = tmp_path / "migrations"
    folder.mkdir()
    return folder


@pytest.fixture
def config(migrations_dir, tmp_path) -> Config:
    return Config(
        database="pgmgr_test",
        username="pgmgr",
        migration_folder=str(migrations_dir),
        dump_file=str(tmp_path / "dump.sql"),
        lock_config=LockConfig(),
    )
