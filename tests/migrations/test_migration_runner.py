"""
Tests for the MigrationRunner class.

Tests cover:
- Migration ordering and idempotence
- Transactional and non-transactional execution
- Halting on the first failure, with line/column reporting
- Lock-aware retry
- Rollback
- Status reporting
- Migration file generation
"""

from datetime import datetime

import pytest

from pgmgr.config.configuration import LockConfig
from pgmgr.migrations.db_adapter import DatabaseErrorInfo
from pgmgr.migrations.exceptions import (
    ExecutionError,
    LockingError,
    MigrationDiscoveryError,
    RetriesExceededError,
)
from pgmgr.migrations.runner import MigrationRunner, create_migration, generate_version


def _write(folder, name, contents=None):
    (folder / name).write_text(contents if contents is not None else f"-- {name}\n")


@pytest.fixture
def runner(config, fake_executor, fake_store):
    sleeps: list[float] = []
    runner = MigrationRunner(config, executor=fake_executor, store=fake_store, sleep=sleeps.append)
    runner.sleeps = sleeps  # type: ignore[attr-defined]
    return runner


def _bodies(statements):
    return [s for s in statements if s.startswith("-- ")]


class TestMigrate:
    """Tests for MigrationRunner.migrate."""

    def test_applies_in_ascending_version_order(self, runner, migrations_dir, fake_executor, fake_store):
        for name in ("3_c.up.sql", "10_d.up.sql", "1_a.up.sql", "2_b.up.sql"):
            _write(migrations_dir, name)

        applied = runner.migrate()

        assert [m.version for m in applied] == [1, 2, 3, 10]
        assert _bodies(fake_executor.statements) == [
            "-- 1_a.up.sql\n",
            "-- 2_b.up.sql\n",
            "-- 3_c.up.sql\n",
            "-- 10_d.up.sql\n",
        ]
        assert fake_store.initialized
        assert fake_store.applied == {1, 2, 3, 10}

    def test_second_run_is_a_noop(self, runner, migrations_dir, fake_executor):
        _write(migrations_dir, "1_a.up.sql")
        _write(migrations_dir, "2_b.up.sql")

        assert len(runner.migrate()) == 2
        executed = list(fake_executor.statements)

        assert runner.migrate() == []
        assert fake_executor.statements == executed

    def test_applies_late_merged_lower_version(self, runner, migrations_dir, fake_executor, fake_store):
        fake_store.applied = {1, 3}
        for name in ("1_a.up.sql", "2_late.up.sql", "3_c.up.sql"):
            _write(migrations_dir, name)

        applied = runner.migrate()

        assert [m.filename for m in applied] == ["2_late.up.sql"]
        assert _bodies(fake_executor.statements) == ["-- 2_late.up.sql\n"]
        assert fake_store.applied == {1, 2, 3}

    def test_wraps_migration_and_bookkeeping_in_transaction(self, runner, migrations_dir, fake_executor):
        _write(migrations_dir, "1_a.up.sql", "CREATE TABLE a (id int);")

        runner.migrate()

        assert fake_executor.statements == [
            "SET TIMEOUTS 1000 200",
            "BEGIN",
            "CREATE TABLE a (id int);",
            "INSERT 1",
            "COMMIT",
        ]

    def test_no_txn_migration_runs_outside_transaction(self, runner, migrations_dir, fake_executor):
        _write(migrations_dir, "1_index.no_txn.up.sql", "CREATE INDEX CONCURRENTLY a_id ON a (id);")

        runner.migrate()

        assert fake_executor.statements == [
            "SET TIMEOUTS 1000 200",
            "CREATE INDEX CONCURRENTLY a_id ON a (id);",
            "INSERT 1",
        ]

    def test_uses_configured_timeouts(self, runner, migrations_dir, fake_executor):
        runner.config.lock_config = LockConfig(statement_timeout=5000, lock_timeout=300)
        _write(migrations_dir, "1_a.up.sql")

        runner.migrate()

        assert fake_executor.statements[0] == "SET TIMEOUTS 5000 300"

    def test_halts_on_first_failure(self, runner, migrations_dir, fake_executor, fake_store):
        broken = "CREATE TABLE b (id int);\nSELEC 1;\n"
        _write(migrations_dir, "1_a.up.sql")
        _write(migrations_dir, "2_b.up.sql", broken)
        _write(migrations_dir, "3_c.up.sql")

        info = DatabaseErrorInfo(code="42601", position=broken.index("SELEC") + 1, message='syntax error at or near "SELEC"')

        def fail_on_broken(sql):
            if sql == broken:
                raise ExecutionError(str(info), error=info)

        fake_executor.on_execute = fail_on_broken

        with pytest.raises(ExecutionError) as exc_info:
            runner.migrate()

        error = exc_info.value
        assert str(error) == 'PGERROR: line 2 pos 1: syntax error at or near "SELEC".'
        assert (error.line, error.column) == (2, 1)
        assert error.migration_version == 2
        assert "ROLLBACK" in fake_executor.statements
        assert "-- 3_c.up.sql\n" not in fake_executor.statements
        assert fake_store.applied == {1}
        assert fake_executor.opened == fake_executor.closed

    def test_retries_locking_errors(self, runner, migrations_dir, fake_executor, fake_store):
        _write(migrations_dir, "1_a.up.sql", "ALTER TABLE a ADD COLUMN b int;")
        info = DatabaseErrorInfo(code="55P03", position=None, message="canceling statement due to lock timeout")
        failures = {"remaining": 2}

        def lock_twice(sql):
            if sql.startswith("ALTER") and failures["remaining"] > 0:
                failures["remaining"] -= 1
                raise LockingError(str(info), error=info)

        fake_executor.on_execute = lock_twice

        applied = runner.migrate()

        assert [m.version for m in applied] == [1]
        assert runner.sleeps == [5, 5]
        assert fake_executor.statements.count("ROLLBACK") == 2
        assert fake_store.applied == {1}

    def test_gives_up_after_max_retries(self, runner, migrations_dir, fake_executor, fake_store):
        runner.config.lock_config = LockConfig(max_retries=2, retry_delay=1)
        _write(migrations_dir, "1_a.up.sql", "ALTER TABLE a ADD COLUMN b int;")
        info = DatabaseErrorInfo(code="55P03", position=None, message="canceling statement due to lock timeout")

        def always_locked(sql):
            if sql.startswith("ALTER"):
                raise LockingError(str(info), error=info)

        fake_executor.on_execute = always_locked

        with pytest.raises(RetriesExceededError) as exc_info:
            runner.migrate()

        assert isinstance(exc_info.value.__cause__, LockingError)
        assert exc_info.value.migration_version == 1
        assert fake_executor.statements.count("ALTER TABLE a ADD COLUMN b int;") == 3
        assert runner.sleeps == [1, 1]
        assert fake_store.applied == set()

    def test_non_locking_error_is_not_retried(self, runner, migrations_dir, fake_executor):
        _write(migrations_dir, "1_a.up.sql", "DROP TABLE missing;")
        info = DatabaseErrorInfo(code="42P01", position=12, message='table "missing" does not exist')

        def fail(sql):
            if sql.startswith("DROP"):
                raise ExecutionError(str(info), error=info)

        fake_executor.on_execute = fail

        with pytest.raises(ExecutionError):
            runner.migrate()

        assert fake_executor.statements.count("DROP TABLE missing;") == 1
        assert runner.sleeps == []

    def test_missing_folder(self, runner, tmp_path, fake_store):
        runner.config.migration_folder = str(tmp_path / "nope")

        with pytest.raises(MigrationDiscoveryError):
            runner.migrate()

        assert not fake_store.initialized


    def test_undecodable_migration_halts_run(self, runner, migrations_dir, fake_executor, fake_store):
        _write(migrations_dir, "1_a.up.sql")
        (migrations_dir / "2_b.up.sql").write_bytes("INSERT INTO t VALUES ('caf\u00e9');".encode("latin-1"))
        _write(migrations_dir, "3_c.up.sql")

        with pytest.raises(ExecutionError) as exc_info:
            runner.migrate()

        assert exc_info.value.migration_version == 2
        assert runner.sleeps == []
        assert fake_store.applied == {1}


class TestRollback:
    """Tests for MigrationRunner.rollback."""

    def test_reverts_latest_version(self, runner, migrations_dir, fake_executor, fake_store):
        fake_store.applied = {1, 2}
        for name in ("1_a.up.sql", "1_a.down.sql", "2_b.up.sql", "2_b.down.sql"):
            _write(migrations_dir, name)

        reverted = runner.rollback()

        assert reverted is not None
        assert reverted.filename == "2_b.down.sql"
        assert fake_executor.statements == [
            "SET TIMEOUTS 1000 200",
            "BEGIN",
            "-- 2_b.down.sql\n",
            "DELETE 2",
            "COMMIT",
        ]
        assert fake_store.applied == {1}

    def test_only_one_migration_per_call(self, runner, migrations_dir, fake_store):
        fake_store.applied = {1, 2}
        _write(migrations_dir, "1_a.down.sql")
        _write(migrations_dir, "2_b.down.sql")

        runner.rollback()

        assert fake_store.applied == {1}

    def test_noop_without_down_file(self, runner, migrations_dir, fake_executor, fake_store):
        fake_store.applied = {1, 2}
        _write(migrations_dir, "1_a.down.sql")

        assert runner.rollback() is None
        assert fake_executor.statements == []
        assert fake_store.applied == {1, 2}

    def test_noop_when_unversioned(self, runner, migrations_dir, fake_executor):
        _write(migrations_dir, "1_a.down.sql")

        assert runner.rollback() is None
        assert fake_executor.statements == []


class TestStatus:
    """Tests for MigrationRunner.status."""

    def test_status(self, runner, migrations_dir, fake_store):
        fake_store.applied = {1, 3}
        for name in ("1_a.up.sql", "2_b.no_txn.up.sql", "3_c.up.sql", "4_d.up.sql"):
            _write(migrations_dir, name)

        result = runner.status()

        assert result["current_version"] == 3
        assert result["applied"] == [1, 3]
        assert [m.version for m in result["pending"]] == [2, 4]

    def test_status_unversioned(self, runner, migrations_dir):
        _write(migrations_dir, "1_a.up.sql")

        result = runner.status()

        assert result["current_version"] == -1
        assert result["applied"] == []
        assert len(result["pending"]) == 1


class TestCreateMigration:
    """Tests for migration file generation."""

    NOW = datetime(2024, 1, 2, 3, 4, 5)

    def test_unix_version(self, config, migrations_dir):
        up, down = create_migration(config, "add_users", now=self.NOW)

        version = str(int(self.NOW.timestamp()))
        assert up == migrations_dir / f"{version}_add_users.up.sql"
        assert down == migrations_dir / f"{version}_add_users.down.sql"
        assert up.read_text() == "-- Migration goes here.\n"
        assert "Rollback of migration goes here" in down.read_text()

    def test_datetime_version(self, config, migrations_dir):
        config.column_type = "string"
        config.format = "datetime"

        up, _ = create_migration(config, "add_users", now=self.NOW)

        assert up.name == "20240102030405_add_users.up.sql"

    def test_no_txn(self, config):
        up, down = create_migration(config, "add_index", no_txn=True, now=self.NOW)

        assert up.name.endswith("_add_index.no_txn.up.sql")
        assert down.name.endswith("_add_index.no_txn.down.sql")

    def test_generated_files_are_discovered(self, runner, config):
        create_migration(config, "add_users", no_txn=True, now=self.NOW)

        (migration,) = runner.discover_migrations("up")

        assert migration.version == int(generate_version("unix", self.NOW))
        assert not migration.wrap_in_transaction

    def test_refuses_to_overwrite(self, config):
        create_migration(config, "add_users", now=self.NOW)

        with pytest.raises(FileExistsError):
            create_migration(config, "add_users", now=self.NOW)

    def test_existing_down_file_leaves_no_stray_up_file(self, config, migrations_dir):
        version = generate_version("unix", self.NOW)
        (migrations_dir / f"{version}_add_users.down.sql").write_text("-- keep\n")

        with pytest.raises(FileExistsError):
            create_migration(config, "add_users", now=self.NOW)

        assert not (migrations_dir / f"{version}_add_users.up.sql").exists()
        assert (migrations_dir / f"{version}_add_users.down.sql").read_text() == "-- keep\n"

    @pytest.mark.parametrize("name", ["", "../escape", "a\\b"])
    def test_invalid_name(self, config, name):
        with pytest.raises(ValueError):
            create_migration(config, name, now=self.NOW)
