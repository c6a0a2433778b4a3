"""Tests for applying and reverting migrations."""

import threading
import time

import pytest
from sqlalchemy import inspect, insert, select

from userstore.core.errors import (
    ChecksumMismatch,
    MigrationFailed,
    MissingMigrationScript,
    OperationTimeout,
    OutOfOrderMigration,
    RunnerBusy,
)
from userstore.core.migration_ledger import MigrationLedger
from userstore.core import migrations as migrations_module
from userstore.core.migrations import MigrationRunner, ensure_migrations, get_migration_status
from userstore.db.models import MigrationLock


def _tables(engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _applied_versions(engine) -> list[int]:
    with engine.connect() as connection, connection.begin():
        return [record.version for record in MigrationLedger(connection).list_applied()]


@pytest.fixture
def three_step_dir(migration_dir):
    return (
        migration_dir
        .add(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY);", "DROP TABLE a;")
        .add(2, "create_b", "CREATE TABLE b (id INTEGER PRIMARY KEY);", "DROP TABLE b;")
        .add(3, "create_c", "CREATE TABLE c (id INTEGER PRIMARY KEY);", "DROP TABLE c;")
    )


# =============================================================================
# up
# =============================================================================

def test_up_applies_bundled_schema(engine, runner):
    report = runner.up()

    assert report.direction == "up"
    assert report.actions == 1
    assert {"users", "user_infos", "schema_migrations"} <= _tables(engine)
    assert "user_details" in inspect(engine).get_view_names()


def test_up_twice_is_a_no_op(engine, runner):
    runner.up()
    before = _applied_versions(engine)

    report = runner.up()

    assert report.actions == 0
    assert _applied_versions(engine) == before


def test_up_stops_at_target(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)

    report = runner.up(target=2)

    assert report.versions == (1, 2)
    assert _applied_versions(engine) == [1, 2]
    assert "c" not in _tables(engine)

    assert runner.up().versions == (3,)


def test_up_records_checksum_and_duration(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)
    runner.up(target=1)

    status = runner.status()

    [record] = status.applied
    assert record.name == "create_a"
    assert len(record.checksum) == 96
    assert record.execution_ms >= 0
    assert status.pending == (2, 3)
    assert status.current_version == 1


def test_failed_migration_rolls_back_and_keeps_earlier_ones(engine, migration_dir):
    migration_dir.add(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY);")
    migration_dir.add(
        2,
        "broken",
        "CREATE TABLE b (id INTEGER PRIMARY KEY);\nINSERT INTO missing_table VALUES (1);",
    )
    migration_dir.add(3, "create_c", "CREATE TABLE c (id INTEGER PRIMARY KEY);")
    runner = MigrationRunner(engine, migration_dir.root)

    with pytest.raises(MigrationFailed) as exc_info:
        runner.up()

    assert exc_info.value.version == 2
    assert "missing_table" in exc_info.value.cause
    assert _applied_versions(engine) == [1]
    tables = _tables(engine)
    assert "a" in tables
    assert "b" not in tables
    assert "c" not in tables


def test_lock_is_released_after_failure(engine, migration_dir):
    migration_dir.add(1, "broken", "INSERT INTO missing_table VALUES (1);")
    runner = MigrationRunner(engine, migration_dir.root)
    with pytest.raises(MigrationFailed):
        runner.up()

    migration_dir.rewrite_up(1, "broken", "CREATE TABLE fixed (id INTEGER);")

    assert runner.up().versions == (1,)


def test_checksum_drift_blocks_run_before_any_change(engine, migration_dir):
    migration_dir.add(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY);")
    runner = MigrationRunner(engine, migration_dir.root)
    runner.up()

    migration_dir.rewrite_up(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY, extra TEXT);")
    migration_dir.add(2, "create_b", "CREATE TABLE b (id INTEGER PRIMARY KEY);")

    with pytest.raises(ChecksumMismatch) as exc_info:
        runner.up()

    assert exc_info.value.version == 1
    assert _applied_versions(engine) == [1]
    assert "b" not in _tables(engine)


def test_older_pending_migration_is_rejected(engine, migration_dir):
    migration_dir.add(2, "create_b", "CREATE TABLE b (id INTEGER PRIMARY KEY);")
    runner = MigrationRunner(engine, migration_dir.root)
    runner.up()

    migration_dir.add(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY);")

    with pytest.raises(OutOfOrderMigration) as exc_info:
        runner.up()

    assert exc_info.value.version == 1
    assert exc_info.value.latest_applied == 2
    assert _applied_versions(engine) == [2]


def test_applied_migration_without_script_is_rejected(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)
    runner.up(target=1)
    three_step_dir.remove(1, "create_a")

    with pytest.raises(MissingMigrationScript) as exc_info:
        runner.up()

    assert exc_info.value.version == 1
    assert _applied_versions(engine) == [1]


def test_second_runner_fails_fast_while_lock_is_held(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)
    runner.up(target=1)
    with engine.connect() as connection, connection.begin():
        connection.execute(insert(MigrationLock).values(id=1, holder="other-host:42"))

    with pytest.raises(RunnerBusy):
        runner.up()
    with pytest.raises(RunnerBusy):
        runner.down()

    assert _applied_versions(engine) == [1]
    with engine.connect() as connection, connection.begin():
        holders = connection.execute(select(MigrationLock.holder)).scalars().all()
    assert holders == ["other-host:42"]


def test_expired_deadline_rolls_back_migration(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root, timeout=0)

    with pytest.raises(OperationTimeout):
        runner.up()

    assert _applied_versions(engine) == []
    assert "a" not in _tables(engine)


# =============================================================================
# down
# =============================================================================

def test_up_down_up_restores_schema(engine, runner):
    runner.up()

    report = runner.down(steps=1)

    assert report.direction == "down"
    assert report.actions == 1
    assert _applied_versions(engine) == []
    assert "users" not in _tables(engine)
    assert "user_infos" not in _tables(engine)

    assert runner.up().actions == 1
    assert {"users", "user_infos"} <= _tables(engine)


def test_down_reverts_newest_first(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)
    runner.up()

    report = runner.down(steps=2)

    assert report.versions == (3, 2)
    assert _applied_versions(engine) == [1]
    tables = _tables(engine)
    assert "a" in tables
    assert "b" not in tables
    assert "c" not in tables


def test_down_with_nothing_applied_is_a_no_op(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)

    assert runner.down(steps=3).actions == 0


def test_down_requires_positive_steps(runner):
    with pytest.raises(ValueError):
        runner.down(steps=0)


def test_irreversible_migration_cannot_be_reverted(engine, migration_dir):
    migration_dir.add(1, "create_a", "CREATE TABLE a (id INTEGER PRIMARY KEY);")
    runner = MigrationRunner(engine, migration_dir.root)
    runner.up()

    with pytest.raises(MigrationFailed, match="irreversible"):
        runner.down()

    assert _applied_versions(engine) == [1]
    assert "a" in _tables(engine)


# =============================================================================
# status / ensure
# =============================================================================

def test_status_on_fresh_database_does_not_create_ledger(engine, runner):
    status = runner.status()

    assert status.applied == ()
    assert len(status.pending) == 1
    assert not status.is_up_to_date
    assert status.current_version is None
    assert "schema_migrations" not in _tables(engine)


def test_ensure_migrations_reports_without_applying(engine):
    status = ensure_migrations(engine, auto_migrate=False)

    assert not status.is_up_to_date
    assert "users" not in _tables(engine)


def test_ensure_migrations_applies_when_asked(engine):
    status = ensure_migrations(engine, auto_migrate=True)

    assert status.is_up_to_date
    assert get_migration_status(engine).current_version == status.current_version
    assert "users" in _tables(engine)


# =============================================================================
# Locking
# =============================================================================

def test_second_runner_fails_fast_while_first_is_migrating(monkeypatch, engine, three_step_dir):
    started = threading.Event()
    release = threading.Event()
    execute_script = MigrationRunner._execute_script

    def _slow_execute(connection, sql):
        started.set()
        release.wait(10)
        execute_script(connection, sql)

    monkeypatch.setattr(MigrationRunner, "_execute_script", staticmethod(_slow_execute))
    first = MigrationRunner(engine, three_step_dir.root)
    outcome: dict = {}

    def _run_first():
        outcome["report"] = first.up(target=1)

    worker = threading.Thread(target=_run_first)
    worker.start()
    try:
        assert started.wait(5)
        second = MigrationRunner(engine, three_step_dir.root)

        began = time.monotonic()
        with pytest.raises(RunnerBusy):
            second.up()
        elapsed = time.monotonic() - began
    finally:
        release.set()
        worker.join(10)

    assert elapsed < 5
    assert outcome["report"].versions == (1,)
    assert _applied_versions(engine) == [1]

    # Busy timeout is restored on pooled connections
    with engine.connect() as connection:
        raw = connection.connection.driver_connection
        assert raw.execute("PRAGMA busy_timeout").fetchone()[0] > 0


def test_force_unlock_clears_abandoned_lock(engine, three_step_dir):
    runner = MigrationRunner(engine, three_step_dir.root)
    runner.up(target=1)
    with engine.connect() as connection, connection.begin():
        connection.execute(insert(MigrationLock).values(id=1, holder="dead-host:7"))

    holder = runner.lock_holder()
    assert holder.holder == "dead-host:7"
    assert holder.acquired_at is not None

    released = runner.force_unlock()

    assert released.holder == "dead-host:7"
    assert runner.lock_holder() is None
    assert runner.up().versions == (2, 3)


def test_force_unlock_without_lock_is_a_no_op(engine, runner):
    assert runner.force_unlock() is None
    runner.up()
    assert runner.force_unlock() is None


def test_lock_id_follows_settings(monkeypatch, engine):
    monkeypatch.setattr(migrations_module.settings, "MIGRATION_LOCK_ID", 4242)

    assert MigrationRunner(engine).lock_id == 4242
    assert MigrationRunner(engine, lock_id=7).lock_id == 7


def test_line_ending_change_counts_as_drift(engine, migration_dir):
    (migration_dir.root / "1_create_a.up.sql").write_bytes(b"CREATE TABLE a (id INTEGER);\n")
    runner = MigrationRunner(engine, migration_dir.root)
    runner.up()

    (migration_dir.root / "1_create_a.up.sql").write_bytes(b"CREATE TABLE a (id INTEGER);\r\n")

    with pytest.raises(ChecksumMismatch):
        runner.up()
