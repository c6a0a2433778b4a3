"""Migration runner: applies and reverts versioned script pairs.

Each migration runs in its own transaction together with its ledger write.
A run holds a runner-wide lock (PostgreSQL advisory lock, or a single-row lock
table elsewhere) so two runners never interleave.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy import delete, insert, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from userstore.core.config import BUNDLED_MIGRATIONS_ROOT, settings
from userstore.core.errors import (
    LedgerUnavailable,
    MigrationFailed,
    MissingMigrationScript,
    OperationTimeout,
    OutOfOrderMigration,
    RunnerBusy,
)
from userstore.core.migration_ledger import MigrationLedger, MigrationRecord
from userstore.core.migration_scripts import MigrationScript, load_migrations, split_statements
from userstore.core.structured_logging import build_log_context
from userstore.core.timeouts import Deadline, enforce_deadline, is_timeout_error
from userstore.db.models import MigrationLock

logger = logging.getLogger(__name__)

LOCK_ROW_ID = 1

# SQLite error text when another connection holds the write lock
LOCK_CONTENTION_MARKERS = ("database is locked", "database table is locked")


@dataclass(frozen=True)
class MigrationStatus:
    applied: tuple[MigrationRecord, ...]
    pending: tuple[int, ...]

    @property
    def current_version(self) -> int | None:
        return self.applied[-1].version if self.applied else None

    @property
    def is_up_to_date(self) -> bool:
        return not self.pending


@dataclass(frozen=True)
class MigrationReport:
    direction: str
    versions: tuple[int, ...] = ()

    @property
    def actions(self) -> int:
        return len(self.versions)


@dataclass(frozen=True)
class LockHolder:
    holder: str
    acquired_at: datetime


def default_migrations_dir(engine: Engine) -> Path:
    if settings.MIGRATIONS_DIR:
        return Path(settings.MIGRATIONS_DIR)
    return BUNDLED_MIGRATIONS_ROOT / engine.dialect.name


class MigrationRunner:
    def __init__(
        self,
        engine: Engine,
        directory: Path | str | None = None,
        *,
        lock_id: int | None = None,
        timeout: float | None = None,
    ):
        self.engine = engine
        self.directory = Path(directory) if directory else default_migrations_dir(engine)
        self.lock_id = settings.MIGRATION_LOCK_ID if lock_id is None else lock_id
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def up(self, target: int | None = None) -> MigrationReport:
        """Apply pending migrations up to ``target`` (inclusive), oldest first."""
        scripts = load_migrations(self.directory)
        deadline = Deadline.after(self.timeout)
        applied: list[int] = []

        with self._connect() as connection, self._runner_lock(connection):
            ledger = MigrationLedger(connection)
            records = self._verified_records(connection, ledger, scripts)
            done = {record.version for record in records}
            latest = records[-1].version if records else None

            pending = [
                script
                for script in scripts
                if script.version not in done and (target is None or script.version <= target)
            ]
            if pending and latest is not None and pending[0].version < latest:
                raise OutOfOrderMigration(pending[0].version, latest)

            for script in pending:
                self._apply(connection, ledger, script, deadline)
                applied.append(script.version)

        if not applied:
            logger.info("No pending migrations", extra=build_log_context(operation="migrate_up"))
        return MigrationReport(direction="up", versions=tuple(applied))

    def down(self, steps: int = 1) -> MigrationReport:
        """Revert the ``steps`` most recently applied migrations, newest first."""
        if steps < 1:
            raise ValueError("steps must be at least 1")

        scripts = load_migrations(self.directory)
        by_version = {script.version: script for script in scripts}
        deadline = Deadline.after(self.timeout)
        reverted: list[int] = []

        with self._connect() as connection, self._runner_lock(connection):
            ledger = MigrationLedger(connection)
            records = self._verified_records(connection, ledger, scripts)
            for record in reversed(records[-steps:]):
                self._revert(connection, ledger, by_version[record.version], deadline)
                reverted.append(record.version)

        if not reverted:
            logger.info("No applied migrations to revert", extra=build_log_context(operation="migrate_down"))
        return MigrationReport(direction="down", versions=tuple(reverted))

    def status(self) -> MigrationStatus:
        scripts = load_migrations(self.directory)
        with self._connect() as connection:
            ledger = MigrationLedger(connection)
            with connection.begin():
                records = ledger.list_applied() if ledger.exists() else []

        done = {record.version for record in records}
        return MigrationStatus(
            applied=tuple(records),
            pending=tuple(script.version for script in scripts if script.version not in done),
        )

    def lock_holder(self) -> LockHolder | None:
        """Current holder of the lock-table row, if any (always None on PostgreSQL)."""
        if self.engine.dialect.name == "postgresql":
            return None
        with self._connect() as connection, connection.begin():
            return self._read_lock_row(connection)

    def force_unlock(self) -> LockHolder | None:
        """
        Delete a lock row left behind by a runner that died while holding it.

        PostgreSQL advisory locks end with their session, so there is nothing
        to clear there. Returns the holder that was removed.
        """
        if self.engine.dialect.name == "postgresql":
            return None
        with self._connect() as connection, connection.begin():
            holder = self._read_lock_row(connection)
            if holder is not None:
                connection.execute(delete(MigrationLock).where(MigrationLock.id == LOCK_ROW_ID))

        if holder is not None:
            logger.warning(
                f"Force-released migration lock held by {holder.holder} since {holder.acquired_at}",
                extra=build_log_context(operation="migrate_unlock"),
            )
        return holder

    @staticmethod
    def _read_lock_row(connection: Connection) -> LockHolder | None:
        if MigrationLock.__tablename__ not in inspect(connection).get_table_names():
            return None
        row = connection.execute(
            select(MigrationLock.holder, MigrationLock.acquired_at).where(MigrationLock.id == LOCK_ROW_ID)
        ).first()
        if row is None:
            return None
        return LockHolder(holder=row.holder, acquired_at=row.acquired_at)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _verified_records(
        self,
        connection: Connection,
        ledger: MigrationLedger,
        scripts: list[MigrationScript],
    ) -> list[MigrationRecord]:
        """Load the ledger and fail on drift before any schema change."""
        by_version = {script.version: script for script in scripts}
        with connection.begin():
            ledger.ensure_table()
            records = ledger.list_applied()
            for record in records:
                script = by_version.get(record.version)
                if script is None:
                    raise MissingMigrationScript(record.version)
                ledger.verify_checksum(record.version, script.checksum)
        return records

    def _apply(
        self,
        connection: Connection,
        ledger: MigrationLedger,
        script: MigrationScript,
        deadline: Deadline,
    ) -> None:
        started = time.monotonic()

        def _record() -> None:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            ledger.record_applied(script.version, script.name, script.checksum, elapsed_ms)

        self._run_step(connection, script.version, script.up_sql, deadline, _record)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Applied migration {script.label} in {duration_ms} ms",
            extra=build_log_context(
                version=script.version,
                migration=script.name,
                operation="migrate_up",
                duration_ms=duration_ms,
            ),
        )

    def _revert(
        self,
        connection: Connection,
        ledger: MigrationLedger,
        script: MigrationScript,
        deadline: Deadline,
    ) -> None:
        if not script.reversible:
            raise MigrationFailed(script.version, "migration is irreversible (no down script)")

        started = time.monotonic()
        self._run_step(
            connection,
            script.version,
            script.down_sql,
            deadline,
            lambda: ledger.record_reverted(script.version),
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Reverted migration {script.label} in {duration_ms} ms",
            extra=build_log_context(
                version=script.version,
                migration=script.name,
                operation="migrate_down",
                duration_ms=duration_ms,
            ),
        )

    def _run_step(
        self,
        connection: Connection,
        version: int,
        sql: str,
        deadline: Deadline,
        record: Callable[[], None],
    ) -> None:
        """Run one script plus its ledger write in a single transaction."""
        try:
            with connection.begin():
                with enforce_deadline(connection, deadline):
                    deadline.check()
                    self._execute_script(connection, sql)
                    record()
                    deadline.check()
        except OperationTimeout:
            logger.warning(f"Migration {version} exceeded its deadline; rolled back")
            raise
        except DBAPIError as exc:
            if is_timeout_error(exc):
                logger.warning(f"Migration {version} exceeded its deadline; rolled back")
                raise OperationTimeout(f"Migration {version} exceeded its deadline") from exc
            if exc.connection_invalidated:
                raise LedgerUnavailable(f"Store connection lost during migration {version}") from exc
            logger.error(
                f"Migration {version} failed: {exc.orig}",
                extra=build_log_context(version=version),
            )
            raise MigrationFailed(version, str(exc.orig)) from exc

    @staticmethod
    def _execute_script(connection: Connection, sql: str) -> None:
        options = {"no_parameters": True}
        if connection.dialect.name == "postgresql":
            # Simple-query protocol accepts the whole multi-statement script
            connection.exec_driver_sql(sql, execution_options=options)
            return
        for statement in split_statements(sql):
            connection.exec_driver_sql(statement, execution_options=options)

    # -------------------------------------------------------------------------
    # Connection & lock
    # -------------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            connection = self.engine.connect()
        except OperationalError as exc:
            raise LedgerUnavailable(f"Cannot reach migration ledger: {exc.orig}") from exc
        with connection:
            yield connection

    @contextmanager
    def _runner_lock(self, connection: Connection) -> Iterator[None]:
        if connection.dialect.name == "postgresql":
            with self._advisory_lock(connection):
                yield
        else:
            with self._table_lock(connection):
                yield

    @contextmanager
    def _advisory_lock(self, connection: Connection) -> Iterator[None]:
        with connection.begin():
            acquired = connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"),
                {"lock_id": self.lock_id},
            ).scalar()
        if not acquired:
            raise RunnerBusy(f"Another migration runner holds advisory lock {self.lock_id}")

        try:
            yield
        finally:
            try:
                with connection.begin():
                    connection.execute(
                        text("SELECT pg_advisory_unlock(:lock_id)"),
                        {"lock_id": self.lock_id},
                    )
            except DBAPIError:
                # The lock dies with the session if the connection is gone
                logger.warning(f"Could not release advisory lock {self.lock_id}", exc_info=True)

    @contextmanager
    def _table_lock(self, connection: Connection) -> Iterator[None]:
        holder = f"{socket.gethostname()}:{os.getpid()}"
        try:
            # A runner mid-migration holds the write lock; do not queue behind it
            with _sqlite_busy_timeout(connection, 0), connection.begin():
                if MigrationLock.__tablename__ not in inspect(connection).get_table_names():
                    MigrationLock.__table__.create(connection)
                connection.execute(insert(MigrationLock).values(id=LOCK_ROW_ID, holder=holder))
        except IntegrityError as exc:
            raise RunnerBusy("Another migration runner holds the migration lock") from exc
        except OperationalError as exc:
            if _is_lock_contention(exc):
                raise RunnerBusy("Another migration runner is writing to the database") from exc
            raise LedgerUnavailable(f"Cannot take migration lock: {exc.orig}") from exc

        try:
            yield
        finally:
            with connection.begin():
                connection.execute(delete(MigrationLock).where(MigrationLock.id == LOCK_ROW_ID))


@contextmanager
def _sqlite_busy_timeout(connection: Connection, milliseconds: int) -> Iterator[None]:
    """Temporarily change how long SQLite waits for another writer."""
    if connection.dialect.name != "sqlite":
        yield
        return

    # PRAGMAs go to the driver directly so they do not open a transaction
    raw = connection.connection.driver_connection
    previous = raw.execute("PRAGMA busy_timeout").fetchone()[0]
    raw.execute(f"PRAGMA busy_timeout = {int(milliseconds)}")
    try:
        yield
    finally:
        raw.execute(f"PRAGMA busy_timeout = {int(previous)}")


def _is_lock_contention(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return any(marker in message for marker in LOCK_CONTENTION_MARKERS)


def get_migration_status(engine: Engine) -> MigrationStatus:
    return MigrationRunner(engine).status()


def ensure_migrations(engine: Engine, auto_migrate: bool) -> MigrationStatus:
    """Report migration status, applying pending migrations when asked."""
    status = get_migration_status(engine)
    if status.is_up_to_date or not auto_migrate:
        return status

    MigrationRunner(engine, timeout=settings.operation_timeout).up()
    return get_migration_status(engine)
