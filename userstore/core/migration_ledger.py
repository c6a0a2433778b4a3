"""Durable record of applied migrations.

The ledger works on the caller's connection, so ``record_applied`` and
``record_reverted`` commit or roll back together with the migration's own
schema changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, insert, inspect, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError

from userstore.core.errors import ChecksumMismatch, LedgerUnavailable
from userstore.db.models import SchemaMigration


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: datetime
    execution_ms: int = 0


class MigrationLedger:
    def __init__(self, connection: Connection):
        self.connection = connection

    def exists(self) -> bool:
        try:
            return SchemaMigration.__tablename__ in inspect(self.connection).get_table_names()
        except OperationalError as exc:
            raise LedgerUnavailable(f"Cannot inspect migration ledger: {exc.orig}") from exc

    def ensure_table(self) -> None:
        if self.exists():
            return
        try:
            SchemaMigration.__table__.create(self.connection)
        except OperationalError as exc:
            raise LedgerUnavailable(f"Cannot prepare migration ledger: {exc.orig}") from exc

    def has_applied(self, version: int) -> bool:
        stmt = select(SchemaMigration.version).where(SchemaMigration.version == version)
        return self._execute(stmt).first() is not None

    def record_applied(self, version: int, name: str, checksum: str, execution_ms: int = 0) -> None:
        self._execute(
            insert(SchemaMigration).values(
                version=version,
                name=name,
                checksum=checksum,
                execution_ms=execution_ms,
            )
        )

    def record_reverted(self, version: int) -> None:
        self._execute(delete(SchemaMigration).where(SchemaMigration.version == version))

    def list_applied(self) -> list[MigrationRecord]:
        stmt = select(
            SchemaMigration.version,
            SchemaMigration.name,
            SchemaMigration.checksum,
            SchemaMigration.applied_at,
            SchemaMigration.execution_ms,
        ).order_by(SchemaMigration.version)
        return [
            MigrationRecord(
                version=row.version,
                name=row.name,
                checksum=row.checksum,
                applied_at=row.applied_at,
                execution_ms=row.execution_ms,
            )
            for row in self._execute(stmt)
        ]

    def verify_checksum(self, version: int, checksum: str) -> None:
        stmt = select(SchemaMigration.checksum).where(SchemaMigration.version == version)
        recorded = self._execute(stmt).scalar_one_or_none()
        if recorded is not None and recorded != checksum:
            raise ChecksumMismatch(version, recorded, checksum)

    def _execute(self, stmt):
        try:
            return self.connection.execute(stmt)
        except OperationalError as exc:
            if exc.connection_invalidated:
                raise LedgerUnavailable(f"Migration ledger unreachable: {exc.orig}") from exc
            raise
