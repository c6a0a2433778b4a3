"""Caller-imposed deadlines for store operations.

A deadline is enforced twice: the store interrupts statements that run past it
(PostgreSQL ``statement_timeout``, SQLite progress handler) and the caller
checks it again right before commit, so an expired operation never commits.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError

from userstore.core.errors import OperationTimeout

QUERY_CANCELED_SQLSTATE = "57014"
SQLITE_PROGRESS_OPCODES = 1000


@dataclass(frozen=True)
class Deadline:
    expires_at: float | None = None

    @classmethod
    def after(cls, timeout: float | None) -> "Deadline":
        if timeout is None:
            return cls()
        return cls(expires_at=time.monotonic() + timeout)

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self) -> None:
        if self.expired:
            raise OperationTimeout("Operation exceeded its deadline and was rolled back")


@contextmanager
def enforce_deadline(connection: Connection, deadline: Deadline) -> Iterator[None]:
    """Make the store interrupt statements once ``deadline`` passes.

    Must be entered inside an open transaction.
    """
    remaining = deadline.remaining()
    if remaining is None:
        yield
        return

    dialect = connection.dialect.name
    if dialect == "postgresql":
        # SET LOCAL expires with the transaction; 0 would mean "no limit"
        timeout_ms = max(1, int(remaining * 1000))
        connection.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        yield
    elif dialect == "sqlite":
        raw = connection.connection.driver_connection
        raw.set_progress_handler(lambda: int(deadline.expired), SQLITE_PROGRESS_OPCODES)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)
    else:
        yield


def is_timeout_error(error: DBAPIError) -> bool:
    """True when the driver reports a statement cancelled by a deadline."""
    if getattr(error.orig, "sqlstate", None) == QUERY_CANCELED_SQLSTATE:
        return True
    return "interrupted" in str(error.orig).lower()
