"""Discovery and parsing of versioned migration script pairs.

Layout of a migrations directory::

    20251208123639_create_users_table.up.sql
    20251208123639_create_users_table.down.sql

The version is the creation timestamp (UTC, ``YYYYMMDDHHMMSS``). A migration
without a ``.down.sql`` file is irreversible. Script text is opaque to the
runner apart from statement splitting for drivers that need it.
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from userstore.core.errors import InvalidMigrationSource

SCRIPT_NAME_RE = re.compile(r"^(?P<version>\d+)_(?P<name>[A-Za-z0-9_\-]+)\.(?P<direction>up|down)\.sql$")
VERSION_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class MigrationScript:
    version: int
    name: str
    up_sql: str
    down_sql: str | None = None
    # Digest of the up script as stored on disk; derived from up_sql when omitted
    checksum: str = ""

    def __post_init__(self) -> None:
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(self.up_sql))

    @property
    def reversible(self) -> bool:
        return self.down_sql is not None

    @property
    def label(self) -> str:
        return f"{self.version}_{self.name}"


def compute_checksum(sql: str | bytes) -> str:
    """SHA-384 hex digest of the script bytes (text is UTF-8 encoded first)."""
    if isinstance(sql, str):
        sql = sql.encode("utf-8")
    return hashlib.sha384(sql).hexdigest()


def load_migrations(directory: Path | str) -> list[MigrationScript]:
    """
    Read every script pair in ``directory``, sorted by version.

    Raises:
        InvalidMigrationSource: missing directory, malformed file name,
            duplicate version, or a down script without its up script.
    """
    root = Path(directory)
    if not root.is_dir():
        raise InvalidMigrationSource(f"Migrations directory not found: {root}")

    ups: dict[int, tuple[str, bytes]] = {}
    downs: dict[int, tuple[str, bytes]] = {}
    for path in sorted(root.glob("*.sql")):
        match = SCRIPT_NAME_RE.match(path.name)
        if match is None:
            raise InvalidMigrationSource(f"Unrecognised migration file name: {path.name}")

        version = int(match["version"])
        bucket = ups if match["direction"] == "up" else downs
        if version in bucket:
            raise InvalidMigrationSource(
                f"Duplicate {match['direction']} script for version {version}: {path.name}"
            )
        # Raw bytes: line-ending changes count as drift
        bucket[version] = (match["name"], path.read_bytes())

    orphans = sorted(set(downs) - set(ups))
    if orphans:
        raise InvalidMigrationSource(f"Down script without up script for version(s): {orphans}")

    scripts = []
    for version in sorted(ups):
        name, up_raw = ups[version]
        down = downs.get(version)
        if down is not None and down[0] != name:
            raise InvalidMigrationSource(
                f"Version {version} has mismatched names: {name!r} / {down[0]!r}"
            )
        scripts.append(
            MigrationScript(
                version=version,
                name=name,
                up_sql=_decode(up_raw, version),
                down_sql=_decode(down[1], version) if down else None,
                checksum=compute_checksum(up_raw),
            )
        )
    return scripts


def _decode(raw: bytes, version: int) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidMigrationSource(f"Migration {version} is not valid UTF-8: {exc}") from exc


def split_statements(sql: str) -> list[str]:
    """
    Split a script into complete SQL statements.

    Uses SQLite's own completeness check, so semicolons inside string
    literals, comments and ``CREATE TRIGGER ... BEGIN ... END`` bodies do not
    end a statement. Comment-only fragments are dropped.
    """
    statements: list[str] = []
    buffer = ""
    *pieces, tail = sql.split(";")
    for piece in pieces:
        buffer += piece + ";"
        if sqlite3.complete_statement(buffer):
            if _has_code(buffer):
                statements.append(buffer.strip())
            buffer = ""
    # Trailing statement without a terminating semicolon
    buffer += tail
    if _has_code(buffer):
        statements.append(buffer.strip())
    return statements


def _has_code(fragment: str) -> bool:
    for line in fragment.splitlines():
        stripped = line.split("--", 1)[0].strip().strip(";")
        if stripped:
            return True
    return False


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    if not slug:
        raise InvalidMigrationSource(f"Migration name {name!r} has no usable characters")
    return slug


def create_migration(
    directory: Path | str,
    name: str,
    now: datetime | None = None,
) -> tuple[Path, Path]:
    """Write an empty reversible script pair stamped with the current UTC time."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    stamp = (now or datetime.now(timezone.utc)).strftime(VERSION_FORMAT)
    if any(root.glob(f"{stamp}_*.sql")):
        raise InvalidMigrationSource(f"A migration with version {stamp} already exists")

    base = f"{stamp}_{slugify(name)}"
    up_path = root / f"{base}.up.sql"
    down_path = root / f"{base}.down.sql"
    up_path.write_text("-- Add up migration script here\n", encoding="utf-8")
    down_path.write_text("-- Add down migration script here\n", encoding="utf-8")
    return up_path, down_path
