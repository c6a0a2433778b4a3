"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database per test
- A migration runner over the bundled SQLite scripts
- A session bound to a fully migrated database
- Helpers for building scratch migration directories
"""
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from userstore.core.config import BUNDLED_MIGRATIONS_ROOT, Settings
from userstore.core.migrations import MigrationRunner
from userstore.db.session import create_engine_with_settings

SQLITE_MIGRATIONS = BUNDLED_MIGRATIONS_ROOT / "sqlite"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed SQLite engine so several connections share one database."""
    settings = Settings(ENV="test", DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}")
    engine = create_engine_with_settings(settings)
    yield engine
    engine.dispose()


@pytest.fixture
def runner(engine) -> MigrationRunner:
    return MigrationRunner(engine, SQLITE_MIGRATIONS)


@pytest.fixture
def session_factory(engine, runner) -> sessionmaker:
    runner.up()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Scratch migrations
# =============================================================================

class MigrationDir:
    """Builds a migrations directory one script pair at a time."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def add(self, version: int, name: str, up: str, down: str | None = None) -> "MigrationDir":
        (self.root / f"{version}_{name}.up.sql").write_text(up, encoding="utf-8")
        if down is not None:
            (self.root / f"{version}_{name}.down.sql").write_text(down, encoding="utf-8")
        return self

    def rewrite_up(self, version: int, name: str, up: str) -> None:
        (self.root / f"{version}_{name}.up.sql").write_text(up, encoding="utf-8")

    def remove(self, version: int, name: str) -> None:
        for direction in ("up", "down"):
            path = self.root / f"{version}_{name}.{direction}.sql"
            if path.exists():
                path.unlink()


@pytest.fixture
def migration_dir(tmp_path) -> MigrationDir:
    return MigrationDir(tmp_path / "migrations")
