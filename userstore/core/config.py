"""Application configuration with environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url

BUNDLED_MIGRATIONS_ROOT = Path(__file__).resolve().parents[1] / "migrations"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # Database
    DATABASE_URL: str = "sqlite:///./userstore.db"

    # Connection pool (ignored for SQLite)
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Migrations
    MIGRATIONS_DIR: str = ""  # Empty = bundled scripts for the database dialect
    MIGRATION_LOCK_ID: int = 9823417

    # Per-operation deadline in seconds (0 disables)
    OPERATION_TIMEOUT_SECONDS: float = 0

    LOG_LEVEL: str = "INFO"

    @property
    def dialect_name(self) -> str:
        """Backend name of DATABASE_URL, e.g. 'postgresql' or 'sqlite'."""
        return make_url(self.DATABASE_URL).get_backend_name()

    @property
    def migrations_path(self) -> Path:
        """Directory holding the up/down script pairs."""
        if self.MIGRATIONS_DIR:
            return Path(self.MIGRATIONS_DIR)
        return BUNDLED_MIGRATIONS_ROOT / self.dialect_name

    @property
    def operation_timeout(self) -> float | None:
        if self.OPERATION_TIMEOUT_SECONDS <= 0:
            return None
        return self.OPERATION_TIMEOUT_SECONDS


settings = Settings()
