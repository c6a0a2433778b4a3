from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from userstore.core.config import Settings, settings

# Execution option selecting the SQLite BEGIN mode (IMMEDIATE unless overridden)
SQLITE_BEGIN_OPTION = "sqlite_begin"
SQLITE_BEGIN_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    """Make SQLite transactions real: FKs enforced, DDL inside BEGIN."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Stop pysqlite from issuing its own BEGIN/COMMIT around DDL
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # Writers take the write lock up front so concurrent writers queue on
        # the busy timeout instead of deadlocking on lock upgrade
        mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "IMMEDIATE")
        if mode not in SQLITE_BEGIN_MODES:
            raise ValueError(f"Unsupported SQLite BEGIN mode: {mode!r}")
        conn.exec_driver_sql(f"BEGIN {mode}")


def create_engine_with_settings(config: Settings) -> Engine:
    url = make_url(config.DATABASE_URL)
    backend = url.get_backend_name()

    if backend == "sqlite":
        engine = create_engine(
            url, connect_args={"check_same_thread": False, "timeout": config.DB_POOL_TIMEOUT}
        )
        _install_sqlite_transaction_hooks(engine)
        return engine

    connect_args = {}
    if backend.startswith("postgresql"):
        connect_args["options"] = "-c timezone=utc"

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        pool_recycle=config.DB_POOL_RECYCLE,
        connect_args=connect_args,
    )


engine = create_engine_with_settings(settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
