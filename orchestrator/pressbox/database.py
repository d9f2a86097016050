from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def create_registry_engine(database_url: str) -> AsyncEngine:
    """
    Create the async engine backing the site registry.

    The registry is a single-user desktop store, so SQLite is the default;
    WAL mode keeps concurrent reads from blocking lifecycle writes.
    """
    is_sqlite = database_url.startswith("sqlite")

    engine = create_async_engine(
        database_url,
        echo=False,  # Disable SQL query logging to reduce noise
        future=True,
        pool_pre_ping=not is_sqlite,
        connect_args={"timeout": 30} if is_sqlite else {}
    )

    if is_sqlite:
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
