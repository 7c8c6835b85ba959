"""Database session factory setup."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Seconds a SQLite writer waits on the database lock before failing
SQLITE_BUSY_TIMEOUT = 30


def engine_options(db_url: str, pool_size: int) -> dict:
    """Engine keyword arguments for the given backend.

    Postgres gets a fixed-size pool with pre-ping. SQLite serializes writers on
    a file lock, so it gets a busy timeout instead; the conditional updates in
    the ledger rely on writers waiting rather than erroring out.
    """
    if make_url(db_url).get_backend_name() == "sqlite":
        return {"connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}

    return {
        "pool_size": pool_size,
        "max_overflow": 0,  # No overflow beyond pool_size
        "pool_pre_ping": True,
    }


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database URL (postgresql+psycopg://... in production,
            sqlite+aiosqlite:///... for tests and local runs)
        pool_size: Maximum number of Postgres connections (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_async_engine(
        db_url,
        echo=False,  # SQL is not logged; structlog events carry job context
        **engine_options(db_url, pool_size),
    )

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Jobs are read after commit by the worker
    )
