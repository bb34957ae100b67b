"""
AsyncEngine factory and schema bootstrap.

PostgreSQL URLs are rewritten to the asyncpg driver. SQLite (aiosqlite) is
supported for local runs and the test suite; foreign keys are switched on per
connection because SQLite leaves them off by default and the segment cache
relies on ON DELETE CASCADE.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from tripline.api.config import settings
from tripline.api.db.models import Base


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    In-memory SQLite shares one connection (StaticPool) so every session sees
    the same database; everything else uses NullPool and leaves pooling to
    the server side.
    """
    url = _async_url(database_url or settings.database_url)
    echo = settings.debug and settings.environment == "development"

    if url.startswith("sqlite"):
        in_memory = url.endswith("://") or ":memory:" in url
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool if in_memory else NullPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_async_engine(url, poolclass=NullPool, echo=echo)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

