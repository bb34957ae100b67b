"""
FastAPI dependency for SA async sessions.

expire_on_commit=False is set on the factory (in lifespan) so rows returned
from a committed transaction can still be serialized by the routers.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def get_session_factory(request: Request) -> async_sessionmaker:
    return request.app.state.db_session_factory


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency -- yields an SA session from app.state.db_session_factory.
    """
    factory: async_sessionmaker = get_session_factory(request)
    async with factory() as session:
        yield session
