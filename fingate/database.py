"""
Database engine and session factory.

The session factory is the persistence handle passed into the guard and
notifier components; routes reach it through ``request.app.state``.
"""
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fingate.config import settings


def create_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine for the configured database."""
    return create_async_engine(url or settings.DATABASE_URL, echo=settings.DEBUG, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """
    FastAPI dependency yielding a session from the app's session factory.

    Usage:
        @router.get("/")
        async def route(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session
