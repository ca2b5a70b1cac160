"""
Database engine and sessions.

Request handlers get a request-scoped session from `get_session`. The
workflow services (catalog, eligibility, mint, forge) take the session
factory instead and open one short transaction per step, so a slow ledger
call never holds a connection or a row lock.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from triviaforge.config import settings
from triviaforge.models.db import Base

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


async def init_db() -> None:
    """Create missing tables. Called once at startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of pooled connections. Called at shutdown."""
    await engine.dispose()
