# preflight/db.py
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from preflight.config import settings
from preflight.models import Base

logger = logging.getLogger(__name__)


def make_engine(url: str = None, **kwargs) -> AsyncEngine:
    return create_async_engine(url or settings.database_url, echo=False, future=True, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: jobs are read after commit without lazy loads
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine = make_engine()

AsyncSessionLocal = make_session_factory(engine)


async def init_models(bind: AsyncEngine = None) -> None:
    """
    Development helper that creates tables from ORM metadata.
    In production, prefer Alembic migrations instead of create_all().
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def close_engine() -> None:
    """Call this on app shutdown to cleanly dispose connection pool."""
    await engine.dispose()
    logger.info("Database engine disposed")


# FastAPI dependency
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Use in FastAPI routes like:
        async def endpoint(session: AsyncSession = Depends(get_async_session)):
            ...
    Ensures session is closed and rolled back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
