from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def make_engine(url: str | None = None) -> AsyncEngine:
    return create_async_engine(url or settings.database_url, pool_pre_ping=True)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine = make_engine()
SessionLocal = make_session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as db:
        yield db


def asyncpg_dsn(url: str) -> str:
    """SQLAlchemy URL -> plain libpq DSN usable by asyncpg.connect()."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)
