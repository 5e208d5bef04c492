from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from chatrelay.core.config import settings


class Base(DeclarativeBase):
    pass


engine: AsyncEngine = create_async_engine(settings.database_url, echo=settings.debug, pool_pre_ping=True)
async_session = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def init_models(bind: AsyncEngine = engine) -> None:
    """Create all tables. Schema migrations are managed outside the app."""
    import chatrelay.models  # noqa: F401  registers the mappers on Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
