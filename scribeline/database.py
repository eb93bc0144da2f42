import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from scribeline.config import Settings


class Base(DeclarativeBase):
    pass


def build_engine(config: Settings) -> AsyncEngine:
    """Create the async engine for the configured database.

    Engines are built explicitly at startup and handed to the components that
    need them; nothing in the package holds a module-level client.
    """
    url = config.resolved_database_url
    if url.startswith("sqlite") and ":memory:" not in url:
        os.makedirs(config.data_dir, exist_ok=True)
    return create_async_engine(url, echo=False)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    # Import models so their tables are registered on Base.metadata
    import scribeline.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
