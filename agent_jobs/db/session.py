from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from agent_jobs.settings import settings


def make_engine(url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(url, echo=False, pool_pre_ping=True, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)

AsyncSessionLocal = make_session_factory(engine)

class Base(DeclarativeBase):
    pass

async def init_models(bind: AsyncEngine = engine) -> None:
    """Creates any missing tables."""
    # Registers the mapped classes on Base.metadata
    from agent_jobs.db import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_db_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
