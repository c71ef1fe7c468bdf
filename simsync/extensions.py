from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def create_engine(database_uri: str) -> AsyncEngine:
    return create_async_engine(database_uri, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_all(engine: AsyncEngine) -> None:
    # Create tables (no migrations for the local cache)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
