"""
Async database engine and sessions for the match and presence store.

Production runs on PostgreSQL through asyncpg. Tests point
``AsyncSessionLocal`` at their own engine, so code that opens sessions
outside a request (analysis jobs, the presence sweep) must look it up on
this module at call time rather than importing the name.
"""

import os
from typing import AsyncGenerator, Dict, Any
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
from sqlalchemy.orm import DeclarativeBase
from dotenv import load_dotenv

load_dotenv()


def _build_database_url() -> str:
    """DATABASE_URL if set, else assembled from the POSTGRES_* variables."""
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    user = os.getenv("POSTGRES_USER", "kingz")
    password = os.getenv("POSTGRES_PASSWORD", "kingz")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    name = os.getenv("POSTGRES_DB", "kingz")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


def engine_options(url: str) -> Dict[str, Any]:
    """Pool settings; SQLite drivers reject the queue-pool sizing arguments."""
    options: Dict[str, Any] = {"echo": os.getenv("SQL_ECHO", "false").lower() == "true"}
    if not url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return options


DATABASE_URL = _build_database_url()

engine: AsyncEngine = create_async_engine(DATABASE_URL, **engine_options(DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


# Registers the tables on Base.metadata
from kingz.database import models  # noqa: F401, E402


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Commits when the route returns normally and rolls back if it raises, so a
    route never needs to commit writes made by the services it calls.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_database():
    """Create any missing tables. Migrations remain the source of truth in production."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
