"""
Shared pytest configuration for backend tests.

By default every test gets a fresh SQLite database (aiosqlite) in a temp
directory. Set TEST_DATABASE_URL to run against PostgreSQL instead.

SAFETY: a TEST_DATABASE_URL whose database name does not contain the
substring "test" is refused, so a misconfigured environment can never drop
the development or production database.
"""

import os

os.environ.setdefault("ENV", "test")

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from kingz.database.db import Base
from kingz.database.models import ActivePlayer, PlayerStats, User, Venue
from kingz.utils.datetime_utils import utcnow


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with safety checks."""
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'kingz_test.db'}"

    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n"
            f"{'=' * 70}"
        )
    return url


# Statement the SQLite begin hook emits; see serialized_writes
_sqlite_begin = {"statement": "BEGIN"}


def _enable_sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works under the sqlite driver."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql(_sqlite_begin["statement"])


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine with all tables."""
    url = _resolve_test_database_url(tmp_path)
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (analysis queue, presence sweep) uses
    # db.AsyncSessionLocal; point it at the test engine
    from kingz.database import db

    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    await asyncio.sleep(0.05)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """A session on the test database, rolled back and closed after the test."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture
def serialized_writes(monkeypatch):
    """
    Start SQLite transactions with BEGIN IMMEDIATE.

    Concurrent sessions then queue on the write lock (as PostgreSQL row locks
    would make them) instead of failing with "database is locked" when two
    readers both try to upgrade. No effect when TEST_DATABASE_URL is set.
    """
    monkeypatch.setitem(_sqlite_begin, "statement", "BEGIN IMMEDIATE")

# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

# Alexanderplatz, Berlin
VENUE_LAT = 52.5219
VENUE_LNG = 13.4132


async def make_user(session, name: str, gender: str = "male") -> User:
    user = User(email=f"{name.lower().replace(' ', '.')}@example.com", name=name, gender=gender)
    session.add(user)
    await session.commit()
    return user


async def make_venue(session, name: str, latitude=VENUE_LAT, longitude=VENUE_LNG, district=None) -> Venue:
    venue = Venue(name=name, latitude=latitude, longitude=longitude, district=district, city="Berlin")
    session.add(venue)
    await session.commit()
    return venue


async def make_presence(session, user_id: int, venue_id: int, age=timedelta(0), lat=None, lng=None) -> ActivePlayer:
    """Insert a presence record directly, last seen `age` ago."""
    record = ActivePlayer(
        user_id=user_id,
        venue_id=venue_id,
        latitude=lat,
        longitude=lng,
        last_seen_at=utcnow() - age,
    )
    session.add(record)
    await session.commit()
    return record


@pytest_asyncio.fixture
async def players(db_session):
    """Two players: the challenger and the opponent."""
    challenger = await make_user(db_session, "Alice King", gender="female")
    opponent = await make_user(db_session, "Bob Court")
    return challenger, opponent


@pytest_asyncio.fixture
async def venue(db_session):
    return await make_venue(db_session, "Alex Court", district="Mitte")


async def player_stats(session, user_id: int, sport: str = "basketball") -> dict:
    """A user's stats row as a dict, zeros when the user has none yet."""
    result = await session.execute(
        select(PlayerStats)
        .where(PlayerStats.user_id == user_id, PlayerStats.sport == sport)
        .execution_options(populate_existing=True)
    )
    stats = result.scalar_one_or_none()
    fields = ("total_xp", "total_rp", "available_rp", "matches_played", "matches_won", "matches_lost")
    return {f: getattr(stats, f) if stats else 0 for f in fields}


async def presence_of(session, user_id: int):
    """The user's presence record, if any."""
    result = await session.execute(
        select(ActivePlayer)
        .where(ActivePlayer.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
