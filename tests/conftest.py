"""Pytest configuration and fixtures."""
import os
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Ensure the application uses a dedicated SQLite database during tests
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["UPSTREAM_API_TOKEN"] = "test-token"
# Background sync must not start inside the test app
os.environ["LEADERBOARD_SYNC_ENABLED"] = "false"

from wagerboard.config import get_settings
from wagerboard.database import Base
from wagerboard import models  # noqa: F401  (registers tables)


BASE_DIR = Path(__file__).resolve().parent.parent
TEST_DB_PATH = BASE_DIR / "test.db"
settings = get_settings()


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_database():
    """Remove the SQLite test database before and after the run."""
    if TEST_DB_PATH.exists():
        try:
            TEST_DB_PATH.unlink()
        except PermissionError:
            pass

    yield

    if TEST_DB_PATH.exists():
        try:
            TEST_DB_PATH.unlink()
        except PermissionError:
            # On Windows the file may still be held open; the next run removes it
            pass


@pytest.fixture
async def test_engine():
    """Engine with freshly created tables for each test."""
    engine = create_async_engine(settings.database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory for tests that need several independent sessions."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()
        await session.close()


def make_row(uid, name, today=0, this_week=0, this_month=0, all_time=0):
    """Upstream leaderboard row."""
    return {
        "uid": uid,
        "name": name,
        "wagered": {
            "today": today,
            "this_week": this_week,
            "this_month": this_month,
            "all_time": all_time,
        },
    }


@pytest.fixture
def upstream_payload():
    """Canonical timeframe-bucketed upstream payload with three users."""
    alice = make_row("u1", "alice", today=10, this_week=100, this_month=500, all_time=1000)
    bob = make_row("u2", "bob", today=30, this_week=100, this_month=200, all_time=1000)
    carol = make_row("u3", "carol", today=20, this_week=50, this_month=900, all_time=400)
    return {
        "success": True,
        "data": {
            "today": {"data": [bob, carol, alice]},
            "weekly": {"data": [alice, bob, carol]},
            "monthly": {"data": [carol, alice, bob]},
            "all_time": {"data": [alice, bob, carol]},
        },
    }


@pytest.fixture
def row_factory():
    """Factory for individual upstream rows."""
    return make_row
