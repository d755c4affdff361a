"""Test configuration and fixtures."""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

# Add paths
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Point the app at a throwaway SQLite file BEFORE app.config is imported,
# unless CI already provides a PostgreSQL DATABASE_URL.
if "DATABASE_URL" not in os.environ:
    _db_dir = tempfile.mkdtemp(prefix="classmate-test-")
    os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'classmate.db')}"

from app.database import Base, SessionLocal, engine
from app.services.lifecycle import LifecyclePolicy
from app.services.relay import SignalingRelay

T0 = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database tables before tests."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        # Reverse dependency order: messages and members before sessions
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    """Database session fixture."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return LifecyclePolicy(wait_timeout=timedelta(seconds=180), min_viable=2)


@pytest.fixture
def mock_redis():
    client = MagicMock()
    client.publish.return_value = 1
    client.ping.return_value = True
    return client


@pytest.fixture
def relay(mock_redis):
    return SignalingRelay(lambda: mock_redis, prefix="session")
