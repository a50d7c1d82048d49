"""
Global test configuration and fixtures for the session store

Every test gets its own temporary SQLite database, a controllable clock
and settings that point at that database.
"""

import os
import tempfile
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from dbsession.core.config import SessionSettings
from dbsession.db.session import create_db_engine
from dbsession.main import create_app
from dbsession.session.codec import PayloadCodec
from dbsession.session.engine import SessionEngine
from dbsession.session.record_store import SessionRecordStore


class FakeClock:
    """Deterministic replacement for the store's clock"""

    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def db_url():
    """Create a temporary database file for each test function"""
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    yield f"sqlite:///{db_path}"

    os.close(db_fd)
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture(scope="function")
def db_engine(db_url):
    engine = create_db_engine(db_url)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def settings(db_url):
    """Settings pointing at the test database"""
    return SessionSettings(
        database_url=db_url,
        name="test-session",
        json_logs=False,
    )


@pytest.fixture(scope="function")
def store(db_engine, settings, clock):
    record_store = SessionRecordStore(db_engine, settings.table, clock=clock)
    record_store.ensure_table()
    return record_store


@pytest.fixture(scope="function")
def codec():
    return PayloadCodec()


@pytest.fixture(scope="function")
def make_engine(store, settings) -> Callable[..., SessionEngine]:
    """Factory for engines sharing the test store, one per simulated request"""
    def _make(**kwargs) -> SessionEngine:
        return SessionEngine(store, settings, **kwargs)
    return _make


# ============================================================================
# Application Client Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def app(settings, store):
    return create_app(settings=settings, store=store, configure_logging=False)


@pytest.fixture(scope="function")
def client(app):
    """Create FastAPI test client"""
    with TestClient(app) as test_client:
        yield test_client


def pytest_collection_modifyitems(config, items):
    """Add markers based on file location"""
    for item in items:
        path = str(item.fspath)
        if "integration" in path:
            item.add_marker(pytest.mark.integration)
        elif "unit" in path:
            item.add_marker(pytest.mark.unit)
