"""Shared fixtures for integration tests: database, engine and HTTP client."""

import aiosqlite
import pytest
import pytest_asyncio

from kestrel_fingerprint.db.migrations import apply_migrations
from kestrel_fingerprint.engine import FingerprintEngine
from kestrel_fingerprint.store.memory import InMemoryFingerprintStore
from kestrel_fingerprint.velocity.index import InMemoryVelocityIndex

_CHROME_HEADERS = [
    ("host", "shop.example.com"),
    ("connection", "keep-alive"),
    ("sec-ch-ua", '"Chromium";v="124", "Google Chrome";v="124"'),
    ("user-agent", "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                   "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"),
    ("accept", "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"),
    ("accept-encoding", "gzip, deflate, br"),
    ("accept-language", "en-US,en;q=0.9"),
    ("sec-fetch-site", "none"),
    ("sec-fetch-mode", "navigate"),
]


@pytest_asyncio.fixture
async def db():
    """Create an in-memory SQLite database with all migrations applied."""
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await apply_migrations(conn)
    yield conn
    await conn.close()


@pytest.fixture
def engine(secret):
    """Engine over the in-memory backends with default weights and rules."""
    return FingerprintEngine(
        store=InMemoryFingerprintStore(),
        velocity=InMemoryVelocityIndex(),
        secret=secret,
    )


@pytest.fixture
def settings():
    from kestrel_fingerprint.config import Settings

    return Settings()


@pytest.fixture
def compaction(engine):
    from kestrel_fingerprint.velocity.compaction import CompactionScheduler

    return CompactionScheduler(engine.velocity, interval_seconds=0)


@pytest.fixture
def app(engine, settings, compaction):
    """Create a FastAPI app with dependency overrides for testing."""
    from kestrel_fingerprint.app import create_app
    from kestrel_fingerprint.api.deps import get_compaction, get_engine, get_settings

    application = create_app(settings)

    async def override_engine():
        return engine

    async def override_settings():
        return settings

    async def override_compaction():
        return compaction

    application.dependency_overrides[get_engine] = override_engine
    application.dependency_overrides[get_settings] = override_settings
    application.dependency_overrides[get_compaction] = override_compaction

    return application


@pytest.fixture
def client(app):
    """Create a TestClient for the FastAPI app."""
    from fastapi.testclient import TestClient
    return TestClient(app)


@pytest.fixture
def chrome_headers():
    """Header list in the order a desktop Chrome sends them."""
    return list(_CHROME_HEADERS)
