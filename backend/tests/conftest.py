"""
Pytest configuration and shared fixtures for backend tests.
"""
import sys
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from database import Base
import models  # noqa: F401 registers tables
from config import load_settings
from document_store import DocumentStore
from http_fetcher import HttpFetcher
from rate_limiter import RateLimiter
from repositories import (
    CategoryRepository,
    JobHistoryRepository,
    ProviderRepository,
    ProviderTitleRepository,
    TitleRepository,
    TitleStreamRepository,
)


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the in-memory engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def provider_repo(store):
    return ProviderRepository(store)


@pytest.fixture
def provider_title_repo(store):
    return ProviderTitleRepository(store)


@pytest.fixture
def title_repo(store):
    return TitleRepository(store)


@pytest.fixture
def stream_repo(store):
    return TitleStreamRepository(store)


@pytest.fixture
def category_repo(store):
    return CategoryRepository(store)


@pytest.fixture
def history_repo(store):
    return JobHistoryRepository(store)


@pytest.fixture
def rate_limiter():
    limiter = RateLimiter()
    # Tests should not wait on the limiter unless they configure it
    limiter.configure("tmdb", 1000, 1)
    return limiter


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
async def fetcher(cache_dir, rate_limiter):
    """HttpFetcher with a fast retry schedule; pair with respx to mock upstreams."""
    client = httpx.AsyncClient()
    fetcher = HttpFetcher(
        str(cache_dir),
        rate_limiter,
        timeout=2.0,
        attempts=3,
        backoff_multiplier=0,
        backoff_max=0,
        client=client,
    )
    yield fetcher
    await fetcher.close()


@pytest.fixture
def engine_settings(tmp_path):
    """Settings pointing at temporary directories."""
    return load_settings(
        cache_dir=str(tmp_path / "cache"),
        data_dir=str(tmp_path / "data"),
        tmdb_token="test-token",
        tmdb_base_url="https://tmdb.test/3",
        shutdown_grace=2,
    )


@pytest.fixture
async def engine_context(engine_settings, session_factory):
    """Fully wired engine over the in-memory store (scheduler not started)."""
    from engine_context import build_context

    context = build_context(engine_settings, session_factory=session_factory, client=httpx.AsyncClient())
    context.rate_limiter.configure("tmdb", 1000, 1)
    yield context
    await context.engine.stop()
    await context.close()


@pytest.fixture(scope="function")
async def async_client(engine_context):
    """
    Create an async test client for the FastAPI app.
    The lifespan is not run; the wired test context is put on app.state.
    """
    from httpx import AsyncClient, ASGITransport
    from main import create_app

    app = create_app()
    app.state.context = engine_context
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
