"""Shared test fixtures and configuration.

Using Testcontainers to spin up an ephemeral PostgreSQL database for tests.
- No hardcoded credentials in .env files or CI pipelines.
- No port conflicts locally.
- Identical behavior locally and in CI.
- Clean, isolated database for every test that asks for one.

Pure tests (gate, tags, parsers, HTTP clients) need neither Docker nor a
database: the database fixtures are opt-in.
"""

import os

# Settings require database credentials; tests never use these values
# against a real server (the container URL is injected below).
os.environ.setdefault("POSTGRES_USER", "shipyard")
os.environ.setdefault("POSTGRES_PASSWORD", "shipyard")

from collections.abc import AsyncGenerator, Iterator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import NullPool, create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from testcontainers.postgres import PostgresContainer  # noqa: E402

from shipyard.api.main import app  # noqa: E402
from shipyard.models import database  # noqa: E402
from shipyard.models.config import Settings  # noqa: E402
from shipyard.models.database import get_db  # noqa: E402
from shipyard.models.entities import Base  # noqa: E402
from shipyard.workers.celery_app import celery_app  # noqa: E402

# Tasks run inline: .delay() executes immediately, no broker needed
celery_app.conf.update(task_always_eager=True, task_eager_propagates=True)


def make_settings(**overrides) -> Settings:
    """Settings for tests: no GitHub reporting, a fixed image repository."""
    values = {
        "postgres_user": "shipyard",
        "postgres_password": "shipyard",
        "github_repository": "acme/app",
        "registry": "ghcr.io",
        "registry_namespace": "acme",
        "image_name": "app",
        "report_commit_status": False,
        "upload_sarif": False,
        "cancel_in_progress": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """make_settings, for tests that need several configurations."""
    return make_settings


# ──────────────────────────────────────────────
# PostgreSQL
# ──────────────────────────────────────────────


@pytest.fixture(scope="session")
def postgres_container():
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as postgres:
        yield postgres


@pytest_asyncio.fixture
async def engine_test(postgres_container):
    """Create an async SQLAlchemy engine connected to the test container."""
    # testcontainers returns a sync URL like postgresql+psycopg2://...
    db_url = postgres_container.get_connection_url().replace("psycopg2", "asyncpg")

    # NullPool: each operation gets a fresh connection, no pooling.
    engine = create_async_engine(
        db_url,
        echo=False,
        poolclass=NullPool,
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def test_session_factory(engine_test):
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(
        bind=engine_test,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def setup_database(engine_test) -> AsyncGenerator[None, None]:
    """Create all tables before the test, drop them after."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(setup_database, test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for tests."""
    async with test_session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(setup_database, test_session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the test database.

    Override get_db so the API endpoints use our test database.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with test_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ──────────────────────────────────────────────
# Worker database (sync, as used by Celery tasks)
# ──────────────────────────────────────────────


@pytest.fixture
def worker_db(postgres_container, monkeypatch) -> Iterator[sessionmaker[Session]]:
    """Point worker_session() at the test container, with fresh tables."""
    engine = create_engine(postgres_container.get_connection_url(), poolclass=NullPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    monkeypatch.setattr(database, "_sync_session_factory", factory)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()
