"""Database connection management.

Two access paths share the same models:

- the FastAPI app uses an async engine (asyncpg) and the ``get_db``
  dependency, one session per HTTP request;
- Celery workers are synchronous, they use a sync engine (psycopg2)
  through ``worker_session``.

Engines and session factories are created lazily, never at import time,
so importing a module does not require database credentials.
"""

from collections.abc import AsyncGenerator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from shipyard.models.config import get_settings

# ── Lazy singletons ──────────────────────────────────────

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker[Session] | None = None


def init_db() -> None:
    """Create the async engine and session factory from current settings.

    Called once during the application lifespan startup, so missing
    credentials fail the app at startup with a clear Pydantic error.
    """
    global _engine, _async_session_factory  # noqa: PLW0603

    settings = get_settings()

    _engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )

    # expire_on_commit=False: objects stay usable after commit
    # without an extra SELECT.
    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_engine() -> AsyncEngine:
    """Return the current engine, raising if ``init_db`` was not called."""
    if _engine is None:
        raise RuntimeError("Database not initialised. Call init_db() first (see app lifespan).")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the current session factory, raising if ``init_db`` was not called."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialised. Call init_db() first (see app lifespan).")
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session.

    One session per HTTP request, committed if the endpoint succeeds,
    rolled back if it raises.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_sync_session_factory() -> sessionmaker[Session]:
    """Return a singleton sync session factory for Celery workers.

    Workers are long-lived processes: one engine per process avoids
    creating a connection pool on every task call.
    """
    global _sync_engine, _sync_session_factory  # noqa: PLW0603

    if _sync_session_factory is None:
        settings = get_settings()
        _sync_engine = create_engine(
            settings.database_url_sync,
            pool_pre_ping=True,
        )
        _sync_session_factory = sessionmaker(
            bind=_sync_engine,
            expire_on_commit=False,
        )

    return _sync_session_factory


@contextmanager
def worker_session() -> Iterator[Session]:
    """Unit of work for a Celery task: commit on success, rollback on error."""
    session = get_sync_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
