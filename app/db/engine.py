# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine
# FastAPI is an async framework, so we use SQLAlchemy's async engine to avoid
# blocking the event loop during database operations:
# - All DB queries use `await` (e.g., `await session.execute(...)`)
# - `asyncpg` is the PostgreSQL driver
#
# DESIGN DECISION: Lazy engine creation.
# The engine is built on first use, not on import. Tests and
# persistence_enabled=False runs import this module without ever opening
# a connection pool (or needing a reachable database).
#
# COMMIT POLICY:
# The persistence sink uses the session factory directly (self-managed
# sessions) because its writes happen inside engine tasks, outside any
# request dependency lifecycle. Those writes MUST commit explicitly.
# =============================================================================

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """
    Lazily create and cache the async engine.

    - echo=settings.debug logs every SQL statement in development.
    - pool_size=5 / max_overflow=10 cover a handful of concurrent
      searches, each writing a burst of small rows.
    """
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Lazily create the session factory.

    expire_on_commit=False: attributes stay readable after commit, which
    async code needs because a lazy refresh outside the session fails.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it
    raises.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models() -> None:
    """Create tables that do not exist yet (development convenience)."""
    from app.db.models import Base

    async with get_async_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_factory = None
