"""Async engine and session management."""

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fasthook.config import Settings, get_settings

SessionFactory = Callable[[], AsyncSession]

# SQLite waits this long for a write lock held by a concurrent fan-out session
SQLITE_BUSY_TIMEOUT = 30

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """Create an engine for the configured database."""
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )

    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_pool_max_overflow,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """Get the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the process-wide session factory.

    Also used as a FastAPI dependency by endpoints that open their own
    transactions (fan-out), so tests can override it.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def async_session() -> AsyncSession:
    """Open a new session from the process-wide factory."""
    return get_async_session_factory()()


@asynccontextmanager
async def session_scope(
    session_factory: SessionFactory | None = None,
) -> AsyncIterator[AsyncSession]:
    """Run a unit of work in its own transaction.

    Commits on success and rolls back if the block raises.
    """
    factory = session_factory or get_async_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency providing a request-scoped transactional session."""
    async with session_scope() as session:
        yield session


async def close_engine() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
