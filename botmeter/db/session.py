"""
Database Session Management - Async SQLAlchemy engines and sessions.

Ledger writes go to the primary; health checks and other reads may go to a
replica when DATABASE_READ_URL is set. Engines are created lazily on first
use so importing the API never opens a connection.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from botmeter.config import settings
from botmeter.observability.tracing import instrument_sqlalchemy


class _Database:
    """One engine and its session factory, created on first use."""

    def __init__(self, role: str) -> None:
        self.role = role
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @property
    def url(self) -> str:
        return settings.database_url if self.role == "write" else settings.read_database_url

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=settings.log_level == "DEBUG",
            )
            instrument_sqlalchemy(self._engine)
        return self._engine

    @property
    def sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._sessions

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None


_primary = _Database("write")
_replica = _Database("read")


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a primary-database session.

    Services commit explicitly; anything left uncommitted is rolled back
    when the session closes.
    """
    async with _primary.sessions() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for a read-only session (replica when configured)."""
    async with _replica.sessions() as session:
        yield session


async def close_engines() -> None:
    """Dispose both engines on shutdown."""
    await _primary.dispose()
    await _replica.dispose()
