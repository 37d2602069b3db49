from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings
from .models import TestDataRepository


_ENGINE: AsyncEngine | None = None
_SESSION_MAKER: async_sessionmaker[AsyncSession] | None = None


def _ensure_engine_initialized() -> None:
    """
    Lazily initialize the AsyncEngine and session maker.
    """
    global _ENGINE, _SESSION_MAKER
    if _ENGINE is None:
        settings = get_settings()
        _ENGINE = create_async_engine(
            settings.async_database_url,
            echo=settings.SQL_ECHO,
            pool_pre_ping=True,
        )
    if _SESSION_MAKER is None:
        _SESSION_MAKER = async_sessionmaker(
            bind=_ENGINE, expire_on_commit=False, autoflush=False, autocommit=False
        )


# PUBLIC_INTERFACE
def get_engine() -> AsyncEngine:
    """Return the global AsyncEngine instance."""
    _ensure_engine_initialized()
    assert _ENGINE is not None
    return _ENGINE


# PUBLIC_INTERFACE
def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Return the global session factory."""
    _ensure_engine_initialized()
    assert _SESSION_MAKER is not None
    return _SESSION_MAKER


# PUBLIC_INTERFACE
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an AsyncSession bound to the global engine.
    Ensures engine/session factory is initialized.
    """
    async with get_session_maker()() as session:
        yield session


# PUBLIC_INTERFACE
async def dispose_engine() -> None:
    """Dispose the global engine (end of a job run, or between tests)."""
    global _ENGINE, _SESSION_MAKER
    if _ENGINE is not None:
        await _ENGINE.dispose()
    _ENGINE = None
    _SESSION_MAKER = None


# PUBLIC_INTERFACE
async def lock_repository_row(session: AsyncSession, repository_id: UUID) -> TestDataRepository | None:
    """
    Load a repository row with an update lock held until the current transaction ends.

    Capture, restore, delete and status changes against one repository are
    linearized through this lock. Backends without row locks (SQLite) ignore
    the FOR UPDATE clause.
    """
    stmt = (
        select(TestDataRepository)
        .where(TestDataRepository.id == repository_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# PUBLIC_INTERFACE
@asynccontextmanager
async def locked_repository(
    session: AsyncSession, repository_id: UUID
) -> AsyncGenerator[TestDataRepository | None, None]:
    """
    Async context manager that locks the repository row and commits on success.

    Usage:
        async with locked_repository(session, repo_id) as repo:
            # repo is None when the row does not exist
            ...

    On error the transaction is rolled back and the exception propagates.
    """
    try:
        repo = await lock_repository_row(session, repository_id)
        yield repo
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


def payload_lock_key(checksum: str) -> int:
    """Advisory lock key of a payload: the leading 60 bits of its sha256 digest."""
    return int(checksum[:15], 16)


# PUBLIC_INTERFACE
async def lock_payload(session: AsyncSession, checksum: str) -> None:
    """
    Serialize use and release of one content-addressed payload until the transaction ends.

    Capture takes it before storing or reusing a blob; payload release takes it
    before counting references. On PostgreSQL this is a transaction-scoped
    advisory lock. SQLite has a single writer and needs none.
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": payload_lock_key(checksum)}
        )
