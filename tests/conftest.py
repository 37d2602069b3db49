"""
Shared fixtures: a hermetic in-memory SQLite database per test (through
aiosqlite), the schema created from the ORM metadata, and service factories.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from testdata_lifecycle.core.settings import AppSettings
from testdata_lifecycle.db.base import Base
import testdata_lifecycle.db.models  # noqa: F401
from testdata_lifecycle.services.cleanup_engine import CleanupRuleEngine
from testdata_lifecycle.services.cleanup_rules import CleanupRuleService
from testdata_lifecycle.services.repository_store import RepositoryStore
from testdata_lifecycle.services.snapshot_engine import SnapshotEngine
from testdata_lifecycle.services.synthetic_data import SyntheticDataGenerator, TemplateService

TEST_SQLITE_MEMORY_URL = "sqlite+aiosqlite:///:memory:"

ALICE = "alice"
BOB = "bob"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_SQLITE_MEMORY_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session


@pytest.fixture
def app_settings(tmp_path):
    """Small batch sizes so chunking and batching paths are exercised."""
    return AppSettings(
        SNAPSHOT_STORAGE_BACKEND="database",
        SNAPSHOT_STORAGE_DIR=tmp_path / "payloads",
        RESTORE_CHUNK_SIZE=2,
        GENERATION_BATCH_SIZE=10,
        MAX_GENERATION_COUNT=1000,
    )


@pytest.fixture
def store(session):
    return RepositoryStore(session)


@pytest.fixture
def snapshots(session, app_settings):
    return SnapshotEngine(session, settings=app_settings)


@pytest.fixture
def rules(session):
    return CleanupRuleService(session)


@pytest.fixture
def cleanup(session, snapshots, app_settings):
    return CleanupRuleEngine(session, snapshot_engine=snapshots, settings=app_settings)


@pytest.fixture
def templates(session):
    return TemplateService(session)


@pytest.fixture
def generator(session, app_settings):
    return SyntheticDataGenerator(session, settings=app_settings)


@pytest.fixture
def make_repository(store):
    """Factory creating a repository, optionally pre-filled with records."""

    async def _make(
        name: str = "orders-db",
        owner: str = ALICE,
        records: Optional[List[Dict[str, Any]]] = None,
        **kwargs: Any,
    ):
        repo = await store.create_repository(owner, name, **kwargs)
        if records:
            await store.add_records(repo.id, records, owner)
        return repo

    return _make
