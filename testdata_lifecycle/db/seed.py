"""
Database seeding utilities for a demo owner.

Seeds (idempotent, skipped when already present):
- Repository "orders-db" for owner "demo-user"
- Template "orders" (Faker-backed customer/order fields)
- 25 generated records in "orders-db" and a baseline snapshot "v1"
- Cleanup rule deleting snapshots of "orders-db" older than 30 days (nightly)

Usage:
  python -m testdata_lifecycle.db.run_migrations upgrade head
  python -m testdata_lifecycle.db.seed
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.logging import configure_logging, log_context
from testdata_lifecycle.core.settings import get_app_settings
from testdata_lifecycle.db.models import DataCleanupRule, SyntheticDataTemplate, TestDataRepository
from testdata_lifecycle.db.session import dispose_engine, get_async_session
from testdata_lifecycle.repositories.cleanup_rules import CleanupRuleRepository
from testdata_lifecycle.repositories.templates import TemplateRepository
from testdata_lifecycle.repositories.test_data import TestDataRepositoryRepository
from testdata_lifecycle.services.cleanup_rules import CleanupRuleService
from testdata_lifecycle.services.repository_store import RepositoryStore
from testdata_lifecycle.services.snapshot_engine import SnapshotEngine
from testdata_lifecycle.services.synthetic_data import SyntheticDataGenerator, TemplateService

logger = logging.getLogger(__name__)

DEMO_OWNER = "demo-user"
DEMO_REPOSITORY = "orders-db"
DEMO_TEMPLATE = "orders"
DEMO_RULE = "expire-old-order-snapshots"
DEMO_RECORDS = 25
DEMO_SEED = 20240101

ORDER_SCHEMA = {
    "order_id": {"generator": "sequence", "start": 1000},
    "first_name": {"generator": "faker", "provider": "first_name"},
    "last_name": {"generator": "faker", "provider": "last_name"},
    "email": {"generator": "template", "pattern": "{first_name}.{last_name}@example.com"},
    "amount": {"generator": "float", "min": 5, "max": 500, "precision": 2},
    "status": {"generator": "choice", "choices": ["new", "paid", "shipped"], "weights": [2, 5, 3]},
    "ordered_at": {"generator": "datetime", "start": "2024-01-01T00:00:00+00:00", "end": "2024-12-31T23:59:59+00:00"},
    "coupon": {"generator": "string", "length": 8, "prefix": "CP-", "null_probability": 0.7},
}


# PUBLIC_INTERFACE
async def seed_all() -> None:
    """
    Seed the database with the demo owner's data.

    This function:
      - Creates or retrieves the demo repository and template
      - Fills the repository and captures a baseline snapshot on first run
      - Creates or retrieves the 30-day snapshot retention rule
    """
    async for session in get_async_session():
        with log_context(correlation_id="seed", owner_id=DEMO_OWNER):
            repo = await _ensure_repository(session)
            template = await _ensure_template(session)
            await _seed_records(session, repo, template)
            await _ensure_rule(session, repo)


async def _ensure_repository(session: AsyncSession) -> TestDataRepository:
    existing = await TestDataRepositoryRepository(session).get_by_name(DEMO_OWNER, DEMO_REPOSITORY)
    if existing is not None:
        return existing
    return await RepositoryStore(session).create_repository(
        DEMO_OWNER,
        DEMO_REPOSITORY,
        description="Demo order data",
        source_descriptor={"kind": "postgres", "database": "orders", "schema": "public"},
    )


async def _ensure_template(session: AsyncSession) -> SyntheticDataTemplate:
    existing = await TemplateRepository(session).get_by_name(DEMO_OWNER, DEMO_TEMPLATE)
    if existing is not None:
        return existing
    return await TemplateService(session).create_template(
        DEMO_OWNER,
        {
            "name": DEMO_TEMPLATE,
            "description": "Customer orders",
            "schema_descriptor": ORDER_SCHEMA,
            "output_format": "json",
            "seed": DEMO_SEED,
        },
    )


async def _seed_records(session: AsyncSession, repo: TestDataRepository, template: SyntheticDataTemplate) -> None:
    """Fill an empty repository from the template and capture the baseline snapshot."""
    store = RepositoryStore(session)
    if await store.count_records(repo.id, DEMO_OWNER) > 0:
        return
    report = await SyntheticDataGenerator(session).generate(
        template.id, repo.id, DEMO_RECORDS, requester=DEMO_OWNER
    )
    logger.info("Seeded %d records into %s", report.written, DEMO_REPOSITORY)
    engine = SnapshotEngine(session, settings=get_app_settings())
    if not await engine.list_snapshots(repo.id, DEMO_OWNER):
        await engine.capture_snapshot(repo.id, "v1", DEMO_OWNER, description="Baseline demo data")


async def _ensure_rule(session: AsyncSession, repo: TestDataRepository) -> DataCleanupRule:
    for rule in await CleanupRuleRepository(session).list_rules(owner_id=DEMO_OWNER):
        if rule.name == DEMO_RULE:
            return rule
    return await CleanupRuleService(session).create_rule(
        DEMO_OWNER,
        {
            "name": DEMO_RULE,
            "scope_type": "repository",
            "scope_id": repo.id,
            "predicate": {"max_age_days": 30},
            "action": "delete-snapshot",
            "schedule": "0 3 * * *",
        },
    )


async def _main() -> None:
    try:
        await seed_all()
    finally:
        await dispose_engine()


if __name__ == "__main__":
    configure_logging(get_app_settings().LOG_LEVEL)
    asyncio.run(_main())
