from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select

from testdata_lifecycle.db.models.cleanup import DataCleanupRule
from .base import BaseRepository


class CleanupRuleRepository(BaseRepository):
    """Repository for cleanup rules."""

    async def get_rule(self, rule_id: UUID) -> Optional[DataCleanupRule]:
        stmt = select(DataCleanupRule).where(DataCleanupRule.id == rule_id)
        return await self.scalar_one_or_none(stmt)

    async def list_rules(
        self,
        *,
        owner_id: Optional[str],
        include_system: bool = False,
        enabled: Optional[bool] = None,
        schedule: Optional[str] = None,
    ) -> List[DataCleanupRule]:
        stmt = select(DataCleanupRule)
        if owner_id is not None:
            if include_system:
                stmt = stmt.where(or_(DataCleanupRule.owner_id == owner_id, DataCleanupRule.owner_id.is_(None)))
            else:
                stmt = stmt.where(DataCleanupRule.owner_id == owner_id)
        if enabled is not None:
            stmt = stmt.where(DataCleanupRule.enabled.is_(enabled))
        if schedule is not None:
            stmt = stmt.where(DataCleanupRule.schedule == schedule)
        stmt = stmt.order_by(DataCleanupRule.created_at.asc())
        res = await self.scalars(stmt)
        return list(res)
