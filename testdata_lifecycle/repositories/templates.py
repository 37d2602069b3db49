from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy import select

from testdata_lifecycle.db.models.synthetic import SyntheticDataTemplate
from .base import BaseRepository


class TemplateRepository(BaseRepository):
    """Repository for synthetic data templates."""

    async def get_template(self, template_id: UUID, *, owner_id: Optional[str] = None) -> Optional[SyntheticDataTemplate]:
        stmt = select(SyntheticDataTemplate).where(SyntheticDataTemplate.id == template_id)
        if owner_id is not None:
            stmt = stmt.where(SyntheticDataTemplate.owner_id == owner_id)
        return await self.scalar_one_or_none(stmt)

    async def get_by_name(self, owner_id: str, name: str) -> Optional[SyntheticDataTemplate]:
        stmt = select(SyntheticDataTemplate).where(
            SyntheticDataTemplate.owner_id == owner_id,
            SyntheticDataTemplate.name == name,
        )
        return await self.scalar_one_or_none(stmt)

    async def list_templates(self, *, owner_id: str, limit: int = 100, offset: int = 0) -> List[SyntheticDataTemplate]:
        stmt = (
            select(SyntheticDataTemplate)
            .where(SyntheticDataTemplate.owner_id == owner_id)
            .order_by(SyntheticDataTemplate.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        res = await self.scalars(stmt)
        return list(res)
