from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import NotFoundError
from testdata_lifecycle.db.models.cleanup import DataCleanupRule
from testdata_lifecycle.repositories.cleanup_rules import CleanupRuleRepository
from testdata_lifecycle.repositories.test_data import TestDataRepositoryRepository
from testdata_lifecycle.schemas.cleanup import CleanupRuleCreate, CleanupRuleUpdate, ScopeType
from testdata_lifecycle.services.base import BaseService, parse_payload

logger = logging.getLogger(__name__)


class CleanupRuleService(BaseService):
    """
    Create and edit cleanup rules.

    Rules with owner_id None are system rules: readable by everyone, editable
    only from the system context (requester None).
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.rules = CleanupRuleRepository(session)
        self.repos = TestDataRepositoryRepository(session)

    # PUBLIC_INTERFACE
    async def create_rule(
        self, owner: Optional[str], payload: Union[CleanupRuleCreate, Dict[str, Any]]
    ) -> DataCleanupRule:
        """
        Create a rule. A repository scope must point at a repository of the owner.

        Raises:
            ValidationError: malformed predicate, scope or schedule
            NotFoundError: scoped repository absent or owned by someone else
        """
        data = parse_payload(CleanupRuleCreate, payload)
        if data.scope_type is ScopeType.REPOSITORY:
            repo = await self.repos.get_repository(data.scope_id, owner_id=owner)
            self.check_repository_access(repo, data.scope_id, owner)
        rule = DataCleanupRule(
            owner_id=owner,
            name=data.name,
            scope_type=data.scope_type.value,
            scope_id=data.scope_id,
            predicate=data.predicate.model_dump(mode="json", exclude_none=True),
            action=data.action.value,
            schedule=data.schedule,
            enabled=data.enabled,
        )
        await self.rules.add(rule)
        await self.rules.commit()
        logger.info("Created cleanup rule %s '%s' (%s, %s)", rule.id, rule.name, rule.action, rule.schedule)
        return rule

    # PUBLIC_INTERFACE
    async def get_rule(self, rule_id: UUID, requester: Optional[str] = None) -> DataCleanupRule:
        rule = await self.rules.get_rule(rule_id)
        if rule is None or (requester is not None and rule.owner_id not in (requester, None)):
            raise NotFoundError("CleanupRule", rule_id)
        return rule

    # PUBLIC_INTERFACE
    async def list_rules(
        self, owner: Optional[str], *, enabled: Optional[bool] = None, include_system: bool = True
    ) -> List[DataCleanupRule]:
        return await self.rules.list_rules(owner_id=owner, include_system=include_system, enabled=enabled)

    # PUBLIC_INTERFACE
    async def update_rule(
        self, rule_id: UUID, payload: Union[CleanupRuleUpdate, Dict[str, Any]], requester: Optional[str]
    ) -> DataCleanupRule:
        """Apply a partial update. Scope cannot change after creation."""
        data = parse_payload(CleanupRuleUpdate, payload)
        rule = await self._get_editable(rule_id, requester)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "predicate" in changes:
            rule.predicate = data.predicate.model_dump(mode="json", exclude_none=True)
        if "action" in changes:
            rule.action = data.action.value
        for field in ("name", "schedule", "enabled"):
            if field in changes:
                setattr(rule, field, changes[field])
        await self.rules.commit()
        logger.info("Updated cleanup rule %s (%s)", rule.id, ", ".join(sorted(changes)) or "no changes")
        return rule

    # PUBLIC_INTERFACE
    async def set_enabled(self, rule_id: UUID, enabled: bool, requester: Optional[str]) -> DataCleanupRule:
        return await self.update_rule(rule_id, {"enabled": enabled}, requester)

    # PUBLIC_INTERFACE
    async def delete_rule(self, rule_id: UUID, requester: Optional[str]) -> None:
        rule = await self._get_editable(rule_id, requester)
        await self.rules.delete(rule)
        await self.rules.commit()
        logger.info("Deleted cleanup rule %s", rule_id)

    async def _get_editable(self, rule_id: UUID, requester: Optional[str]) -> DataCleanupRule:
        rule = await self.rules.get_rule(rule_id)
        if rule is None or (requester is not None and rule.owner_id != requester):
            raise NotFoundError("CleanupRule", rule_id)
        return rule
