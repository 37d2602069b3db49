from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .repository import RepositoryStatus

ON_DEMAND = "on-demand"

_CRON_FIELD = re.compile(r"^(\*|\d+(-\d+)?)(/\d+)?(,(\*|\d+(-\d+)?)(/\d+)?)*$")


class ScopeType(str, Enum):
    REPOSITORY = "repository"
    GLOBAL = "global"


class CleanupAction(str, Enum):
    DELETE_SNAPSHOT = "delete-snapshot"
    ARCHIVE_REPOSITORY = "archive-repository"
    PURGE_REPOSITORY = "purge-repository"

    @property
    def targets_snapshots(self) -> bool:
        return self is CleanupAction.DELETE_SNAPSHOT


class ActionOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    PREDICATE_NOT_MATCHED = "predicate_not_matched"
    ALREADY_ACTIONED = "already_actioned"
    OUT_OF_SCOPE = "out_of_scope"


# PUBLIC_INTERFACE
def validate_schedule(value: str) -> str:
    """
    Accept 'on-demand' or a five-field cron expression (minute hour day month weekday).

    Only numeric fields with '*', ranges, steps and lists are accepted.
    """
    value = (value or "").strip()
    if value == ON_DEMAND:
        return value
    parts = value.split()
    if len(parts) != 5 or not all(_CRON_FIELD.match(p) for p in parts):
        raise ValueError(f"schedule must be '{ON_DEMAND}' or a five-field cron expression, got {value!r}")
    return " ".join(parts)


class CleanupPredicate(BaseModel):
    """
    Conditions a target must meet for the rule action to apply. All given
    conditions must hold; at least one condition is required.
    """
    max_age_days: Optional[float] = Field(None, gt=0, description="Older than this many days")
    max_count: Optional[int] = Field(None, ge=0, description="Keep only the newest N; the rest match")
    statuses: Optional[List[RepositoryStatus]] = Field(
        None, description="Only repositories in one of these statuses"
    )

    @model_validator(mode="after")
    def _require_condition(self) -> "CleanupPredicate":
        if self.max_age_days is None and self.max_count is None and not self.statuses:
            raise ValueError("predicate needs at least one of max_age_days, max_count, statuses")
        return self


class CleanupRuleCreate(BaseModel):
    """Create cleanup rule payload."""
    name: str = Field(..., min_length=1, max_length=255)
    scope_type: ScopeType = Field(...)
    scope_id: Optional[UUID] = Field(None, description="Repository id when scope_type is 'repository'")
    predicate: CleanupPredicate = Field(...)
    action: CleanupAction = Field(...)
    schedule: str = Field(ON_DEMAND)
    enabled: bool = Field(True)

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, v: str) -> str:
        return validate_schedule(v)

    @model_validator(mode="after")
    def _check_scope(self) -> "CleanupRuleCreate":
        if self.scope_type is ScopeType.REPOSITORY and self.scope_id is None:
            raise ValueError("scope_id is required for repository-scoped rules")
        if self.scope_type is ScopeType.GLOBAL and self.scope_id is not None:
            raise ValueError("scope_id must be empty for global rules")
        return self


class CleanupRuleUpdate(BaseModel):
    """Partial update of a cleanup rule. Scope is fixed after creation."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    predicate: Optional[CleanupPredicate] = Field(None)
    action: Optional[CleanupAction] = Field(None)
    schedule: Optional[str] = Field(None)
    enabled: Optional[bool] = Field(None)

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else validate_schedule(v)


class ActionResult(BaseModel):
    """Outcome of a rule action on one target."""
    target_type: str = Field(..., description="'snapshot' or 'repository'")
    target_id: UUID
    repository_id: UUID
    outcome: ActionOutcome
    reason: Optional[SkipReason] = Field(None, description="Why the target was skipped")
    error: Optional[str] = Field(None, description="Failure message when outcome is 'failed'")


class CleanupRunSummary(BaseModel):
    """Summary of evaluating several rules in one run."""
    started_at: datetime
    completed_at: datetime
    rules_evaluated: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    results: Dict[str, List[ActionResult]] = Field(default_factory=dict, description="Per rule id")
    rule_errors: Dict[str, str] = Field(default_factory=dict, description="Rules that could not be evaluated")
