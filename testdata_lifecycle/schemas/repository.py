from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .common import Pagination


class RepositoryStatus(str, Enum):
    """Repository lifecycle status. Transitions only move forward."""
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_transition_to(self, target: "RepositoryStatus") -> bool:
        """Monotonic ordering: same status or any later status."""
        return target.rank >= self.rank


_STATUS_ORDER = [RepositoryStatus.ACTIVE, RepositoryStatus.ARCHIVED, RepositoryStatus.DELETED]


class RepositoryCreate(BaseModel):
    """Create repository payload."""
    name: str = Field(..., min_length=1, max_length=255, description="Repository name, unique per owner")
    description: Optional[str] = Field(None)
    source_descriptor: Dict[str, Any] = Field(
        default_factory=dict, description="Connection descriptor of the data source"
    )

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class RepositoryFilter(Pagination):
    """Filters for listing repositories."""
    status: Optional[RepositoryStatus] = Field(None, description="Only repositories in this status")
    name_contains: Optional[str] = Field(None, description="Substring match on name")
