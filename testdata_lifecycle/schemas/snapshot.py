from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class RestoreReport(BaseModel):
    """Outcome of restoring a snapshot into a repository."""
    snapshot_id: UUID
    target_repository_id: UUID
    records_removed: int = Field(0, ge=0)
    records_restored: int = Field(0, ge=0)
    records_expected: int = Field(0, ge=0)
    cancelled: bool = Field(False, description="True when the caller cancelled between chunks")
