from __future__ import annotations

from pydantic import BaseModel, Field


class Pagination(BaseModel):
    """Pagination parameters."""
    limit: int = Field(100, ge=1, le=1000, description="Max number of records to return")
    offset: int = Field(0, ge=0, description="Number of records to skip")
