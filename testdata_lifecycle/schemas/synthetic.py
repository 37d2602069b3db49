from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class OutputFormat(str, Enum):
    JSON = "json"
    NDJSON = "ndjson"
    CSV = "csv"


class TemplateCreate(BaseModel):
    """Create synthetic data template payload."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None)
    schema_descriptor: Dict[str, Dict[str, Any]] = Field(
        ..., description="Field name -> generator spec, e.g. {'id': {'generator': 'sequence'}}"
    )
    output_format: OutputFormat = Field(OutputFormat.JSON)
    seed: Optional[int] = Field(None, description="Default seed for reproducible runs")


class GenerationReport(BaseModel):
    """Counts of a generation run."""
    template_id: UUID
    repository_id: UUID
    requested: int = Field(..., ge=0)
    written: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    cancelled: bool = Field(False)
    seed: Optional[int] = Field(None)
    errors: Dict[int, str] = Field(default_factory=dict, description="Record index -> first field error")
