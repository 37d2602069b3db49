from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import Boolean, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from testdata_lifecycle.db.base import Base, JSONType, TimestampMixin, UUIDPkMixin


class DataCleanupRule(UUIDPkMixin, TimestampMixin, Base):
    """Retention/deletion policy. Evaluation never writes to this table."""
    __tablename__ = "data_cleanup_rules"

    # NULL owner means a system rule
    owner_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    scope_type: Mapped[str] = mapped_column(Text, nullable=False)  # repository/global
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    predicate: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    schedule: Mapped[str] = mapped_column(Text, nullable=False, default="on-demand")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
