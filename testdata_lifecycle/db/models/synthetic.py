from __future__ import annotations

from typing import Optional

from sqlalchemy import BigInteger, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from testdata_lifecycle.db.base import Base, JSONType, OwnerMixin, TimestampMixin, UUIDPkMixin


class SyntheticDataTemplate(UUIDPkMixin, OwnerMixin, TimestampMixin, Base):
    """Schema describing how to generate field values for fabricated records."""
    __tablename__ = "synthetic_data_templates"
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_synthetic_data_templates_owner_name"),
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # field name -> generator spec, in field order
    schema_descriptor: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    output_format: Mapped[str] = mapped_column(Text, nullable=False, default="json")
    seed: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
