from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from testdata_lifecycle.db.base import (
    Base,
    JSONType,
    OwnerMixin,
    TimestampMixin,
    UTCDateTime,
    UUIDPkMixin,
    utc_now,
)


class TestDataRepository(UUIDPkMixin, OwnerMixin, TimestampMixin, Base):
    """Named, owned container describing a dataset used for testing."""
    __test__ = False  # not a pytest test class
    __tablename__ = "test_data_repositories"
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_test_data_repositories_owner_name"),
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_descriptor: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active", index=True)


class RepositoryRecord(UUIDPkMixin, Base):
    """One record of repository content, kept in insertion order by position."""
    __tablename__ = "test_data_records"
    __table_args__ = (
        UniqueConstraint("repository_id", "position", name="uq_test_data_records_repository_position"),
    )

    repository_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("test_data_repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


Index("ix_test_data_repositories_owner_created", TestDataRepository.owner_id, TestDataRepository.created_at)
