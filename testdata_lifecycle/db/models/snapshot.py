from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, LargeBinary, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from testdata_lifecycle.db.base import Base, UTCDateTime, UUIDPkMixin, utc_now


class TestDataSnapshot(UUIDPkMixin, Base):
    """Immutable, checksummed capture of a repository's records."""
    __test__ = False  # not a pytest test class
    __tablename__ = "test_data_snapshots"

    repository_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("test_data_repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    label: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)
    payload_ref: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum: Mapped[str] = mapped_column(Text, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Set when the owning repository is soft-deleted
    archived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)


class SnapshotPayload(Base):
    """Content-addressed payload blob used by the database payload backend."""
    __tablename__ = "test_data_snapshot_payloads"

    checksum: Mapped[str] = mapped_column(Text, primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utc_now, nullable=False)


Index("ix_test_data_snapshots_repository_captured", TestDataSnapshot.repository_id, TestDataSnapshot.captured_at)
