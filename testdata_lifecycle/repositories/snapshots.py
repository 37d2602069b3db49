from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.models.snapshot import SnapshotPayload, TestDataSnapshot
from .base import BaseRepository


class SnapshotRepository(BaseRepository):
    """Repository for snapshot metadata."""

    async def get_snapshot(self, snapshot_id: UUID) -> Optional[TestDataSnapshot]:
        stmt = select(TestDataSnapshot).where(TestDataSnapshot.id == snapshot_id)
        return await self.scalar_one_or_none(stmt)

    async def list_snapshots(self, repository_id: UUID) -> List[TestDataSnapshot]:
        stmt = (
            select(TestDataSnapshot)
            .where(TestDataSnapshot.repository_id == repository_id)
            .order_by(TestDataSnapshot.captured_at.desc())
        )
        res = await self.scalars(stmt)
        return list(res)

    async def list_oldest_first(
        self, *, owner_repository_ids: Optional[List[UUID]] = None
    ) -> List[TestDataSnapshot]:
        """Snapshots ordered by capture time ascending, optionally limited to some repositories."""
        stmt = select(TestDataSnapshot)
        if owner_repository_ids is not None:
            if not owner_repository_ids:
                return []
            stmt = stmt.where(TestDataSnapshot.repository_id.in_(owner_repository_ids))
        stmt = stmt.order_by(TestDataSnapshot.captured_at.asc())
        res = await self.scalars(stmt)
        return list(res)

    async def count_payload_refs(self, payload_ref: str) -> int:
        stmt = select(func.count(TestDataSnapshot.id)).where(TestDataSnapshot.payload_ref == payload_ref)
        res = await self.execute(stmt)
        return int(res.scalar_one())

    async def count_newer(self, repository_id: UUID, captured_at: datetime) -> int:
        """How many snapshots of the repository were captured after the given time."""
        stmt = select(func.count(TestDataSnapshot.id)).where(
            TestDataSnapshot.repository_id == repository_id,
            TestDataSnapshot.captured_at > captured_at,
        )
        res = await self.execute(stmt)
        return int(res.scalar_one())

    async def delete_snapshot_row(self, snapshot_id: UUID) -> int:
        stmt = delete(TestDataSnapshot).where(TestDataSnapshot.id == snapshot_id)
        res = await self.execute(stmt)
        return int(res.rowcount or 0)


class SnapshotPayloadRepository(BaseRepository):
    """Repository for content-addressed payload blobs (database backend)."""

    async def get_payload(self, checksum: str) -> Optional[SnapshotPayload]:
        stmt = select(SnapshotPayload).where(SnapshotPayload.checksum == checksum)
        return await self.scalar_one_or_none(stmt)

    async def delete_payload(self, checksum: str) -> int:
        stmt = delete(SnapshotPayload).where(SnapshotPayload.checksum == checksum)
        res = await self.execute(stmt)
        return int(res.rowcount or 0)

    async def insert_payload_if_absent(self, checksum: str, data: bytes) -> bool:
        """
        Insert a blob unless one with the same checksum exists.

        Concurrent inserts of identical content do not conflict. Returns True
        when this call created the row.
        """
        values = {"checksum": checksum, "data": data, "size": len(data), "created_at": utc_now()}
        if self.session.get_bind().dialect.name == "postgresql":
            stmt = pg_insert(SnapshotPayload).values(**values)
        else:
            stmt = sqlite_insert(SnapshotPayload).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["checksum"])
        res = await self.execute(stmt)
        return res.rowcount == 1
