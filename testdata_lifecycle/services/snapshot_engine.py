from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import IntegrityError, InvalidTransitionError, NotFoundError
from testdata_lifecycle.core.settings import AppSettings, get_app_settings
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.models.snapshot import TestDataSnapshot
from testdata_lifecycle.db.session import lock_payload, locked_repository
from testdata_lifecycle.repositories.snapshots import SnapshotRepository
from testdata_lifecycle.repositories.test_data import RepositoryRecordRepository, TestDataRepositoryRepository
from testdata_lifecycle.schemas.repository import RepositoryStatus
from testdata_lifecycle.schemas.snapshot import RestoreReport
from testdata_lifecycle.services.base import BaseService
from testdata_lifecycle.services.payload_store import (
    PayloadStore,
    build_payload_store,
    checksum_from_ref,
    compute_checksum,
    payload_ref_for,
)

logger = logging.getLogger(__name__)

PAYLOAD_FORMAT_VERSION = 1


# PUBLIC_INTERFACE
def encode_records(records: List[Dict[str, Any]]) -> bytes:
    """Canonical payload bytes: compact JSON with sorted keys, so equal content hashes equally."""
    doc = {"format": PAYLOAD_FORMAT_VERSION, "records": records}
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# PUBLIC_INTERFACE
def decode_records(payload: bytes) -> List[Dict[str, Any]]:
    doc = json.loads(payload.decode("utf-8"))
    if not isinstance(doc, dict) or doc.get("format") != PAYLOAD_FORMAT_VERSION:
        raise ValueError("Unsupported snapshot payload format")
    return list(doc["records"])


class SnapshotEngine(BaseService):
    """
    Captures, stores and restores versioned copies of a repository's records.

    Capture, restore and delete hold the repository row lock for the duration
    of their transaction. Restore is destructive to the target's content and
    never takes an implicit pre-restore snapshot.
    """

    def __init__(
        self,
        session: AsyncSession,
        payload_store: Optional[PayloadStore] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        super().__init__(session)
        self.settings = settings or get_app_settings()
        self.payloads = payload_store or build_payload_store(session, self.settings)
        self.snapshots = SnapshotRepository(session)
        self.repos = TestDataRepositoryRepository(session)
        self.records = RepositoryRecordRepository(session)

    # PUBLIC_INTERFACE
    async def capture_snapshot(
        self,
        repository_id: UUID,
        label: str,
        requester: Optional[str] = None,
        description: Optional[str] = None,
    ) -> TestDataSnapshot:
        """
        Capture the repository's current records as an immutable snapshot.

        Either the snapshot row and its payload both become visible, or neither does.

        Raises:
            NotFoundError: repository absent or not owned by requester
            InvalidTransitionError: repository is deleted
        """
        created_blob: Optional[str] = None
        try:
            async with locked_repository(self.session, repository_id) as repo:
                repo = self.check_repository_access(repo, repository_id, requester)
                if repo.status == RepositoryStatus.DELETED.value:
                    raise InvalidTransitionError(
                        repo.status, "snapshot", f"Cannot snapshot deleted repository {repo.id}"
                    )
                rows = await self.records.list_records(repo.id)
                payload = encode_records([r.data for r in rows])
                checksum = compute_checksum(payload)
                await lock_payload(self.session, checksum)
                if await self.payloads.put(checksum, payload):
                    created_blob = checksum
                snapshot = TestDataSnapshot(
                    repository_id=repo.id,
                    label=label,
                    description=description,
                    captured_at=utc_now(),
                    payload_ref=payload_ref_for(checksum),
                    size=len(payload),
                    checksum=checksum,
                    record_count=len(rows),
                )
                await self.snapshots.add(snapshot)
                await self.snapshots.flush()
        except BaseException:
            if created_blob is not None and not self.payloads.transactional:
                await self.finalize_payload_deletes([created_blob])
            raise
        logger.info(
            "Captured snapshot %s '%s' of repository %s (%d records, %d bytes)",
            snapshot.id, label, repository_id, snapshot.record_count, snapshot.size,
        )
        return snapshot

    # PUBLIC_INTERFACE
    async def restore_snapshot(
        self,
        snapshot_id: UUID,
        target_repository_id: UUID,
        requester: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RestoreReport:
        """
        Overwrite the target repository's records with the snapshot payload.

        The checksum is verified before anything is changed. Records are written
        in chunks of RESTORE_CHUNK_SIZE; when cancel_event is set between chunks
        the restore stops and the records written so far are kept.

        Raises:
            NotFoundError: snapshot or target absent (or not owned by requester)
            IntegrityError: payload missing or checksum mismatch
            InvalidTransitionError: target repository is not active
        """
        snapshot = await self.get_snapshot(snapshot_id, requester)
        chunk_size = self.settings.RESTORE_CHUNK_SIZE
        report = RestoreReport(snapshot_id=snapshot.id, target_repository_id=target_repository_id)
        async with locked_repository(self.session, target_repository_id) as target:
            target = self.check_repository_access(target, target_repository_id, requester)
            if target.status != RepositoryStatus.ACTIVE.value:
                raise InvalidTransitionError(
                    target.status, "restore", f"Cannot restore into repository {target.id} in status '{target.status}'"
                )
            records = decode_records(await self.read_verified_payload(snapshot))
            report.records_expected = len(records)
            if _is_cancelled(cancel_event):
                # Cancelled before anything was written: leave the target untouched
                report.cancelled = True
            else:
                report.records_removed = await self.records.delete_records(target.id)
                for start in range(0, len(records), chunk_size):
                    if start and _is_cancelled(cancel_event):
                        report.cancelled = True
                        break
                    chunk = records[start:start + chunk_size]
                    report.records_restored += await self.records.append_records(target.id, chunk, start=start)
                    await asyncio.sleep(0)
                target.updated_at = utc_now()
        if report.cancelled:
            logger.warning(
                "Restore of snapshot %s into %s cancelled after %d/%d records",
                snapshot_id, target_repository_id, report.records_restored, report.records_expected,
            )
        else:
            logger.info(
                "Restored snapshot %s into repository %s (%d records)",
                snapshot_id, target_repository_id, report.records_restored,
            )
        return report

    # PUBLIC_INTERFACE
    async def list_snapshots(self, repository_id: UUID, requester: Optional[str] = None) -> List[TestDataSnapshot]:
        """Snapshots of the repository, newest first."""
        repo = await self.repos.get_repository(repository_id, owner_id=requester)
        repo = self.check_repository_access(repo, repository_id, requester)
        return await self.snapshots.list_snapshots(repo.id)

    # PUBLIC_INTERFACE
    async def get_snapshot(self, snapshot_id: UUID, requester: Optional[str] = None) -> TestDataSnapshot:
        snapshot = await self.snapshots.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError("Snapshot", snapshot_id)
        if requester is not None:
            repo = await self.repos.get_repository(snapshot.repository_id, owner_id=requester)
            if repo is None:
                raise NotFoundError("Snapshot", snapshot_id)
        return snapshot

    # PUBLIC_INTERFACE
    async def read_snapshot_records(self, snapshot_id: UUID, requester: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the records captured in a snapshot, verifying the checksum."""
        snapshot = await self.get_snapshot(snapshot_id, requester)
        return decode_records(await self.read_verified_payload(snapshot))

    async def read_verified_payload(self, snapshot: TestDataSnapshot) -> bytes:
        """Load payload bytes and check them against the stored checksum."""
        payload = await self.payloads.get(checksum_from_ref(snapshot.payload_ref))
        if payload is None:
            raise IntegrityError(snapshot.id, snapshot.checksum, "missing")
        actual = compute_checksum(payload)
        if actual != snapshot.checksum:
            logger.error("Checksum mismatch for snapshot %s: expected %s got %s", snapshot.id, snapshot.checksum, actual)
            raise IntegrityError(snapshot.id, snapshot.checksum, actual)
        return payload

    # PUBLIC_INTERFACE
    async def delete_snapshot(self, snapshot_id: UUID, requester: Optional[str] = None) -> bool:
        """
        Physically remove the snapshot row and, when no other snapshot shares it, its payload.

        Idempotent: returns False when the snapshot does not exist (anymore).
        """
        snapshot = await self.snapshots.get_snapshot(snapshot_id)
        if snapshot is None:
            return False
        orphans: List[str] = []
        async with locked_repository(self.session, snapshot.repository_id) as repo:
            if requester is not None and (repo is None or repo.owner_id != requester):
                raise NotFoundError("Snapshot", snapshot_id)
            removed, orphans = await self.delete_snapshot_locked(snapshot)
        await self.finalize_payload_deletes(orphans)
        if removed:
            logger.info("Deleted snapshot %s of repository %s", snapshot_id, snapshot.repository_id)
        return removed

    async def delete_snapshot_locked(self, snapshot: TestDataSnapshot) -> tuple[bool, List[str]]:
        """
        Delete one snapshot inside the caller's locked transaction.

        Returns (removed, orphaned checksums still to delete after commit).
        """
        payload_ref = snapshot.payload_ref
        if await self.snapshots.delete_snapshot_row(snapshot.id) == 0:
            return False, []
        return True, await self._release_payload(payload_ref)

    async def purge_repository_snapshots(self, repository_id: UUID) -> tuple[int, List[str]]:
        """
        Delete every snapshot of a repository inside the caller's locked transaction.

        Returns (count, orphaned checksums still to delete after commit).
        """
        count = 0
        orphans: List[str] = []
        for snapshot in await self.snapshots.list_snapshots(repository_id):
            removed, released = await self.delete_snapshot_locked(snapshot)
            count += int(removed)
            orphans.extend(released)
        return count, orphans

    async def finalize_payload_deletes(self, checksums: List[str]) -> None:
        """
        Remove non-transactional blobs after the metadata delete has committed.

        Each blob is re-checked under the payload lock in its own transaction,
        since a capture may have started referencing it in the meantime. A blob
        that cannot be removed is logged and left in place.
        """
        for checksum in checksums:
            try:
                await lock_payload(self.session, checksum)
                if await self.snapshots.count_payload_refs(payload_ref_for(checksum)) == 0:
                    await self.payloads.delete(checksum)
                    logger.debug("Removed orphaned payload %s", checksum)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                logger.exception("Failed to remove orphaned payload %s; leaving it in place", checksum)

    async def _release_payload(self, payload_ref: str) -> List[str]:
        checksum = checksum_from_ref(payload_ref)
        await lock_payload(self.session, checksum)
        if await self.snapshots.count_payload_refs(payload_ref) > 0:
            return []
        if self.payloads.transactional:
            await self.payloads.delete(checksum)
            return []
        return [checksum]


def _is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()
