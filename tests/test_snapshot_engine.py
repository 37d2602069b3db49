from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import timedelta
from uuid import uuid4

import pytest

from testdata_lifecycle.core.errors import IntegrityError, InvalidTransitionError, NotFoundError
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.session import locked_repository
from testdata_lifecycle.repositories.snapshots import SnapshotPayloadRepository
from testdata_lifecycle.services.payload_store import FileSystemPayloadStore
from testdata_lifecycle.services.snapshot_engine import SnapshotEngine, decode_records, encode_records

from conftest import ALICE, BOB

V1 = [{"order_id": 1, "status": "new"}, {"order_id": 2, "status": "paid"}, {"order_id": 3, "status": "paid"}]


class TestPayloadEncoding:
    def test_encoding_is_canonical(self):
        a = encode_records([{"b": 1, "a": 2}])
        b = encode_records([{"a": 2, "b": 1}])
        assert a == b
        assert decode_records(a) == [{"a": 2, "b": 1}]

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError):
            decode_records(b'{"format": 99, "records": []}')


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_stores_checksummed_payload(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        snap = await snapshots.capture_snapshot(repo.id, "v1", ALICE, description="baseline")

        payload = encode_records(V1)
        assert snap.label == "v1"
        assert snap.record_count == 3
        assert snap.size == len(payload)
        assert snap.checksum == hashlib.sha256(payload).hexdigest()
        assert snap.payload_ref == f"sha256:{snap.checksum}"
        assert snap.archived_at is None
        assert await snapshots.read_snapshot_records(snap.id, ALICE) == V1

    @pytest.mark.asyncio
    async def test_identical_content_shares_payload(self, session, snapshots, make_repository):
        repo = await make_repository(records=V1)
        first = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        second = await snapshots.capture_snapshot(repo.id, "v1-again", ALICE)
        assert first.payload_ref == second.payload_ref

        assert await snapshots.delete_snapshot(first.id, ALICE) is True
        # still referenced by the second snapshot
        assert await snapshots.read_snapshot_records(second.id, ALICE) == V1
        assert await SnapshotPayloadRepository(session).get_payload(second.checksum) is not None

    @pytest.mark.asyncio
    async def test_capture_empty_repository(self, snapshots, make_repository):
        repo = await make_repository()
        snap = await snapshots.capture_snapshot(repo.id, "empty", ALICE)
        assert snap.record_count == 0
        assert await snapshots.read_snapshot_records(snap.id) == []

    @pytest.mark.asyncio
    async def test_capture_of_archived_repository_allowed(self, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        await store.update_status(repo.id, "archived", ALICE)
        snap = await snapshots.capture_snapshot(repo.id, "frozen", ALICE)
        assert snap.record_count == 3

    @pytest.mark.asyncio
    async def test_capture_of_deleted_repository_refused(self, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        repo_id = repo.id
        await store.delete_repository(repo_id, ALICE)
        with pytest.raises(InvalidTransitionError):
            await snapshots.capture_snapshot(repo_id, "late", ALICE)
        assert await snapshots.list_snapshots(repo_id, ALICE) == []

    @pytest.mark.asyncio
    async def test_capture_other_owner_not_found(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        with pytest.raises(NotFoundError):
            await snapshots.capture_snapshot(repo.id, "v1", BOB)


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_returns_repository_to_captured_state(self, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)

        await store.clear_records(repo.id, ALICE)
        await store.add_records(repo.id, [{"order_id": 99, "status": "corrupted"}], ALICE)

        report = await snapshots.restore_snapshot(v1.id, repo.id, ALICE)
        assert report.records_removed == 1
        assert report.records_restored == 3
        assert report.records_expected == 3
        assert report.cancelled is False
        assert await store.list_records(repo.id, ALICE) == V1

    @pytest.mark.asyncio
    async def test_restore_into_another_repository(self, store, snapshots, make_repository):
        source = await make_repository(records=V1)
        target = await make_repository(name="orders-copy", records=[{"x": 1}])
        v1 = await snapshots.capture_snapshot(source.id, "v1", ALICE)

        await snapshots.restore_snapshot(v1.id, target.id, ALICE)
        assert await store.list_records(target.id, ALICE) == V1
        assert await store.list_records(source.id, ALICE) == V1

    @pytest.mark.asyncio
    async def test_tampered_payload_raises_and_leaves_target_untouched(
        self, session, store, snapshots, make_repository
    ):
        repo = await make_repository(records=V1)
        repo_id = repo.id
        v1 = await snapshots.capture_snapshot(repo_id, "v1", ALICE)
        snapshot_id, checksum = v1.id, v1.checksum
        await store.add_records(repo_id, [{"order_id": 4}], ALICE)

        payload = await SnapshotPayloadRepository(session).get_payload(checksum)
        payload.data = payload.data.replace(b"paid", b"void")
        await session.commit()

        with pytest.raises(IntegrityError) as exc_info:
            await snapshots.restore_snapshot(snapshot_id, repo_id, ALICE)
        assert exc_info.value.expected == checksum
        assert exc_info.value.actual != checksum
        assert await store.count_records(repo_id, ALICE) == 4

    @pytest.mark.asyncio
    async def test_missing_payload_is_an_integrity_error(self, session, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id = v1.id
        await SnapshotPayloadRepository(session).delete_payload(v1.checksum)
        await session.commit()

        with pytest.raises(IntegrityError) as exc_info:
            await snapshots.read_snapshot_records(snapshot_id, ALICE)
        assert exc_info.value.actual == "missing"

    @pytest.mark.asyncio
    async def test_restore_into_inactive_repository_refused(self, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id, repo_id = v1.id, repo.id
        await store.update_status(repo_id, "archived", ALICE)
        with pytest.raises(InvalidTransitionError):
            await snapshots.restore_snapshot(snapshot_id, repo_id, ALICE)

    @pytest.mark.asyncio
    async def test_restore_unknown_ids(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id, repo_id = v1.id, repo.id
        with pytest.raises(NotFoundError):
            await snapshots.restore_snapshot(uuid4(), repo_id, ALICE)
        with pytest.raises(NotFoundError):
            await snapshots.restore_snapshot(snapshot_id, uuid4(), ALICE)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_restore(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        bobs = await make_repository(name="bobs", owner=BOB)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id, bobs_id = v1.id, bobs.id
        with pytest.raises(NotFoundError):
            await snapshots.restore_snapshot(snapshot_id, bobs_id, BOB)

    @pytest.mark.asyncio
    async def test_restore_cancelled_up_front_leaves_target_untouched(self, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        await store.add_records(repo.id, [{"order_id": 4}], ALICE)
        cancel = asyncio.Event()
        cancel.set()

        report = await snapshots.restore_snapshot(v1.id, repo.id, ALICE, cancel_event=cancel)
        assert report.cancelled is True
        assert report.records_removed == 0
        assert report.records_restored == 0
        assert report.records_expected == 3
        assert await store.list_records(repo.id, ALICE) == V1 + [{"order_id": 4}]

    @pytest.mark.asyncio
    async def test_cancelled_restore_stops_between_chunks(self, monkeypatch, store, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        cancel = asyncio.Event()
        append_records = snapshots.records.append_records

        async def append_then_cancel(*args, **kwargs):
            written = await append_records(*args, **kwargs)
            cancel.set()
            return written

        monkeypatch.setattr(snapshots.records, "append_records", append_then_cancel)

        report = await snapshots.restore_snapshot(v1.id, repo.id, ALICE, cancel_event=cancel)
        assert report.cancelled is True
        assert report.records_removed == 3
        assert report.records_restored == 2
        assert await store.list_records(repo.id, ALICE) == V1[:2]


class TestListAndDelete:
    @pytest.mark.asyncio
    async def test_list_newest_first(self, session, snapshots, make_repository):
        repo = await make_repository(records=V1)
        old = await snapshots.capture_snapshot(repo.id, "old", ALICE)
        new = await snapshots.capture_snapshot(repo.id, "new", ALICE)
        old.captured_at = utc_now() - timedelta(days=3)
        await session.commit()

        listed = await snapshots.list_snapshots(repo.id, ALICE)
        assert [s.id for s in listed] == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_list_other_owner_not_found(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        with pytest.raises(NotFoundError):
            await snapshots.list_snapshots(repo.id, BOB)

    @pytest.mark.asyncio
    async def test_delete_snapshot_twice(self, session, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id, checksum = v1.id, v1.checksum

        assert await snapshots.delete_snapshot(snapshot_id, ALICE) is True
        assert await snapshots.delete_snapshot(snapshot_id, ALICE) is False
        assert await SnapshotPayloadRepository(session).get_payload(checksum) is None
        with pytest.raises(NotFoundError):
            await snapshots.get_snapshot(snapshot_id)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_delete(self, snapshots, make_repository):
        repo = await make_repository(records=V1)
        v1 = await snapshots.capture_snapshot(repo.id, "v1", ALICE)
        snapshot_id = v1.id
        with pytest.raises(NotFoundError):
            await snapshots.delete_snapshot(snapshot_id, BOB)
        assert (await snapshots.get_snapshot(snapshot_id, ALICE)).id == snapshot_id


class TestFileSystemBackend:
    @pytest.mark.asyncio
    async def test_capture_restore_delete_on_disk(self, tmp_path, session, store, app_settings, make_repository):
        payloads = FileSystemPayloadStore(tmp_path / "blobs")
        engine = SnapshotEngine(session, payload_store=payloads, settings=app_settings)
        repo = await make_repository(records=V1)

        v1 = await engine.capture_snapshot(repo.id, "v1", ALICE)
        path = payloads.path_for(v1.checksum)
        assert path.read_bytes() == encode_records(V1)

        await store.clear_records(repo.id, ALICE)
        await engine.restore_snapshot(v1.id, repo.id, ALICE)
        assert await store.list_records(repo.id, ALICE) == V1

        assert await engine.delete_snapshot(v1.id, ALICE) is True
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_tampered_file_detected(self, tmp_path, session, app_settings, make_repository):
        payloads = FileSystemPayloadStore(tmp_path / "blobs")
        engine = SnapshotEngine(session, payload_store=payloads, settings=app_settings)
        repo = await make_repository(records=V1)
        v1 = await engine.capture_snapshot(repo.id, "v1", ALICE)
        payloads.path_for(v1.checksum).write_bytes(b"{}")

        with pytest.raises(IntegrityError):
            await engine.read_snapshot_records(v1.id, ALICE)

    @pytest.mark.asyncio
    async def test_capture_after_release_keeps_shared_blob(self, tmp_path, session, app_settings, make_repository):
        payloads = FileSystemPayloadStore(tmp_path / "blobs")
        engine = SnapshotEngine(session, payload_store=payloads, settings=app_settings)
        first = await make_repository(name="empty-a")
        second = await make_repository(name="empty-b")
        first_id, second_id = first.id, second.id
        old = await engine.capture_snapshot(first_id, "old", ALICE)
        old_id, checksum = old.id, old.checksum

        # The metadata delete commits, then another capture of identical content
        # lands before the blob is physically removed
        async with locked_repository(session, first_id):
            removed, orphans = await engine.delete_snapshot_locked(await engine.get_snapshot(old_id))
        assert removed is True
        assert orphans == [checksum]

        fresh = await engine.capture_snapshot(second_id, "fresh", ALICE)
        fresh_id = fresh.id
        assert fresh.checksum == checksum
        await engine.finalize_payload_deletes(orphans)

        assert payloads.path_for(checksum).exists()
        assert await engine.read_snapshot_records(fresh_id, ALICE) == []

    @pytest.mark.asyncio
    async def test_released_blob_removed_when_unreferenced(self, tmp_path, session, app_settings, make_repository):
        payloads = FileSystemPayloadStore(tmp_path / "blobs")
        engine = SnapshotEngine(session, payload_store=payloads, settings=app_settings)
        repo = await make_repository(records=V1)
        repo_id = repo.id
        v1 = await engine.capture_snapshot(repo_id, "v1", ALICE)
        v1_id, checksum = v1.id, v1.checksum

        async with locked_repository(session, repo_id):
            _, orphans = await engine.delete_snapshot_locked(await engine.get_snapshot(v1_id))
        assert payloads.path_for(checksum).exists()

        await engine.finalize_payload_deletes(orphans)
        assert not payloads.path_for(checksum).exists()

    @pytest.mark.asyncio
    async def test_blob_removal_failure_is_logged(
        self, monkeypatch, caplog, tmp_path, session, app_settings, make_repository
    ):
        payloads = FileSystemPayloadStore(tmp_path / "blobs")
        engine = SnapshotEngine(session, payload_store=payloads, settings=app_settings)
        repo = await make_repository(records=V1)
        v1 = await engine.capture_snapshot(repo.id, "v1", ALICE)
        v1_id, checksum = v1.id, v1.checksum

        async def broken_delete(checksum):
            raise OSError("read-only file system")

        monkeypatch.setattr(payloads, "delete", broken_delete)
        with caplog.at_level(logging.ERROR, logger="testdata_lifecycle.services.snapshot_engine"):
            assert await engine.delete_snapshot(v1_id, ALICE) is True

        assert await engine.snapshots.get_snapshot(v1_id) is None
        assert payloads.path_for(checksum).exists()
        assert f"Failed to remove orphaned payload {checksum}" in caplog.text
