from __future__ import annotations

from datetime import timedelta

import pytest

from testdata_lifecycle.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.schemas.repository import RepositoryStatus

from conftest import ALICE, BOB


class TestRepositoryStatus:
    def test_forward_transitions_allowed(self):
        assert RepositoryStatus.ACTIVE.can_transition_to(RepositoryStatus.ARCHIVED)
        assert RepositoryStatus.ACTIVE.can_transition_to(RepositoryStatus.DELETED)
        assert RepositoryStatus.ARCHIVED.can_transition_to(RepositoryStatus.DELETED)
        assert RepositoryStatus.DELETED.can_transition_to(RepositoryStatus.DELETED)

    def test_backward_transitions_rejected(self):
        assert not RepositoryStatus.DELETED.can_transition_to(RepositoryStatus.ACTIVE)
        assert not RepositoryStatus.DELETED.can_transition_to(RepositoryStatus.ARCHIVED)
        assert not RepositoryStatus.ARCHIVED.can_transition_to(RepositoryStatus.ACTIVE)


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_repository_defaults(self, store):
        repo = await store.create_repository(ALICE, "  orders-db  ", source_descriptor={"kind": "postgres"})
        assert repo.name == "orders-db"
        assert repo.owner_id == ALICE
        assert repo.status == "active"
        assert repo.source_descriptor == {"kind": "postgres"}
        assert repo.created_at.tzinfo is not None

        fetched = await store.get_repository(repo.id, ALICE)
        assert fetched.id == repo.id

    @pytest.mark.asyncio
    async def test_duplicate_name_for_same_owner_conflicts(self, store):
        await store.create_repository(ALICE, "orders-db")
        with pytest.raises(ConflictError):
            await store.create_repository(ALICE, "orders-db")

    @pytest.mark.asyncio
    async def test_same_name_for_other_owner_is_allowed(self, store):
        a = await store.create_repository(ALICE, "orders-db")
        b = await store.create_repository(BOB, "orders-db")
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_name_stays_reserved_after_soft_delete(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        await store.delete_repository(repo.id, ALICE)
        with pytest.raises(ConflictError):
            await store.create_repository(ALICE, "orders-db")

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create_repository(ALICE, "   ")
        assert exc_info.value.issues

    @pytest.mark.asyncio
    async def test_other_owner_cannot_see_repository(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        with pytest.raises(NotFoundError):
            await store.get_repository(repo.id, BOB)

    @pytest.mark.asyncio
    async def test_missing_repository_not_found(self, store):
        from uuid import uuid4

        with pytest.raises(NotFoundError):
            await store.get_repository(uuid4(), ALICE)


class TestListRepositories:
    @pytest.mark.asyncio
    async def test_newest_first_and_owner_scoped(self, session, store):
        now = utc_now()
        older = await store.create_repository(ALICE, "older")
        newer = await store.create_repository(ALICE, "newer")
        await store.create_repository(BOB, "bobs")
        older.created_at = now - timedelta(days=2)
        newer.created_at = now - timedelta(days=1)
        await session.commit()

        listed = await store.list_repositories(ALICE)
        assert [r.name for r in listed] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_filter_by_status_and_name(self, store):
        keep = await store.create_repository(ALICE, "orders-db")
        gone = await store.create_repository(ALICE, "orders-archive")
        await store.update_status(gone.id, "archived", ALICE)

        active = await store.list_repositories(ALICE, {"status": "active"})
        assert [r.id for r in active] == [keep.id]

        by_name = await store.list_repositories(ALICE, {"name_contains": "archive"})
        assert [r.name for r in by_name] == ["orders-archive"]

    @pytest.mark.asyncio
    async def test_bad_filter_is_a_validation_error(self, store):
        with pytest.raises(ValidationError):
            await store.list_repositories(ALICE, {"status": "gone"})


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_active_to_archived_to_deleted(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        archived = await store.update_status(repo.id, RepositoryStatus.ARCHIVED, ALICE)
        assert archived.status == "archived"
        deleted = await store.update_status(repo.id, "deleted", ALICE)
        assert deleted.status == "deleted"

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        before = repo.updated_at
        again = await store.update_status(repo.id, "active", ALICE)
        assert again.status == "active"
        assert again.updated_at == before

    @pytest.mark.asyncio
    async def test_deleted_cannot_go_back(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        repo_id = repo.id
        await store.delete_repository(repo_id, ALICE)

        for target in ("active", "archived"):
            with pytest.raises(InvalidTransitionError):
                await store.update_status(repo_id, target, ALICE)

        fetched = await store.get_repository(repo_id, ALICE)
        assert fetched.status == "deleted"

    @pytest.mark.asyncio
    async def test_archived_cannot_be_reactivated(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        repo_id = repo.id
        await store.update_status(repo_id, "archived", ALICE)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.update_status(repo_id, "active", ALICE)
        assert exc_info.value.current == "archived"
        assert exc_info.value.requested == "active"

    @pytest.mark.asyncio
    async def test_unknown_status(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        with pytest.raises(ValidationError):
            await store.update_status(repo.id, "frozen", ALICE)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_change_status(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        repo_id = repo.id
        with pytest.raises(NotFoundError):
            await store.update_status(repo_id, "archived", BOB)
        assert (await store.get_repository(repo_id, ALICE)).status == "active"


class TestDeleteRepository:
    @pytest.mark.asyncio
    async def test_soft_delete_archives_snapshots_and_keeps_payloads(self, store, snapshots, make_repository):
        repo = await make_repository(records=[{"id": 1}, {"id": 2}])
        snap = await snapshots.capture_snapshot(repo.id, "v1", ALICE)

        deleted = await store.delete_repository(repo.id, ALICE)
        assert deleted.status == "deleted"

        listed = await snapshots.list_snapshots(repo.id, ALICE)
        assert len(listed) == 1
        assert listed[0].archived_at is not None
        assert await snapshots.read_snapshot_records(snap.id, ALICE) == [{"id": 1}, {"id": 2}]

    @pytest.mark.asyncio
    async def test_delete_twice_is_noop(self, store):
        repo = await store.create_repository(ALICE, "orders-db")
        first = await store.delete_repository(repo.id, ALICE)
        stamp = first.updated_at
        second = await store.delete_repository(repo.id, ALICE)
        assert second.status == "deleted"
        assert second.updated_at == stamp


class TestRecords:
    @pytest.mark.asyncio
    async def test_records_keep_insertion_order(self, store, make_repository):
        repo = await make_repository(records=[{"n": 1}, {"n": 2}])
        written = await store.add_records(repo.id, [{"n": 3}], ALICE)
        assert written == 1
        assert await store.list_records(repo.id, ALICE) == [{"n": 1}, {"n": 2}, {"n": 3}]
        assert await store.count_records(repo.id, ALICE) == 3

    @pytest.mark.asyncio
    async def test_clear_records(self, store, make_repository):
        repo = await make_repository(records=[{"n": 1}, {"n": 2}])
        assert await store.clear_records(repo.id, ALICE) == 2
        assert await store.list_records(repo.id, ALICE) == []

    @pytest.mark.asyncio
    async def test_writes_refused_unless_active(self, store, make_repository):
        repo = await make_repository(records=[{"n": 1}])
        repo_id = repo.id
        await store.update_status(repo_id, "archived", ALICE)
        with pytest.raises(InvalidTransitionError):
            await store.add_records(repo_id, [{"n": 2}], ALICE)
        assert await store.list_records(repo_id, ALICE) == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_non_object_records_rejected(self, store, make_repository):
        repo = await make_repository()
        with pytest.raises(ValidationError) as exc_info:
            await store.add_records(repo.id, [{"ok": True}, ["not", "an", "object"]], ALICE)
        assert exc_info.value.issues == ["record 1 is not an object"]

    @pytest.mark.asyncio
    async def test_records_are_owner_scoped(self, store, make_repository):
        repo = await make_repository(records=[{"n": 1}])
        with pytest.raises(NotFoundError):
            await store.list_records(repo.id, BOB)
        # system context sees everything
        assert await store.list_records(repo.id, None) == [{"n": 1}]
