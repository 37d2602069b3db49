from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.models.repository import TestDataRepository
from testdata_lifecycle.db.session import locked_repository
from testdata_lifecycle.repositories.test_data import RepositoryRecordRepository, TestDataRepositoryRepository
from testdata_lifecycle.schemas.repository import RepositoryCreate, RepositoryFilter, RepositoryStatus
from testdata_lifecycle.services.base import BaseService, parse_payload

logger = logging.getLogger(__name__)


class RepositoryStore(BaseService):
    """
    Durable record of named test-data repositories and their record content.

    Ownership is checked here on every read and write; callers only supply
    the authenticated owner id.
    """

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session)
        self.repos = TestDataRepositoryRepository(session)
        self.records = RepositoryRecordRepository(session)

    # PUBLIC_INTERFACE
    async def create_repository(
        self,
        owner: str,
        name: str,
        description: Optional[str] = None,
        source_descriptor: Optional[Dict[str, Any]] = None,
    ) -> TestDataRepository:
        """
        Create an active repository for owner.

        Raises:
            ConflictError: the owner already has a repository with this name
            ValidationError: blank name or malformed descriptor
        """
        payload = parse_payload(
            RepositoryCreate,
            {"name": name, "description": description, "source_descriptor": source_descriptor or {}},
        )
        if await self.repos.get_by_name(owner, payload.name) is not None:
            raise ConflictError(f"Repository '{payload.name}' already exists for owner {owner}")
        try:
            created = await self.repos.create_repository(
                owner_id=owner,
                name=payload.name,
                description=payload.description,
                source_descriptor=payload.source_descriptor,
            )
            await self.repos.commit()
        except sa_exc.IntegrityError as exc:
            # Lost a race against a concurrent create with the same name
            await self.repos.rollback()
            raise ConflictError(f"Repository '{payload.name}' already exists for owner {owner}") from exc
        logger.info("Created repository %s (%s) for owner %s", created.id, created.name, owner)
        return created

    # PUBLIC_INTERFACE
    async def get_repository(self, repository_id: UUID, requester: str) -> TestDataRepository:
        """Return the repository if it exists and is owned by requester, else raise NotFoundError."""
        repo = await self.repos.get_repository(repository_id, owner_id=requester)
        if repo is None:
            raise NotFoundError("Repository", repository_id)
        return repo

    async def resolve_repository(self, repository_id: UUID, requester: Optional[str] = None) -> TestDataRepository:
        """Like get_repository, but requester=None (system context) skips the owner predicate."""
        repo = await self.repos.get_repository(repository_id, owner_id=requester)
        return self.check_repository_access(repo, repository_id, requester)

    # PUBLIC_INTERFACE
    async def list_repositories(
        self, owner: str, filter: Optional[Union[RepositoryFilter, Dict[str, Any]]] = None
    ) -> List[TestDataRepository]:
        """List the owner's repositories, newest first, optionally filtered by status."""
        flt = parse_payload(RepositoryFilter, filter or {})
        return await self.repos.list_repositories(
            owner_id=owner,
            statuses=[flt.status.value] if flt.status else None,
            name_contains=flt.name_contains,
            limit=flt.limit,
            offset=flt.offset,
        )

    # PUBLIC_INTERFACE
    async def update_status(
        self, repository_id: UUID, new_status: Union[RepositoryStatus, str], requester: Optional[str]
    ) -> TestDataRepository:
        """
        Move the repository forward along active -> archived -> deleted.

        Same-status requests are no-ops. Moving to deleted stamps archived_at on
        every snapshot of the repository.

        Raises:
            InvalidTransitionError: the change would move the status backwards
            NotFoundError: absent or not owned by requester
        """
        target = self._coerce_status(new_status)
        async with locked_repository(self.session, repository_id) as repo:
            repo = self.check_repository_access(repo, repository_id, requester)
            current = RepositoryStatus(repo.status)
            if not current.can_transition_to(target):
                raise InvalidTransitionError(current.value, target.value)
            if current is target:
                return repo
            now = utc_now()
            repo.status = target.value
            repo.updated_at = now
            archived = 0
            if target is RepositoryStatus.DELETED:
                archived = await self.repos.archive_snapshots(repo.id, now)
        logger.info(
            "Repository %s status %s -> %s (snapshots archived: %d)", repository_id, current.value, target.value, archived
        )
        return repo

    # PUBLIC_INTERFACE
    async def delete_repository(self, repository_id: UUID, requester: Optional[str]) -> TestDataRepository:
        """Soft-delete the repository and archive its snapshots. Payloads are not purged."""
        return await self.update_status(repository_id, RepositoryStatus.DELETED, requester)

    # PUBLIC_INTERFACE
    async def add_records(
        self, repository_id: UUID, records: Iterable[Dict[str, Any]], requester: Optional[str]
    ) -> int:
        """Append records to an active repository; returns how many were written."""
        rows = list(records)
        bad = [i for i, r in enumerate(rows) if not isinstance(r, dict)]
        if bad:
            raise ValidationError("Records must be JSON objects", issues=[f"record {i} is not an object" for i in bad])
        async with locked_repository(self.session, repository_id) as repo:
            repo = self.check_repository_access(repo, repository_id, requester)
            self.require_active(repo, "write")
            start = await self.records.next_position(repo.id)
            written = await self.records.append_records(repo.id, rows, start=start)
            repo.updated_at = utc_now()
        return written

    # PUBLIC_INTERFACE
    async def list_records(self, repository_id: UUID, requester: Optional[str]) -> List[Dict[str, Any]]:
        """Return the repository content as record data in insertion order."""
        repo = await self.resolve_repository(repository_id, requester)
        return [r.data for r in await self.records.list_records(repo.id)]

    # PUBLIC_INTERFACE
    async def count_records(self, repository_id: UUID, requester: Optional[str]) -> int:
        repo = await self.resolve_repository(repository_id, requester)
        return await self.records.count_records(repo.id)

    # PUBLIC_INTERFACE
    async def clear_records(self, repository_id: UUID, requester: Optional[str]) -> int:
        """Remove all records of an active repository; returns how many were removed."""
        async with locked_repository(self.session, repository_id) as repo:
            repo = self.check_repository_access(repo, repository_id, requester)
            self.require_active(repo, "clear")
            removed = await self.records.delete_records(repo.id)
            repo.updated_at = utc_now()
        return removed

    @staticmethod
    def require_active(repo: TestDataRepository, operation: str) -> None:
        """Content changes are only allowed while the repository is active."""
        if repo.status != RepositoryStatus.ACTIVE.value:
            raise InvalidTransitionError(
                repo.status, operation, f"Cannot {operation} repository {repo.id} in status '{repo.status}'"
            )

    @staticmethod
    def _coerce_status(value: Union[RepositoryStatus, str]) -> RepositoryStatus:
        try:
            return RepositoryStatus(value)
        except ValueError as exc:
            allowed = ", ".join(s.value for s in RepositoryStatus)
            raise ValidationError(f"Unknown status {value!r}", issues=[f"expected one of: {allowed}"]) from exc
