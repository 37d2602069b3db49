"""
Cleanup rule evaluation.

The engine is a function of stored state plus the current time: an external
scheduler (see testdata_lifecycle.jobs.run_cleanup) calls ``evaluate`` per rule.
Candidates are resolved from the rule scope, processed oldest first, and each
matching target is actioned in its own transaction under the repository row
lock, after re-checking that it still qualifies. A failure on one target is
reported and the remaining targets are still processed.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import ActionFailure, LifecycleError, ValidationError
from testdata_lifecycle.core.logging import log_context
from testdata_lifecycle.core.settings import AppSettings
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.models.cleanup import DataCleanupRule
from testdata_lifecycle.db.models.repository import TestDataRepository
from testdata_lifecycle.db.session import locked_repository
from testdata_lifecycle.repositories.cleanup_rules import CleanupRuleRepository
from testdata_lifecycle.repositories.snapshots import SnapshotRepository
from testdata_lifecycle.repositories.test_data import RepositoryRecordRepository, TestDataRepositoryRepository
from testdata_lifecycle.schemas.cleanup import (
    ActionOutcome,
    ActionResult,
    CleanupAction,
    CleanupPredicate,
    CleanupRunSummary,
    ScopeType,
    SkipReason,
)
from testdata_lifecycle.schemas.repository import RepositoryStatus
from testdata_lifecycle.services.base import BaseService, parse_payload
from testdata_lifecycle.services.cleanup_rules import CleanupRuleService
from testdata_lifecycle.services.snapshot_engine import SnapshotEngine

logger = logging.getLogger(__name__)

Outcome = Tuple[ActionOutcome, Optional[SkipReason]]


@dataclass
class _Candidate:
    target_type: str
    target_id: UUID
    repository_id: UUID
    rank: int
    matched: bool
    reason: Optional[SkipReason] = None

    def result(self, outcome: ActionOutcome, reason: Optional[SkipReason] = None, error: Optional[str] = None) -> ActionResult:
        return ActionResult(
            target_type=self.target_type,
            target_id=self.target_id,
            repository_id=self.repository_id,
            outcome=outcome,
            reason=reason,
            error=error,
        )


def _snapshot_matches(
    predicate: CleanupPredicate, repo_status: str, captured_at: datetime, rank: int, now: datetime
) -> bool:
    """rank is the snapshot's position among its repository's snapshots, newest = 0."""
    if predicate.statuses and RepositoryStatus(repo_status) not in predicate.statuses:
        return False
    if predicate.max_age_days is not None and captured_at >= now - timedelta(days=predicate.max_age_days):
        return False
    if predicate.max_count is not None and rank < predicate.max_count:
        return False
    return True


def _repository_matches(predicate: CleanupPredicate, repo: TestDataRepository, rank: int, now: datetime) -> bool:
    """Age is measured from the last activity (updated_at); rank is newest-created = 0 within the scope."""
    if predicate.statuses and RepositoryStatus(repo.status) not in predicate.statuses:
        return False
    if predicate.max_age_days is not None and repo.updated_at >= now - timedelta(days=predicate.max_age_days):
        return False
    if predicate.max_count is not None and rank < predicate.max_count:
        return False
    return True


class CleanupRuleEngine(BaseService):
    """Evaluates retention/deletion rules against repositories and snapshots."""

    def __init__(
        self,
        session: AsyncSession,
        snapshot_engine: Optional[SnapshotEngine] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        super().__init__(session)
        self.snapshot_engine = snapshot_engine or SnapshotEngine(session, settings=settings)
        self.repos = TestDataRepositoryRepository(session)
        self.records = RepositoryRecordRepository(session)
        self.snapshots = SnapshotRepository(session)
        self.rules = CleanupRuleRepository(session)

    # PUBLIC_INTERFACE
    async def evaluate(self, rule: DataCleanupRule, now: Optional[datetime] = None) -> List[ActionResult]:
        """
        Apply the rule once and return one result per candidate target.

        Re-running on unchanged state applies nothing new. Disabled rules
        return an empty list. The rule itself is never modified.

        Raises:
            ValidationError: the stored predicate or action is malformed
        """
        rule_id = rule.id
        if not rule.enabled:
            logger.info("Cleanup rule %s is disabled; nothing to evaluate", rule_id)
            return []
        predicate, action = self._parse_rule(rule)
        now = now or utc_now()
        repos = await self._resolve_scope(rule)
        if action.targets_snapshots:
            candidates = await self._snapshot_candidates(repos, predicate, now)
        else:
            candidates = await self._repository_candidates(repos, predicate, action, now)

        results: List[ActionResult] = []
        for candidate in candidates:
            if not candidate.matched:
                results.append(candidate.result(ActionOutcome.SKIPPED, candidate.reason))
                continue
            results.append(await self._apply(action, predicate, candidate, now))

        counts: Dict[str, int] = defaultdict(int)
        for r in results:
            counts[r.outcome.value] += 1
        logger.info(
            "Evaluated cleanup rule %s (%s): applied=%d skipped=%d failed=%d",
            rule_id, action.value, counts["applied"], counts["skipped"], counts["failed"],
        )
        return results

    # PUBLIC_INTERFACE
    async def evaluate_rule(
        self, rule_id: UUID, requester: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[ActionResult]:
        """Load a rule (owner-checked when requester is given) and evaluate it."""
        rule = await CleanupRuleService(self.session).get_rule(rule_id, requester)
        return await self.evaluate(rule, now=now)

    # PUBLIC_INTERFACE
    async def evaluate_enabled(
        self, schedule: Optional[str] = None, now: Optional[datetime] = None
    ) -> CleanupRunSummary:
        """Evaluate every enabled rule, optionally only those with the given schedule."""
        started = utc_now()
        summary = CleanupRunSummary(started_at=started, completed_at=started)
        rules = await self.rules.list_rules(owner_id=None, enabled=True, schedule=schedule)
        # Failed actions roll back and expire loaded rows; keep plain ids
        rule_keys = [(rule.id, rule.owner_id) for rule in rules]
        for rule_id, owner_id in rule_keys:
            with log_context(correlation_id=str(rule_id), owner_id=owner_id):
                rule = await self.rules.get_rule(rule_id)
                if rule is None:
                    continue
                try:
                    results = await self.evaluate(rule, now=now)
                except LifecycleError as exc:
                    logger.error("Cleanup rule %s could not be evaluated: %s", rule_id, exc)
                    summary.rule_errors[str(rule_id)] = str(exc)
                    continue
            summary.rules_evaluated += 1
            summary.results[str(rule_id)] = results
            for r in results:
                if r.outcome is ActionOutcome.APPLIED:
                    summary.applied += 1
                elif r.outcome is ActionOutcome.SKIPPED:
                    summary.skipped += 1
                else:
                    summary.failed += 1
        summary.completed_at = utc_now()
        return summary

    @staticmethod
    def _parse_rule(rule: DataCleanupRule) -> Tuple[CleanupPredicate, CleanupAction]:
        predicate = parse_payload(CleanupPredicate, rule.predicate or {})
        try:
            action = CleanupAction(rule.action)
        except ValueError as exc:
            raise ValidationError(f"Cleanup rule {rule.id} has unknown action {rule.action!r}") from exc
        return predicate, action

    async def _resolve_scope(self, rule: DataCleanupRule) -> List[TestDataRepository]:
        """Repositories in scope, least recently active first. System rules see every owner."""
        if rule.scope_type == ScopeType.REPOSITORY.value:
            if rule.scope_id is None:
                return []
            return await self.repos.list_oldest_first(owner_id=rule.owner_id, repository_id=rule.scope_id)
        return await self.repos.list_oldest_first(owner_id=rule.owner_id)

    async def _snapshot_candidates(
        self, repos: Sequence[TestDataRepository], predicate: CleanupPredicate, now: datetime
    ) -> List[_Candidate]:
        by_repo = {r.id: r for r in repos}
        snapshots = await self.snapshots.list_oldest_first(owner_repository_ids=list(by_repo))

        per_repo = defaultdict(list)
        for s in snapshots:
            per_repo[s.repository_id].append(s)
        ranks: Dict[UUID, int] = {}
        for items in per_repo.values():
            for rank, s in enumerate(sorted(items, key=lambda s: s.captured_at, reverse=True)):
                ranks[s.id] = rank

        candidates = []
        for s in snapshots:
            matched = _snapshot_matches(predicate, by_repo[s.repository_id].status, s.captured_at, ranks[s.id], now)
            candidates.append(
                _Candidate(
                    target_type="snapshot",
                    target_id=s.id,
                    repository_id=s.repository_id,
                    rank=ranks[s.id],
                    matched=matched,
                    reason=None if matched else SkipReason.PREDICATE_NOT_MATCHED,
                )
            )
        return candidates

    async def _repository_candidates(
        self,
        repos: Sequence[TestDataRepository],
        predicate: CleanupPredicate,
        action: CleanupAction,
        now: datetime,
    ) -> List[_Candidate]:
        ranks = {r.id: i for i, r in enumerate(sorted(repos, key=lambda r: r.created_at, reverse=True))}
        candidates = []
        for repo in repos:
            candidate = _Candidate(
                target_type="repository",
                target_id=repo.id,
                repository_id=repo.id,
                rank=ranks[repo.id],
                matched=False,
            )
            if await self._is_actioned(repo, action):
                candidate.reason = SkipReason.ALREADY_ACTIONED
            elif _repository_matches(predicate, repo, candidate.rank, now):
                candidate.matched = True
            else:
                candidate.reason = SkipReason.PREDICATE_NOT_MATCHED
            candidates.append(candidate)
        return candidates

    async def _is_actioned(self, repo: TestDataRepository, action: CleanupAction) -> bool:
        if action is CleanupAction.ARCHIVE_REPOSITORY:
            return repo.status != RepositoryStatus.ACTIVE.value
        if repo.status != RepositoryStatus.DELETED.value:
            return False
        remaining = await self.snapshots.list_snapshots(repo.id)
        return not remaining and await self.records.count_records(repo.id) == 0

    async def _apply(
        self, action: CleanupAction, predicate: CleanupPredicate, candidate: _Candidate, now: datetime
    ) -> ActionResult:
        try:
            if action is CleanupAction.DELETE_SNAPSHOT:
                outcome, reason = await self._delete_snapshot(predicate, candidate, now)
            elif action is CleanupAction.ARCHIVE_REPOSITORY:
                outcome, reason = await self._archive_repository(predicate, candidate, now)
            else:
                outcome, reason = await self._purge_repository(predicate, candidate, now)
        except Exception as exc:
            failure = ActionFailure(candidate.target_type, candidate.target_id, str(exc) or exc.__class__.__name__)
            logger.exception(
                "Cleanup action %s failed on %s %s", action.value, candidate.target_type, candidate.target_id
            )
            return candidate.result(ActionOutcome.FAILED, error=failure.message)
        return candidate.result(outcome, reason)

    async def _delete_snapshot(self, predicate: CleanupPredicate, candidate: _Candidate, now: datetime) -> Outcome:
        orphans: List[str] = []
        async with locked_repository(self.session, candidate.repository_id) as repo:
            snapshot = await self.snapshots.get_snapshot(candidate.target_id)
            if snapshot is None:
                return ActionOutcome.SKIPPED, SkipReason.ALREADY_ACTIONED
            if repo is None:
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            rank = await self.snapshots.count_newer(repo.id, snapshot.captured_at)
            if not _snapshot_matches(predicate, repo.status, snapshot.captured_at, rank, now):
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            removed, orphans = await self.snapshot_engine.delete_snapshot_locked(snapshot)
        await self.snapshot_engine.finalize_payload_deletes(orphans)
        if not removed:
            return ActionOutcome.SKIPPED, SkipReason.ALREADY_ACTIONED
        logger.info("Cleanup deleted snapshot %s of repository %s", candidate.target_id, candidate.repository_id)
        return ActionOutcome.APPLIED, None

    async def _archive_repository(self, predicate: CleanupPredicate, candidate: _Candidate, now: datetime) -> Outcome:
        async with locked_repository(self.session, candidate.repository_id) as repo:
            if repo is None:
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            if repo.status != RepositoryStatus.ACTIVE.value:
                return ActionOutcome.SKIPPED, SkipReason.ALREADY_ACTIONED
            if not _repository_matches(predicate, repo, candidate.rank, now):
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            repo.status = RepositoryStatus.ARCHIVED.value
            repo.updated_at = utc_now()
        logger.info("Cleanup archived repository %s", candidate.repository_id)
        return ActionOutcome.APPLIED, None

    async def _purge_repository(self, predicate: CleanupPredicate, candidate: _Candidate, now: datetime) -> Outcome:
        orphans: List[str] = []
        async with locked_repository(self.session, candidate.repository_id) as repo:
            if repo is None:
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            if not _repository_matches(predicate, repo, candidate.rank, now):
                return ActionOutcome.SKIPPED, SkipReason.OUT_OF_SCOPE
            was_deleted = repo.status == RepositoryStatus.DELETED.value
            snapshots_removed, orphans = await self.snapshot_engine.purge_repository_snapshots(repo.id)
            records_removed = await self.records.delete_records(repo.id)
            if not was_deleted:
                repo.status = RepositoryStatus.DELETED.value
                repo.updated_at = utc_now()
        await self.snapshot_engine.finalize_payload_deletes(orphans)
        if was_deleted and snapshots_removed == 0 and records_removed == 0:
            return ActionOutcome.SKIPPED, SkipReason.ALREADY_ACTIONED
        logger.info(
            "Cleanup purged repository %s (%d snapshots, %d records)",
            candidate.repository_id, snapshots_removed, records_removed,
        )
        return ActionOutcome.APPLIED, None
