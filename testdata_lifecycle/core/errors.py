"""
Error taxonomy for lifecycle operations.

Single-entity operations raise these to the caller. Batch operations (cleanup
evaluation, synthetic generation) catch per-item failures and report them
instead of aborting.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Optional


class LifecycleError(Exception):
    """Base class for all lifecycle errors."""

    error_type = "lifecycle_error"

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(LifecycleError):
    """Entity is absent or not owned by the requester."""

    error_type = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", details={"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(LifecycleError):
    """Uniqueness violation."""

    error_type = "conflict"


class InvalidTransitionError(LifecycleError):
    """Illegal status change, or an operation not allowed in the current status."""

    error_type = "invalid_transition"

    def __init__(self, current: str, requested: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Cannot transition from '{current}' to '{requested}'",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class IntegrityError(LifecycleError):
    """Stored checksum does not match the payload."""

    error_type = "integrity_error"

    def __init__(self, snapshot_id: Any, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for snapshot {snapshot_id}",
            details={"expected": expected, "actual": actual},
        )
        self.snapshot_id = snapshot_id
        self.expected = expected
        self.actual = actual


class ValidationError(LifecycleError):
    """Malformed template, schema descriptor or rule definition."""

    error_type = "validation_error"

    def __init__(self, message: str, issues: Optional[Iterable[str]] = None) -> None:
        self.issues: List[str] = list(issues or [])
        super().__init__(message, details=self.issues or None)

    def __str__(self) -> str:
        if not self.issues:
            return self.message
        return f"{self.message}: " + "; ".join(self.issues)


class ActionFailure(LifecycleError):
    """A cleanup action failed on one target. Recorded per target, never fatal to the batch."""

    error_type = "action_failure"

    def __init__(self, target_type: str, target_id: Any, message: str) -> None:
        super().__init__(message, details={"target_type": target_type, "target_id": str(target_id)})
        self.target_type = target_type
        self.target_id = target_id
