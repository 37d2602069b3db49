from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from testdata_lifecycle.core.errors import NotFoundError, ValidationError
from testdata_lifecycle.db.models.repository import TestDataRepository

ModelT = TypeVar("ModelT", bound=BaseModel)


class BaseService:
    """
    Base class for services. Holds a session for use across multiple repositories.

    Services should keep business logic and orchestration, delegating data access
    to repositories. A requester of None means the system context (cleanup
    jobs); any other value is the authenticated owner id and is enforced.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def check_repository_access(
        repo: Optional[TestDataRepository], repository_id: Any, requester: Optional[str]
    ) -> TestDataRepository:
        """Raise NotFoundError when the repository is absent or owned by someone else."""
        if repo is None or (requester is not None and repo.owner_id != requester):
            raise NotFoundError("Repository", repository_id)
        return repo


# PUBLIC_INTERFACE
def parse_payload(model: Type[ModelT], data: Any) -> ModelT:
    """Validate input into a pydantic model, mapping failures onto the lifecycle ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        issues = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", issues=issues) from exc
