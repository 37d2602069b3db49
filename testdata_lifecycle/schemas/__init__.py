"""
Public Pydantic schemas used by services, jobs and tests.

Schemas are grouped by component (repository, snapshot, cleanup, synthetic)
and also include common reusable models such as pagination.
"""

from .repository import RepositoryStatus  # noqa: F401
