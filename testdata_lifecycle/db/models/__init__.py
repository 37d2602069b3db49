"""
ORM models for the test data lifecycle: repositories and their records,
snapshots and payload blobs, cleanup rules, and synthetic data templates.

Importing this package ensures model classes are registered with the Base
metadata for Alembic and runtime usage.
"""

from .repository import (  # noqa: F401
    TestDataRepository,
    RepositoryRecord,
)
from .snapshot import (  # noqa: F401
    TestDataSnapshot,
    SnapshotPayload,
)
from .cleanup import (  # noqa: F401
    DataCleanupRule,
)
from .synthetic import (  # noqa: F401
    SyntheticDataTemplate,
)
