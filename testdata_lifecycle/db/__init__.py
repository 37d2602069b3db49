"""
Database package initializer exposing key public interfaces for configuration,
engine/session management, and repository row locking.
"""

from .base import Base
from .config import get_settings, Settings
from .session import (
    dispose_engine,
    get_async_session,
    get_engine,
    get_session_maker,
    lock_repository_row,
    locked_repository,
)

# Import models to ensure they are registered with SQLAlchemy metadata
# when the db package is imported.
from . import models as models  # noqa: F401

__all__ = [
    "Base",
    "Settings",
    "get_settings",
    "get_engine",
    "get_session_maker",
    "get_async_session",
    "dispose_engine",
    "lock_repository_row",
    "locked_repository",
    "models",
]
