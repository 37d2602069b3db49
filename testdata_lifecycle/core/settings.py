from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Application-level settings for the lifecycle services.

    This is separate from testdata_lifecycle.db.config.Settings, which focuses on the database layer.
    """

    APP_NAME: str = Field(default="Test Data Lifecycle")
    APP_VERSION: str = Field(default="0.1.0")

    LOG_LEVEL: str = Field(default="INFO", description="Root log level name")

    # Snapshot payload storage
    SNAPSHOT_STORAGE_BACKEND: Literal["database", "filesystem"] = Field(
        default="database",
        description="Where snapshot payloads are stored: 'database' or 'filesystem'.",
    )
    SNAPSHOT_STORAGE_DIR: Path = Field(
        default=Path("./snapshot-payloads"),
        description="Root directory for the filesystem payload backend.",
    )

    # Batch sizes
    RESTORE_CHUNK_SIZE: int = Field(default=500, ge=1)
    GENERATION_BATCH_SIZE: int = Field(default=100, ge=1)
    MAX_GENERATION_COUNT: int = Field(default=100_000, ge=1)

    # Startup behavior
    RUN_MIGRATIONS_ON_STARTUP: bool = Field(
        default=False,
        description="If true, job entry points run Alembic migrations (upgrade head) first.",
    )

    # Environment label
    ENVIRONMENT: Optional[str] = Field(
        default=None, description="Environment label (dev/test/prod)"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, v):
        """Accept lower-case level names from the environment."""
        if v is None:
            return "INFO"
        return str(v).strip().upper() or "INFO"


# PUBLIC_INTERFACE
def get_app_settings() -> AppSettings:
    """
    Return a new AppSettings instance populated from environment variables.

    Note:
      Settings are cheap to construct, so a new instance is built on each call.
      Tests rely on this to pick up monkeypatched environment variables.
    """
    return AppSettings()
