"""Test data lifecycle schema.

- test_data_repositories
- test_data_records
- test_data_snapshots
- test_data_snapshot_payloads
- data_cleanup_rules
- synthetic_data_templates

Column types are portable (UUID and JSON fall back to generic types off
PostgreSQL); JSON columns are JSONB on PostgreSQL.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "4c1d2e7a9b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "test_data_repositories",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_descriptor", JSON, nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_test_data_repositories"),
        sa.UniqueConstraint("owner_id", "name", name="uq_test_data_repositories_owner_name"),
    )
    op.create_index("ix_test_data_repositories_owner_id", "test_data_repositories", ["owner_id"])
    op.create_index("ix_test_data_repositories_status", "test_data_repositories", ["status"])
    op.create_index(
        "ix_test_data_repositories_owner_created", "test_data_repositories", ["owner_id", "created_at"]
    )

    op.create_table(
        "test_data_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("repository_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("data", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_test_data_records"),
        sa.ForeignKeyConstraint(
            ["repository_id"],
            ["test_data_repositories.id"],
            name="fk_test_data_records_repository_id_test_data_repositories",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("repository_id", "position", name="uq_test_data_records_repository_position"),
    )
    op.create_index("ix_test_data_records_repository_id", "test_data_records", ["repository_id"])

    op.create_table(
        "test_data_snapshots",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("repository_id", sa.Uuid(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_ref", sa.Text(), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("checksum", sa.Text(), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_test_data_snapshots"),
        sa.ForeignKeyConstraint(
            ["repository_id"],
            ["test_data_repositories.id"],
            name="fk_test_data_snapshots_repository_id_test_data_repositories",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_test_data_snapshots_payload_ref", "test_data_snapshots", ["payload_ref"])
    op.create_index(
        "ix_test_data_snapshots_repository_captured", "test_data_snapshots", ["repository_id", "captured_at"]
    )

    op.create_table(
        "test_data_snapshot_payloads",
        sa.Column("checksum", sa.Text(), nullable=False),
        sa.Column("data", sa.LargeBinary(), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("checksum", name="pk_test_data_snapshot_payloads"),
    )

    op.create_table(
        "data_cleanup_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("scope_type", sa.Text(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), nullable=True),
        sa.Column("predicate", JSON, nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("schedule", sa.Text(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_data_cleanup_rules"),
    )
    op.create_index("ix_data_cleanup_rules_owner_id", "data_cleanup_rules", ["owner_id"])
    op.create_index("ix_data_cleanup_rules_scope_id", "data_cleanup_rules", ["scope_id"])

    op.create_table(
        "synthetic_data_templates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("schema_descriptor", JSON, nullable=False),
        sa.Column("output_format", sa.Text(), nullable=False),
        sa.Column("seed", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_synthetic_data_templates"),
        sa.UniqueConstraint("owner_id", "name", name="uq_synthetic_data_templates_owner_name"),
    )
    op.create_index("ix_synthetic_data_templates_owner_id", "synthetic_data_templates", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_synthetic_data_templates_owner_id", table_name="synthetic_data_templates")
    op.drop_table("synthetic_data_templates")
    op.drop_index("ix_data_cleanup_rules_scope_id", table_name="data_cleanup_rules")
    op.drop_index("ix_data_cleanup_rules_owner_id", table_name="data_cleanup_rules")
    op.drop_table("data_cleanup_rules")
    op.drop_table("test_data_snapshot_payloads")
    op.drop_index("ix_test_data_snapshots_repository_captured", table_name="test_data_snapshots")
    op.drop_index("ix_test_data_snapshots_payload_ref", table_name="test_data_snapshots")
    op.drop_table("test_data_snapshots")
    op.drop_index("ix_test_data_records_repository_id", table_name="test_data_records")
    op.drop_table("test_data_records")
    op.drop_index("ix_test_data_repositories_owner_created", table_name="test_data_repositories")
    op.drop_index("ix_test_data_repositories_status", table_name="test_data_repositories")
    op.drop_index("ix_test_data_repositories_owner_id", table_name="test_data_repositories")
    op.drop_table("test_data_repositories")
