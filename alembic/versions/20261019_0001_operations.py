"""Create live operations, archive, and event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _operation_columns() -> list[sa.Column]:
    return [
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("data", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "operations",
        sa.Column("id", sa.Integer(), nullable=False),
        *_operation_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_operations_status",
        ),
        sa.CheckConstraint("source IN ('api', 'ui')", name="ck_operations_source"),
        sa.CheckConstraint("retry_count >= 0", name="ck_operations_retry_count"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_operations_type", "operations", ["type"], unique=False)
    op.create_index(
        "idx_operations_queue",
        "operations",
        ["status", "source", "created_at"],
        unique=False,
    )
    op.create_index("idx_operations_started", "operations", ["status", "started_at"], unique=False)
    op.create_index(
        "idx_operations_completed",
        "operations",
        ["status", "completed_at"],
        unique=False,
    )

    op.create_table(
        "operations_archive",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        *_operation_columns(),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_operations_archive_type", "operations_archive", ["type"], unique=False)
    op.create_index(
        "idx_operations_archive_completed",
        "operations_archive",
        ["completed_at"],
        unique=False,
    )

    op.create_table(
        "operation_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("operation_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["operation_id"], ["operations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_operation_events_operation_id",
        "operation_events",
        ["operation_id"],
        unique=False,
    )
    op.create_index(
        "ix_operation_events_event_type",
        "operation_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_operation_events_operation_time",
        "operation_events",
        ["operation_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_operation_events_operation_time", table_name="operation_events")
    op.drop_index("ix_operation_events_event_type", table_name="operation_events")
    op.drop_index("ix_operation_events_operation_id", table_name="operation_events")
    op.drop_table("operation_events")
    op.drop_index("idx_operations_archive_completed", table_name="operations_archive")
    op.drop_index("ix_operations_archive_type", table_name="operations_archive")
    op.drop_table("operations_archive")
    op.drop_index("idx_operations_completed", table_name="operations")
    op.drop_index("idx_operations_started", table_name="operations")
    op.drop_index("idx_operations_queue", table_name="operations")
    op.drop_index("ix_operations_type", table_name="operations")
    op.drop_table("operations")
