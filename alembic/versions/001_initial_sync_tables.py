"""Initial sync engine tables: entity_mappings, sync_tasks, sync_task_slots.

Revision ID: 001_initial_sync_tables
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "entity_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("source_system", sa.String(32), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("target_system", sa.String(32), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "entity_type", "source_system", "source_id", name="uq_entity_mapping_source"
        ),
        sa.UniqueConstraint(
            "entity_type", "target_system", "target_id", name="uq_entity_mapping_target"
        ),
    )

    op.create_table(
        "sync_tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("direction", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("conflict_strategy", sa.String(32), nullable=False),
        sa.Column("filters", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_entities", sa.Integer(), server_default="0"),
        sa.Column("processed_count", sa.Integer(), server_default="0"),
        sa.Column("created_count_a", sa.Integer(), server_default="0"),
        sa.Column("created_count_b", sa.Integer(), server_default="0"),
        sa.Column("updated_count_a", sa.Integer(), server_default="0"),
        sa.Column("updated_count_b", sa.Integer(), server_default="0"),
        sa.Column("skipped_count", sa.Integer(), server_default="0"),
        sa.Column("failed_count", sa.Integer(), server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("last_synced_entity_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_tasks_status", "sync_tasks", ["status"])

    op.create_table(
        "sync_task_slots",
        sa.Column("running_key", sa.String(64), primary_key=True),
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("sync_task_slots")
    op.drop_index("ix_sync_tasks_status", table_name="sync_tasks")
    op.drop_table("sync_tasks")
    op.drop_table("entity_mappings")
