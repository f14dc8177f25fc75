"""Persistence models for engine state.

Three SQLAlchemy models on the shared declarative Base:
- EntityMappingModel: source-id <-> target-id correspondence, unique on both ends
- SyncTaskModel: Sync Task checkpoint with split per-platform counters
- SyncTaskSlotModel: the single-running-task slot, one row per running key

Column types are dialect-neutral (JSON, not JSONB) so the same models run on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.syncbridge.core.database import Base


class EntityMappingModel(Base):
    """One entity's ids on the source and target platform.

    Unique on both (entity_type, source_system, source_id) and
    (entity_type, target_system, target_id), so the database rejects any
    write that would attach an already-mapped id to a second counterpart.
    """

    __tablename__ = "entity_mappings"
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "source_system",
            "source_id",
            name="uq_entity_mapping_source",
        ),
        UniqueConstraint(
            "entity_type",
            "target_system",
            "target_id",
            name="uq_entity_mapping_target",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_system: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_system: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncTaskModel(Base):
    """Persisted Sync Task, rewritten in full after every tracker mutation."""

    __tablename__ = "sync_tasks"
    __table_args__ = (Index("ix_sync_tasks_status", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    conflict_strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    filters: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_entities: Mapped[int] = mapped_column(Integer, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    created_count_a: Mapped[int] = mapped_column(Integer, default=0)
    created_count_b: Mapped[int] = mapped_column(Integer, default=0)
    updated_count_a: Mapped[int] = mapped_column(Integer, default=0)
    updated_count_b: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    last_synced_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncTaskSlotModel(Base):
    """Running slot per "entity_type:direction"; the primary key makes claims exclusive."""

    __tablename__ = "sync_task_slots"

    running_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
