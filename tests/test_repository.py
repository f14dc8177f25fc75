"""Tests for the SQL repositories against a file-backed aiosqlite database."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.syncbridge.core.database import init_db
from src.syncbridge.sync.errors import MappingConflictError, TaskAlreadyRunningError
from src.syncbridge.sync.progress import ProgressTracker
from src.syncbridge.sync.repository import SqlMappingRepository, SqlTaskStore
from src.syncbridge.sync.schemas import (
    BatchResult,
    EntityMapping,
    EntityType,
    Platform,
    PlatformCounts,
    SyncDirection,
    SyncErrorEntry,
    SyncFilters,
    SyncTaskStatus,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(engine)

    async def factory():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield factory
    await engine.dispose()


def _mapping(source_id: str, target_id: str, source: Platform = Platform.A) -> EntityMapping:
    return EntityMapping(
        entity_type=EntityType.ORDER,
        source_system=source,
        source_id=source_id,
        target_system=source.other,
        target_id=target_id,
    )


# ── Mappings ───────────────────────────────────────────────────────────────


class TestSqlMappingRepository:
    async def test_find_by_either_end(self, session_factory):
        repo = SqlMappingRepository(session_factory)
        await repo.upsert(_mapping("A1", "B1"))

        by_source = await repo.find(EntityType.ORDER, Platform.A, "A1")
        by_target = await repo.find(EntityType.ORDER, Platform.B, "B1")

        assert by_source.target_id == "B1"
        assert by_target.source_id == "A1"
        assert by_source.last_synced_at.tzinfo is not None
        assert await repo.find(EntityType.INVENTORY, Platform.A, "A1") is None

    async def test_refresh_keeps_single_row(self, session_factory):
        repo = SqlMappingRepository(session_factory)
        await repo.upsert(_mapping("A1", "B1"))
        await repo.upsert(_mapping("A1", "B1"))
        await repo.upsert(_mapping("B1", "A1", Platform.B))

        assert len(await repo.list_mappings(EntityType.ORDER)) == 1

    async def test_target_already_mapped_conflicts(self, session_factory):
        repo = SqlMappingRepository(session_factory)
        await repo.upsert(_mapping("A1", "B1"))

        with pytest.raises(MappingConflictError):
            await repo.upsert(_mapping("A2", "B1"))

    async def test_reverse_orientation_conflict(self, session_factory):
        repo = SqlMappingRepository(session_factory)
        await repo.upsert(_mapping("A1", "B1"))

        with pytest.raises(MappingConflictError):
            await repo.upsert(_mapping("B1", "A9", Platform.B))


# ── Task Store ─────────────────────────────────────────────────────────────


class TestSqlTaskStore:
    async def test_task_roundtrip_through_tracker(self, session_factory):
        tracker = ProgressTracker(SqlTaskStore(session_factory))
        task = await tracker.start(
            EntityType.ORDER,
            SyncDirection.BIDIRECTIONAL,
            filters=SyncFilters(skip_existing=True),
        )
        await tracker.update(
            task.id,
            BatchResult(
                synced_count=3,
                created_count=PlatformCounts(platform_a=1, platform_b=2),
                failed_count=1,
                errors=[SyncErrorEntry(entity_id="A7", message="boom", error_type="TransientError")],
                last_entity_id="platform_a:A7",
            ),
        )

        stored = await tracker.get(task.id)

        assert stored.status is SyncTaskStatus.RUNNING
        assert stored.filters.skip_existing is True
        assert stored.processed_count == 4
        assert stored.created_count.platform_b == 2
        assert stored.errors[0].entity_id == "A7"
        assert stored.last_synced_entity_id == "platform_a:A7"

    async def test_slot_is_exclusive_until_completed(self, session_factory):
        tracker = ProgressTracker(SqlTaskStore(session_factory))
        first = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        with pytest.raises(TaskAlreadyRunningError):
            await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        await tracker.complete(first.id, SyncTaskStatus.COMPLETED)
        second = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)
        assert second.id != first.id

    async def test_list_by_status(self, session_factory):
        tracker = ProgressTracker(SqlTaskStore(session_factory))
        running = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)
        done = await tracker.start(EntityType.INVENTORY, SyncDirection.A_TO_B)
        await tracker.complete(done.id, SyncTaskStatus.INTERRUPTED)

        interrupted = await tracker.list_tasks(SyncTaskStatus.INTERRUPTED)
        everything = await tracker.list_tasks()

        assert [t.id for t in interrupted] == [done.id]
        assert {t.id for t in everything} == {running.id, done.id}
