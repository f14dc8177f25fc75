"""SQL repositories for Entity Mappings and Sync Tasks.

Uses the session_factory callable pattern: each operation opens one short
session from an async generator and commits before returning. Serialization
between Pydantic schemas and SQLAlchemy models happens in the helpers below;
JSON columns hold ``model_dump(mode="json")`` output.

Atomicity comes from the database: unique constraints on both mapping ends
and the primary key of the running-slot table turn a lost race into an
IntegrityError, which is translated into the engine's own failures.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.syncbridge.sync.errors import MappingConflictError
from src.syncbridge.sync.mapping import MappingRepository
from src.syncbridge.sync.models import EntityMappingModel, SyncTaskModel, SyncTaskSlotModel
from src.syncbridge.sync.progress import TaskStore
from src.syncbridge.sync.schemas import (
    ConflictStrategy,
    EntityMapping,
    EntityType,
    Platform,
    PlatformCounts,
    SyncDirection,
    SyncErrorEntry,
    SyncFilters,
    SyncTask,
    SyncTaskStatus,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_mapping(model: EntityMappingModel) -> EntityMapping:
    return EntityMapping(
        entity_type=EntityType(model.entity_type),
        source_system=Platform(model.source_system),
        source_id=model.source_id,
        target_system=Platform(model.target_system),
        target_id=model.target_id,
        last_synced_at=_aware(model.last_synced_at),
    )


def _model_to_task(model: SyncTaskModel) -> SyncTask:
    return SyncTask(
        id=model.id,
        entity_type=EntityType(model.entity_type),
        direction=SyncDirection(model.direction),
        status=SyncTaskStatus(model.status),
        conflict_strategy=ConflictStrategy(model.conflict_strategy),
        filters=SyncFilters.model_validate(model.filters or {}),
        started_at=_aware(model.started_at),
        completed_at=_aware(model.completed_at),
        total_entities=model.total_entities or 0,
        processed_count=model.processed_count or 0,
        created_count=PlatformCounts(
            platform_a=model.created_count_a or 0, platform_b=model.created_count_b or 0
        ),
        updated_count=PlatformCounts(
            platform_a=model.updated_count_a or 0, platform_b=model.updated_count_b or 0
        ),
        skipped_count=model.skipped_count or 0,
        failed_count=model.failed_count or 0,
        errors=[SyncErrorEntry.model_validate(e) for e in (model.errors or [])],
        last_synced_entity_id=model.last_synced_entity_id,
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at),
    )


def _apply_task(model: SyncTaskModel, task: SyncTask) -> None:
    model.entity_type = task.entity_type.value
    model.direction = task.direction.value
    model.status = task.status.value
    model.conflict_strategy = task.conflict_strategy.value
    model.filters = task.filters.model_dump(mode="json")
    model.started_at = task.started_at
    model.completed_at = task.completed_at
    model.total_entities = task.total_entities
    model.processed_count = task.processed_count
    model.created_count_a = task.created_count.platform_a
    model.created_count_b = task.created_count.platform_b
    model.updated_count_a = task.updated_count.platform_a
    model.updated_count_b = task.updated_count.platform_b
    model.skipped_count = task.skipped_count
    model.failed_count = task.failed_count
    model.errors = [e.model_dump(mode="json") for e in task.errors]
    model.last_synced_entity_id = task.last_synced_entity_id
    model.created_at = task.created_at
    model.updated_at = task.updated_at


def _endpoint_clause(entity_type: EntityType, system: Platform, entity_id: str):
    return and_(
        EntityMappingModel.entity_type == entity_type.value,
        or_(
            and_(
                EntityMappingModel.source_system == system.value,
                EntityMappingModel.source_id == entity_id,
            ),
            and_(
                EntityMappingModel.target_system == system.value,
                EntityMappingModel.target_id == entity_id,
            ),
        ),
    )


# ── Mapping Repository ──────────────────────────────────────────────────────


class SqlMappingRepository(MappingRepository):
    """Entity Mapping store backed by the ``entity_mappings`` table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def find(
        self, entity_type: EntityType, system: Platform, entity_id: str
    ) -> EntityMapping | None:
        async for session in self._session_factory():
            stmt = select(EntityMappingModel).where(
                _endpoint_clause(entity_type, system, entity_id)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            return _model_to_mapping(model) if model else None

    async def upsert(self, mapping: EntityMapping) -> EntityMapping:
        """Insert or refresh ``mapping``.

        Raises:
            MappingConflictError: Either id is already mapped to a different
                counterpart, checked up front and enforced by unique constraints.
        """
        async for session in self._session_factory():
            source_owner = (
                await session.execute(
                    select(EntityMappingModel).where(
                        _endpoint_clause(
                            mapping.entity_type, mapping.source_system, mapping.source_id
                        )
                    )
                )
            ).scalars().first()
            target_owner = (
                await session.execute(
                    select(EntityMappingModel).where(
                        _endpoint_clause(
                            mapping.entity_type, mapping.target_system, mapping.target_id
                        )
                    )
                )
            ).scalars().first()

            if target_owner is not None and (
                source_owner is None or target_owner.id != source_owner.id
            ):
                msg = (
                    f"{mapping.target_system.value} id '{mapping.target_id}' is already mapped "
                    f"to {target_owner.source_system} id '{target_owner.source_id}'"
                )
                raise MappingConflictError(msg, entity_id=mapping.source_id)

            if source_owner is None:
                model = EntityMappingModel(
                    entity_type=mapping.entity_type.value,
                    source_system=mapping.source_system.value,
                    source_id=mapping.source_id,
                    target_system=mapping.target_system.value,
                    target_id=mapping.target_id,
                    last_synced_at=mapping.last_synced_at,
                )
                session.add(model)
            elif source_owner.source_system == mapping.source_system.value:
                model = source_owner
                model.target_system = mapping.target_system.value
                model.target_id = mapping.target_id
                model.last_synced_at = mapping.last_synced_at
            elif target_owner is not None:
                # Same pair stored the other way round
                model = source_owner
                model.last_synced_at = mapping.last_synced_at
            else:
                msg = (
                    f"{mapping.source_system.value} id '{mapping.source_id}' is already "
                    f"mapped to {source_owner.source_system} id '{source_owner.source_id}'"
                )
                raise MappingConflictError(msg, entity_id=mapping.source_id)

            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                msg = f"Concurrent mapping write for {mapping.source_system.value} id '{mapping.source_id}'"
                raise MappingConflictError(msg, entity_id=mapping.source_id) from exc

            logger.debug(
                "mapping.upserted",
                entity_type=mapping.entity_type.value,
                source_id=mapping.source_id,
                target_id=mapping.target_id,
            )
            return _model_to_mapping(model)

    async def list_mappings(self, entity_type: EntityType) -> list[EntityMapping]:
        async for session in self._session_factory():
            stmt = select(EntityMappingModel).where(
                EntityMappingModel.entity_type == entity_type.value
            )
            result = await session.execute(stmt)
            return [_model_to_mapping(m) for m in result.scalars().all()]


# ── Task Store ──────────────────────────────────────────────────────────────


class SqlTaskStore(TaskStore):
    """Sync Task checkpoints in ``sync_tasks`` and running slots in ``sync_task_slots``.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, task_id: str) -> SyncTask | None:
        async for session in self._session_factory():
            model = await session.get(SyncTaskModel, task_id)
            return _model_to_task(model) if model else None

    async def save(self, task: SyncTask) -> None:
        async for session in self._session_factory():
            model = await session.get(SyncTaskModel, task.id)
            if model is None:
                model = SyncTaskModel(id=task.id)
                session.add(model)
            _apply_task(model, task)
            await session.commit()

    async def list_tasks(self, status: SyncTaskStatus | None = None) -> list[SyncTask]:
        async for session in self._session_factory():
            stmt = select(SyncTaskModel).order_by(SyncTaskModel.created_at.desc())
            if status is not None:
                stmt = stmt.where(SyncTaskModel.status == status.value)
            result = await session.execute(stmt)
            return [_model_to_task(m) for m in result.scalars().all()]

    async def acquire_slot(self, running_key: str, task_id: str) -> bool:
        async for session in self._session_factory():
            slot = await session.get(SyncTaskSlotModel, running_key)
            if slot is not None:
                return slot.task_id == task_id
            session.add(SyncTaskSlotModel(running_key=running_key, task_id=task_id))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("sync.slot_claim_lost", running_key=running_key, task_id=task_id)
                return False
            return True

    async def release_slot(self, running_key: str, task_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(SyncTaskSlotModel).where(
                    SyncTaskSlotModel.running_key == running_key,
                    SyncTaskSlotModel.task_id == task_id,
                )
            )
            await session.commit()

    async def slot_holder(self, running_key: str) -> str | None:
        async for session in self._session_factory():
            slot = await session.get(SyncTaskSlotModel, running_key)
            return slot.task_id if slot else None
