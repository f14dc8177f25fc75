"""Progress Tracker -- the Sync Task state machine and its checkpoint store.

States: PENDING -> RUNNING -> {COMPLETED, FAILED, INTERRUPTED}.

Every call names its task explicitly; there is no ambient "current task".
Tasks are persisted through a TaskStore after every mutation so another
orchestrator instance can inspect or recover them. The store also owns the
single-running-task slot per (entity_type, direction): claiming it is atomic,
so concurrent start() calls for the same key have exactly one winner.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone

import structlog

from src.syncbridge.sync.errors import (
    NoActiveTaskError,
    SyncEngineError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from src.syncbridge.sync.schemas import (
    TERMINAL_TASK_STATUSES,
    BatchResult,
    ConflictStrategy,
    EntityType,
    SyncDirection,
    SyncFilters,
    SyncTask,
    SyncTaskStatus,
)

logger = structlog.get_logger(__name__)


# ── Store Interface ─────────────────────────────────────────────────────────


class TaskStore(ABC):
    """Persistence for Sync Tasks and the running-slot lock."""

    @abstractmethod
    async def get(self, task_id: str) -> SyncTask | None:
        """Load a task by id."""
        ...

    @abstractmethod
    async def save(self, task: SyncTask) -> None:
        """Persist the full task state."""
        ...

    @abstractmethod
    async def list_tasks(self, status: SyncTaskStatus | None = None) -> list[SyncTask]:
        """List tasks, newest first, optionally filtered by status."""
        ...

    @abstractmethod
    async def acquire_slot(self, running_key: str, task_id: str) -> bool:
        """Atomically claim the running slot. Re-claiming by the holder succeeds."""
        ...

    @abstractmethod
    async def release_slot(self, running_key: str, task_id: str) -> None:
        """Release the slot if ``task_id`` holds it."""
        ...

    @abstractmethod
    async def slot_holder(self, running_key: str) -> str | None:
        """Return the id of the task holding the slot, if any."""
        ...


class InMemoryTaskStore(TaskStore):
    """Process-local task store for tests and single-instance deployments."""

    def __init__(self) -> None:
        self._tasks: dict[str, SyncTask] = {}
        self._slots: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, task_id: str) -> SyncTask | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def save(self, task: SyncTask) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def list_tasks(self, status: SyncTaskStatus | None = None) -> list[SyncTask]:
        tasks = [
            t.model_copy(deep=True)
            for t in self._tasks.values()
            if status is None or t.status is status
        ]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    async def acquire_slot(self, running_key: str, task_id: str) -> bool:
        async with self._lock:
            holder = self._slots.get(running_key)
            if holder is not None and holder != task_id:
                return False
            self._slots[running_key] = task_id
            return True

    async def release_slot(self, running_key: str, task_id: str) -> None:
        async with self._lock:
            if self._slots.get(running_key) == task_id:
                del self._slots[running_key]

    async def slot_holder(self, running_key: str) -> str | None:
        return self._slots.get(running_key)


# ── Tracker ─────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressTracker:
    """Records the lifecycle of sync runs and produces recoverable checkpoints.

    Counter merges for one task are serialized by a per-task lock so
    concurrent workers never lose an increment.

    Args:
        store: TaskStore used for persistence and the running slot.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def start(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        *,
        conflict_strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
        filters: SyncFilters | None = None,
        total_entities: int = 0,
    ) -> SyncTask:
        """Create a task, claim its running slot, and move it to RUNNING.

        Raises:
            TaskAlreadyRunningError: Another task holds the slot for
                (entity_type, direction). No task record is created.
        """
        task = SyncTask(
            entity_type=entity_type,
            direction=direction,
            conflict_strategy=conflict_strategy,
            filters=filters or SyncFilters(),
        )

        if not await self._store.acquire_slot(task.running_key, task.id):
            holder = await self._store.slot_holder(task.running_key)
            logger.warning(
                "sync.task_rejected",
                running_key=task.running_key,
                holder_task_id=holder,
            )
            raise TaskAlreadyRunningError(task.running_key, holder)

        now = _utcnow()
        task.status = SyncTaskStatus.RUNNING
        task.started_at = now
        task.updated_at = now
        task.total_entities = total_entities
        await self._store.save(task)

        logger.info(
            "sync.task_started",
            task_id=task.id,
            entity_type=entity_type.value,
            direction=direction.value,
            conflict_strategy=conflict_strategy.value,
        )
        return task

    async def _running(self, task_id: str) -> SyncTask:
        task = await self._store.get(task_id)
        if task is None or task.status is not SyncTaskStatus.RUNNING:
            msg = f"No running sync task with id {task_id}"
            raise NoActiveTaskError(msg)
        return task

    async def set_total(self, task_id: str, total_entities: int) -> SyncTask:
        """Record how many entities the running task will process."""
        async with self._locks[task_id]:
            task = await self._running(task_id)
            task.total_entities = total_entities
            task.updated_at = _utcnow()
            await self._store.save(task)
            return task

    async def update(self, task_id: str, delta: BatchResult) -> SyncTask:
        """Merge a batch's counters into the running task.

        Counters are added and errors appended, never replaced. The
        checkpoint advances to ``delta.last_entity_id`` when given.

        Raises:
            NoActiveTaskError: The task does not exist or is not RUNNING.
        """
        async with self._locks[task_id]:
            task = await self._running(task_id)
            task.processed_count += delta.processed_count
            task.created_count = task.created_count.merged(delta.created_count)
            task.updated_count = task.updated_count.merged(delta.updated_count)
            task.skipped_count += delta.skipped_count
            task.failed_count += delta.failed_count
            task.errors = [*task.errors, *delta.errors]
            if delta.last_entity_id is not None:
                task.last_synced_entity_id = delta.last_entity_id
            task.updated_at = _utcnow()
            await self._store.save(task)

        if task.total_entities:
            percent = int(task.processed_count * 100 / task.total_entities)
            logger.info(
                "sync.task_progress",
                task_id=task_id,
                percent=min(percent, 100),
                processed=task.processed_count,
                total=task.total_entities,
                failed=task.failed_count,
            )
        return task

    async def complete(self, task_id: str, status: SyncTaskStatus) -> SyncTask:
        """Stamp the terminal status, persist it, and free the running slot.

        Raises:
            ValueError: ``status`` is not terminal.
            NoActiveTaskError: The task does not exist or is not RUNNING.
        """
        if status not in TERMINAL_TASK_STATUSES:
            msg = f"complete() requires a terminal status, got {status.value}"
            raise ValueError(msg)

        async with self._locks[task_id]:
            task = await self._running(task_id)
            now = _utcnow()
            task.status = status
            task.completed_at = now
            task.updated_at = now
            await self._store.save(task)
            await self._store.release_slot(task.running_key, task.id)

        duration = (task.completed_at - task.started_at).total_seconds() if task.started_at else 0.0
        logger.info(
            "sync.task_completed",
            task_id=task_id,
            status=status.value,
            duration_seconds=round(duration, 3),
            processed=task.processed_count,
            total=task.total_entities,
            created=task.created_count.model_dump(),
            updated=task.updated_count.model_dump(),
            skipped=task.skipped_count,
            failed=task.failed_count,
        )
        self._locks.pop(task_id, None)
        return task

    async def get(self, task_id: str) -> SyncTask:
        """Return the latest persisted state of a task, even while RUNNING."""
        task = await self._store.get(task_id)
        if task is None:
            msg = f"Sync task {task_id} not found"
            raise TaskNotFoundError(msg)
        return task

    async def list_tasks(self, status: SyncTaskStatus | None = None) -> list[SyncTask]:
        return await self._store.list_tasks(status)

    async def recover(self, task_id: str) -> SyncTask | None:
        """Load a task and report whether it can be resumed.

        Returns:
            The task if it was INTERRUPTED or never reached a terminal state,
            otherwise None.

        Raises:
            TaskNotFoundError: No task with ``task_id`` was persisted.
        """
        task = await self.get(task_id)
        if task.status is SyncTaskStatus.INTERRUPTED or not task.is_terminal:
            logger.info(
                "sync.task_recoverable",
                task_id=task_id,
                status=task.status.value,
                resume_after=task.last_synced_entity_id,
            )
            return task

        logger.info("sync.task_not_recoverable", task_id=task_id, status=task.status.value)
        return None

    async def resume(self, task_id: str) -> SyncTask:
        """Move a recoverable task back to RUNNING, keeping its counters.

        Raises:
            TaskNotFoundError: Unknown task.
            SyncEngineError: The task finished COMPLETED or FAILED.
            TaskAlreadyRunningError: A different task holds the slot.
        """
        task = await self.recover(task_id)
        if task is None:
            msg = f"Sync task {task_id} is not resumable"
            raise SyncEngineError(msg)

        if not await self._store.acquire_slot(task.running_key, task.id):
            holder = await self._store.slot_holder(task.running_key)
            raise TaskAlreadyRunningError(task.running_key, holder)

        async with self._locks[task_id]:
            task.status = SyncTaskStatus.RUNNING
            task.completed_at = None
            task.updated_at = _utcnow()
            if task.started_at is None:
                task.started_at = task.updated_at
            await self._store.save(task)

        logger.info(
            "sync.task_resumed",
            task_id=task_id,
            resume_after=task.last_synced_entity_id,
            processed=task.processed_count,
        )
        return task
