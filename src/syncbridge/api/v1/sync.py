"""Sync Task endpoints.

Start runs, inspect their progress and partial errors, cancel them, and
resume interrupted ones. Runs execute in the background; POST /sync/runs
returns as soon as the running slot is claimed.
"""

from __future__ import annotations

from datetime import datetime
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.syncbridge.api.deps import get_sync_service
from src.syncbridge.sync.errors import (
    SyncEngineError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
    ValidationError,
)
from src.syncbridge.sync.schemas import (
    ConflictStrategy,
    EntityType,
    PlatformCounts,
    SyncDirection,
    SyncErrorEntry,
    SyncFilters,
    SyncTask,
    SyncTaskStatus,
)
from src.syncbridge.sync.service import SyncService

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request / Response Models ────────────────────────────────────────────────


class StartSyncRequest(BaseModel):
    entity_type: EntityType
    direction: SyncDirection
    conflict_strategy: ConflictStrategy | None = None
    filters: SyncFilters = Field(default_factory=SyncFilters)


class StartSyncResponse(BaseModel):
    task_id: str
    status: SyncTaskStatus


class SyncTaskResponse(BaseModel):
    id: str
    entity_type: EntityType
    direction: SyncDirection
    status: SyncTaskStatus
    conflict_strategy: ConflictStrategy
    filters: SyncFilters
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_entities: int = 0
    processed_count: int = 0
    progress_percent: float = 0.0
    created_count: PlatformCounts
    updated_count: PlatformCounts
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    last_synced_entity_id: str | None = None


class SyncTaskListResponse(BaseModel):
    tasks: list[SyncTaskResponse]
    total: int


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _task_to_response(task: SyncTask) -> SyncTaskResponse:
    percent = 0.0
    if task.total_entities:
        percent = round(min(task.processed_count / task.total_entities, 1.0) * 100, 1)
    return SyncTaskResponse(
        id=task.id,
        entity_type=task.entity_type,
        direction=task.direction,
        status=task.status,
        conflict_strategy=task.conflict_strategy,
        filters=task.filters,
        started_at=task.started_at,
        completed_at=task.completed_at,
        total_entities=task.total_entities,
        processed_count=task.processed_count,
        progress_percent=percent,
        created_count=task.created_count,
        updated_count=task.updated_count,
        skipped_count=task.skipped_count,
        failed_count=task.failed_count,
        errors=task.errors,
        last_synced_entity_id=task.last_synced_entity_id,
    )


def _raise_http(exc: SyncEngineError) -> NoReturn:
    """Map engine failures onto HTTP status codes."""
    if isinstance(exc, TaskNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        # Already running, or not in a resumable state
        code = status.HTTP_409_CONFLICT
    raise HTTPException(status_code=code, detail=str(exc)) from exc


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/runs", response_model=StartSyncResponse, status_code=202)
async def start_sync(
    body: StartSyncRequest,
    service: SyncService = Depends(get_sync_service),
) -> StartSyncResponse:
    """Start a sync run in the background and return its task id."""
    try:
        task_id = await service.run_sync(
            body.entity_type,
            body.direction,
            filters=body.filters,
            conflict_strategy=body.conflict_strategy,
        )
    except (TaskAlreadyRunningError, ValidationError) as exc:
        _raise_http(exc)
    return StartSyncResponse(task_id=task_id, status=SyncTaskStatus.RUNNING)


@router.get("/tasks", response_model=SyncTaskListResponse)
async def list_tasks(
    status_filter: SyncTaskStatus | None = Query(default=None, alias="status"),
    service: SyncService = Depends(get_sync_service),
) -> SyncTaskListResponse:
    """List Sync Tasks, newest first, optionally filtered by status."""
    tasks = await service.list_tasks(status_filter)
    return SyncTaskListResponse(tasks=[_task_to_response(t) for t in tasks], total=len(tasks))


@router.get("/tasks/{task_id}", response_model=SyncTaskResponse)
async def get_task(
    task_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncTaskResponse:
    """Get one Sync Task with its counters and recorded errors."""
    try:
        task = await service.get_task(task_id)
    except TaskNotFoundError as exc:
        _raise_http(exc)
    return _task_to_response(task)


@router.post("/tasks/{task_id}/cancel", response_model=SyncTaskResponse)
async def cancel_task(
    task_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncTaskResponse:
    """Request cancellation; the run stops after its current chunk."""
    try:
        task = await service.cancel(task_id)
    except SyncEngineError as exc:
        _raise_http(exc)
    return _task_to_response(task)


@router.post("/tasks/{task_id}/recover", response_model=SyncTaskResponse, status_code=202)
async def recover_task(
    task_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncTaskResponse:
    """Resume an interrupted task after its last checkpoint."""
    try:
        task = await service.recover(task_id)
    except SyncEngineError as exc:
        _raise_http(exc)
    return _task_to_response(task)
