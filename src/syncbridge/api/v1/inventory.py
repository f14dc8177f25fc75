"""Inventory reconciliation endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.syncbridge.api.deps import get_sync_service
from src.syncbridge.sync.errors import SyncEngineError
from src.syncbridge.sync.schemas import InventoryComparison, SyncErrorEntry
from src.syncbridge.sync.service import SyncService

router = APIRouter(prefix="/inventory", tags=["inventory"])


class ReconcileRequest(BaseModel):
    location_id: str | None = None
    explicit: bool = False


class ReconcileResponse(BaseModel):
    success: bool
    reconciled: int = 0
    skipped: int = 0
    discrepancies: list[InventoryComparison] = Field(default_factory=list)
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    idempotency_keys: list[str] = Field(default_factory=list)


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_inventory(
    body: ReconcileRequest,
    service: SyncService = Depends(get_sync_service),
) -> ReconcileResponse:
    """Reconcile one location; ``explicit`` pushes every non-zero discrepancy."""
    try:
        result = await service.reconcile_inventory(body.location_id, explicit=body.explicit)
    except SyncEngineError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    return ReconcileResponse(
        success=result.success,
        reconciled=result.reconciled,
        skipped=result.skipped,
        discrepancies=result.discrepancies,
        errors=result.errors,
        idempotency_keys=result.idempotency_keys,
    )
