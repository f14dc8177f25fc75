"""FastAPI dependencies for the sync engine surface."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.syncbridge.sync.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """Retrieve the SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return service
