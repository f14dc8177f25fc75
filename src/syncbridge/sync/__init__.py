"""Synchronization engine keeping orders and inventory converged across two platforms.

Provides the entity mapping store, status conflict resolution, the batch
orchestrator, the Sync Task progress tracker, webhook ingestion with an
idempotency fence, the inventory reconciler, and the rate-limit/retry
discipline applied to every outbound platform call.

Exports:
    Platform, EntityType, SyncDirection: Enums naming sides and run shapes.
    Order, SyncTask, EntityMapping: Core canonical and engine-state schemas.
    SyncEngineError: Root of the engine's error taxonomy.
    resolve_fulfillment, resolve_payment: Pure status conflict resolvers.
    SyncService: Facade exposing run_sync, get_task, ingest_webhook,
        and reconcile_inventory.
    create_sync_service: Builds a SyncService from Settings.
"""

from __future__ import annotations

from src.syncbridge.sync.conflict import resolve_fulfillment, resolve_payment
from src.syncbridge.sync.errors import SyncEngineError
from src.syncbridge.sync.schemas import (
    EntityMapping,
    EntityType,
    Order,
    Platform,
    SyncDirection,
    SyncTask,
)

__all__ = [
    "EntityMapping",
    "EntityType",
    "Order",
    "Platform",
    "SyncDirection",
    "SyncEngineError",
    "SyncService",
    "SyncTask",
    "create_sync_service",
    "resolve_fulfillment",
    "resolve_payment",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the service to avoid circular imports with the adapters."""
    if name == "SyncService":
        from src.syncbridge.sync.service import SyncService

        return SyncService
    if name == "create_sync_service":
        from src.syncbridge.sync.service import create_sync_service

        return create_sync_service
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
