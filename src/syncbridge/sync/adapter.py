"""Platform adapter abstract base class -- the only way the engine talks to a platform.

Each platform (A: product sourcing / orders, B: point of sale / commerce)
implements this ABC. Adapters translate between platform-native payloads and
the canonical schemas in ``src.syncbridge.sync.schemas`` and classify every
failure into the taxonomy in ``src.syncbridge.sync.errors``; the engine never
inspects a platform-native response or error shape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from src.syncbridge.sync.schemas import (
    FulfillmentUpdate,
    InventoryAdjustmentBatch,
    InventoryLevel,
    Order,
    PaymentUpdate,
    Platform,
    SyncFilters,
    WebhookEvent,
)


class PlatformAdapter(ABC):
    """Abstract interface for one platform's order, inventory, and webhook capabilities.

    Methods:
        list_orders: List canonical orders, optionally pre-filtered.
        fetch_order: Fetch one order by this platform's id (None if absent).
        create_order: Create an order, return this platform's new id.
        update_status: Set a single status field on an order.
        update_fulfillment: Push fulfillment status plus tracking details.
        update_payment: Push payment status details.
        fetch_inventory: Current inventory levels, optionally for one location.
        apply_inventory_adjustments: Apply one idempotent adjustment batch.
        verify_webhook_signature: Check an inbound webhook's signature.
        parse_webhook_event: Turn a verified webhook body into a WebhookEvent.
    """

    @property
    @abstractmethod
    def platform(self) -> Platform:
        """Which platform this adapter talks to."""
        ...

    @abstractmethod
    async def list_orders(self, filters: SyncFilters | None = None) -> list[Order]:
        """List orders on this platform."""
        ...

    @abstractmethod
    async def fetch_order(self, order_id: str) -> Order | None:
        """Fetch an order by id, or None when it does not exist."""
        ...

    @abstractmethod
    async def create_order(self, order: Order) -> str:
        """Create ``order`` on this platform, return the new id."""
        ...

    @abstractmethod
    async def update_status(self, order_id: str, field: str, value: Any) -> None:
        """Set ``field`` ("fulfillment_status" or "payment_status") to ``value``."""
        ...

    @abstractmethod
    async def update_fulfillment(self, order_id: str, update: FulfillmentUpdate) -> None:
        """Apply a fulfillment change including tracking details."""
        ...

    @abstractmethod
    async def update_payment(self, order_id: str, update: PaymentUpdate) -> None:
        """Apply a payment change."""
        ...

    @abstractmethod
    async def fetch_inventory(self, location_id: str | None = None) -> list[InventoryLevel]:
        """Return inventory levels, optionally scoped to one location."""
        ...

    @abstractmethod
    async def apply_inventory_adjustments(self, batch: InventoryAdjustmentBatch) -> None:
        """Apply every adjustment in ``batch``; the batch's key makes retries safe."""
        ...

    @abstractmethod
    def verify_webhook_signature(
        self, signature: str | None, body: bytes, **context: Any
    ) -> bool:
        """Return True if ``signature`` is valid for ``body`` under this platform's scheme."""
        ...

    @abstractmethod
    def parse_webhook_event(
        self, body: bytes, headers: Mapping[str, str] | None = None
    ) -> WebhookEvent:
        """Parse a webhook body into a WebhookEvent with a closed event kind."""
        ...

    async def aclose(self) -> None:
        """Release connections held by the adapter."""
        return None
