"""In-memory test doubles and builders shared by the test modules.

Provides:
- FakePlatformAdapter: in-memory platform holding orders and inventory,
  recording every call and able to fail chosen operations on demand
- ManualClock: deterministic Clock whose sleeps advance virtual time
- make_order / make_level / webhook_body builders with sensible defaults
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from src.syncbridge.adapters.signatures import (
    HexBodySignature,
    SignatureScheme,
    UrlBodyBase64Signature,
)
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import ValidationError
from src.syncbridge.sync.resilience import Clock
from src.syncbridge.sync.schemas import (
    FulfillmentStatus,
    FulfillmentUpdate,
    InventoryAdjustmentBatch,
    InventoryLevel,
    LineItem,
    Money,
    Order,
    PaymentInfo,
    PaymentStatus,
    PaymentUpdate,
    Platform,
    ShippingInfo,
    SyncFilters,
    WebhookEvent,
)
from src.syncbridge.sync.webhooks import classify_event_type

WEBHOOK_SECRET = "whsec-test"
NOTIFICATION_URL = "https://sync.example.com/api/v1/webhooks/platform_b"

WRITE_OPERATIONS = frozenset(
    {
        "create_order",
        "update_status",
        "update_fulfillment",
        "update_payment",
        "apply_inventory_adjustments",
    }
)


# ── Helpers ────────────────────────────────────────────────────────────────


def make_order(
    order_id: str,
    platform: Platform = Platform.A,
    *,
    fulfillment: FulfillmentStatus = FulfillmentStatus.PENDING,
    payment: PaymentStatus = PaymentStatus.PAID,
    tracking: str | None = None,
    carrier: str | None = None,
    updated_at: datetime | None = None,
    created_at: datetime | None = None,
    with_items: bool = True,
) -> Order:
    """Create a test Order with sensible defaults."""
    stamp = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    items = []
    if with_items:
        items = [
            LineItem(
                id=f"{order_id}-li-1",
                product_id="prod-1",
                sku="SKU-1",
                name="Widget",
                quantity=2,
                unit_price=Money(amount=Decimal("10.00"), currency="usd"),
                total=Money(amount=Decimal("20.00"), currency="usd"),
            )
        ]
    return Order(
        id=order_id,
        platform=platform,
        items=items,
        shipping=ShippingInfo(
            carrier=carrier,
            tracking_number=tracking,
            tracking_url=f"https://track.example.com/{tracking}" if tracking else None,
        ),
        payment=PaymentInfo(
            amount=Money(amount=Decimal("20.00"), currency="USD"),
            transaction_id=f"txn-{order_id}",
        ),
        fulfillment_status=fulfillment,
        payment_status=payment,
        total=Money(amount=Decimal("20.00"), currency="USD") if with_items else None,
        created_at=created_at or stamp,
        updated_at=updated_at or stamp,
    )


def make_level(
    sku: str,
    quantity: int,
    *,
    product_id: str | None = None,
    variant_id: str | None = None,
    location_id: str | None = "loc-1",
) -> InventoryLevel:
    """Create a test InventoryLevel."""
    return InventoryLevel(
        product_id=product_id or f"prod-{sku}",
        variant_id=variant_id,
        sku=sku,
        quantity=quantity,
        location_id=location_id,
    )


def webhook_body(event_id: str, event_type: str, **data: Any) -> bytes:
    """Serialize a webhook delivery in the gateway's JSON shape."""
    return json.dumps({"event_id": event_id, "type": event_type, "data": data}).encode()


# ── Test Doubles ───────────────────────────────────────────────────────────


class ManualClock(Clock):
    """Clock whose time only moves when a caller sleeps or the test advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []
        self._epoch = datetime(2026, 3, 1, tzinfo=timezone.utc)

    def monotonic(self) -> float:
        return self.current

    def now(self) -> datetime:
        return self._epoch + timedelta(seconds=self.current)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakePlatformAdapter(PlatformAdapter):
    """In-memory platform.

    ``fail_on[operation]`` holds exceptions raised (in order) by the next
    calls to that operation; ``calls`` records (operation, id) pairs.
    """

    def __init__(self, platform: Platform, *, signature: SignatureScheme | None = None) -> None:
        self._platform = platform
        self.orders: dict[str, Order] = {}
        self.inventory: list[InventoryLevel] = []
        self.adjustment_batches: list[InventoryAdjustmentBatch] = []
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on: dict[str, list[Exception]] = {}
        self.closed = False
        self._created = 0
        if signature is None:
            if platform is Platform.A:
                signature = HexBodySignature(WEBHOOK_SECRET)
            else:
                signature = UrlBodyBase64Signature(WEBHOOK_SECRET, NOTIFICATION_URL)
        self.signature = signature

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def writes(self) -> list[tuple[str, str | None]]:
        return [call for call in self.calls if call[0] in WRITE_OPERATIONS]

    def add(self, *orders: Order) -> None:
        for order in orders:
            self.orders[order.id] = order.model_copy(deep=True)

    def _record(self, operation: str, entity_id: str | None = None) -> None:
        self.calls.append((operation, entity_id))
        pending = self.fail_on.get(operation)
        if pending:
            raise pending.pop(0)

    async def list_orders(self, filters: SyncFilters | None = None) -> list[Order]:
        self._record("list_orders")
        return [self.orders[key].model_copy(deep=True) for key in sorted(self.orders)]

    async def fetch_order(self, order_id: str) -> Order | None:
        self._record("fetch_order", order_id)
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def create_order(self, order: Order) -> str:
        self._record("create_order", order.id)
        self._created += 1
        new_id = f"{self._platform.value}-new-{self._created}"
        self.orders[new_id] = order.model_copy(
            update={"id": new_id, "platform": self._platform}, deep=True
        )
        return new_id

    async def update_status(self, order_id: str, field: str, value: Any) -> None:
        self._record("update_status", order_id)
        order = self.orders[order_id]
        setattr(order, field, value)

    async def update_fulfillment(self, order_id: str, update: FulfillmentUpdate) -> None:
        self._record("update_fulfillment", order_id)
        order = self.orders[order_id]
        order.fulfillment_status = update.status
        order.shipping = order.shipping.model_copy(
            update={
                "carrier": update.carrier,
                "tracking_number": update.tracking_number,
                "tracking_url": update.tracking_url,
            }
        )

    async def update_payment(self, order_id: str, update: PaymentUpdate) -> None:
        self._record("update_payment", order_id)
        self.orders[order_id].payment_status = update.status

    async def fetch_inventory(self, location_id: str | None = None) -> list[InventoryLevel]:
        self._record("fetch_inventory", location_id)
        return [level.model_copy() for level in self.inventory]

    async def apply_inventory_adjustments(self, batch: InventoryAdjustmentBatch) -> None:
        self._record("apply_inventory_adjustments", batch.idempotency_key)
        self.adjustment_batches.append(batch)
        targets = {adjustment.sku: adjustment.target_quantity for adjustment in batch.adjustments}
        self.inventory = [
            level.model_copy(update={"quantity": targets[level.sku]})
            if level.sku in targets
            else level
            for level in self.inventory
        ]

    def verify_webhook_signature(self, signature: str | None, body: bytes, **context: Any) -> bool:
        return self.signature.verify(signature, body, **context)

    def parse_webhook_event(
        self, body: bytes, headers: Mapping[str, str] | None = None
    ) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            msg = "webhook body is not valid JSON"
            raise ValidationError(msg) from exc
        data = payload.get("data") or {}
        return WebhookEvent(
            webhook_id=payload["event_id"],
            platform=self._platform,
            kind=classify_event_type(self._platform, payload["type"]),
            raw_type=payload["type"],
            entity_id=data.get("order_id"),
            sku=data.get("sku"),
            payload=payload,
        )

    async def aclose(self) -> None:
        self.closed = True
