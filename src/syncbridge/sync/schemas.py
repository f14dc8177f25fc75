"""Pydantic schemas for the synchronization engine -- canonical entities, mappings, tasks.

Defines all structured types shared by the engine components:
- Enums: Platform, EntityType, SyncDirection, FulfillmentStatus, PaymentStatus,
  SyncTaskStatus, ConflictStrategy, SyncAction, WebhookEventKind
- Canonical order: Money, Address, Customer, LineItem, ShippingInfo, PaymentInfo, Order
- Update payloads: FulfillmentUpdate, PaymentUpdate
- Engine state: EntityMapping, SyncErrorEntry, PlatformCounts, SyncFilters, SyncTask
- Results: EntitySyncResult, BatchResult
- Inventory: InventoryLevel, InventoryAdjustment, InventoryAdjustmentBatch,
  InventoryComparison, ReconcileResult
- Webhooks: WebhookEvent, WebhookEventRecord, IngestResult

Platform adapters produce and consume these shapes; the engine never sees
platform-native payloads.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class Platform(str, Enum):
    """The two systems of record kept in sync.

    Platform A is the product-sourcing/order platform, Platform B the
    point-of-sale/commerce platform.
    """

    A = "platform_a"
    B = "platform_b"

    @property
    def other(self) -> Platform:
        """Return the opposite platform."""
        return Platform.B if self is Platform.A else Platform.A


class EntityType(str, Enum):
    """Entity kinds the engine synchronizes."""

    ORDER = "order"
    INVENTORY = "inventory"


class SyncDirection(str, Enum):
    """Direction of a sync run."""

    A_TO_B = "a_to_b"
    B_TO_A = "b_to_a"
    BIDIRECTIONAL = "bidirectional"

    @classmethod
    def from_source(cls, source: Platform) -> SyncDirection:
        """One-way direction whose source is ``source``."""
        return cls.A_TO_B if source is Platform.A else cls.B_TO_A

    @property
    def sources(self) -> tuple[Platform, ...]:
        """Platforms whose entities are listed as sync sources."""
        if self is SyncDirection.A_TO_B:
            return (Platform.A,)
        if self is SyncDirection.B_TO_A:
            return (Platform.B,)
        return (Platform.A, Platform.B)


class FulfillmentStatus(str, Enum):
    """Fulfillment lifecycle.

    PENDING < PROCESSING < SHIPPED < DELIVERED are ordered; CANCELLED and
    FAILED are terminal and unordered.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Payment lifecycle.

    PENDING < AUTHORIZED < PAID < PARTIALLY_REFUNDED < REFUNDED are ordered;
    FAILED and VOIDED are terminal and unordered.
    """

    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"
    VOIDED = "voided"


class SyncTaskStatus(str, Enum):
    """Sync Task lifecycle: PENDING -> RUNNING -> {COMPLETED, FAILED, INTERRUPTED}."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_TASK_STATUSES = frozenset(
    {SyncTaskStatus.COMPLETED, SyncTaskStatus.FAILED, SyncTaskStatus.INTERRUPTED}
)


class ConflictStrategy(str, Enum):
    """How a contested status field is decided for a task."""

    STATUS_PRIORITY = "status_priority"
    PLATFORM_A_WINS = "platform_a_wins"
    PLATFORM_B_WINS = "platform_b_wins"
    NEWEST_WINS = "newest_wins"
    SKIP = "skip"


class SyncAction(str, Enum):
    """Outcome of one entity's sync."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class WebhookEventKind(str, Enum):
    """Closed set of webhook event kinds the engine reacts to.

    Adapters translate their native event type strings into one of these;
    anything they do not recognise becomes UNSUPPORTED.
    """

    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"
    FULFILLMENT_UPDATED = "fulfillment_updated"
    PAYMENT_UPDATED = "payment_updated"
    INVENTORY_UPDATED = "inventory_updated"
    UNSUPPORTED = "unsupported"


# ── Canonical Order ─────────────────────────────────────────────────────────


class Money(BaseModel):
    """Monetary amount with ISO-4217 currency (never a bare float)."""

    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class Address(BaseModel):
    address_line1: str
    address_line2: str | None = None
    city: str
    state: str | None = None
    postal_code: str
    country: str


class Customer(BaseModel):
    id: str | None = None
    first_name: str
    last_name: str
    email: str
    phone: str | None = None


class LineItem(BaseModel):
    id: str
    product_id: str
    variant_id: str | None = None
    sku: str
    name: str
    quantity: int = Field(ge=1)
    unit_price: Money
    total: Money


class ShippingInfo(BaseModel):
    """Shipping block: destination plus carrier tracking."""

    address: Address | None = None
    method: str | None = None
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    cost: Money | None = None


class PaymentInfo(BaseModel):
    id: str | None = None
    amount: Money
    method: str | None = None
    transaction_id: str | None = None
    refunded_amount: Money | None = None


class Order(BaseModel):
    """Platform-agnostic order.

    ``id`` is the id on the platform named by ``platform``; the engine keeps
    cross-platform correspondence in EntityMapping rather than on the order.
    """

    id: str
    platform: Platform
    order_number: str | None = None
    customer: Customer | None = None
    items: list[LineItem] = Field(default_factory=list)
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    payment: PaymentInfo | None = None
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    subtotal: Money | None = None
    total: Money | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class FulfillmentUpdate(BaseModel):
    """Fulfillment change pushed to a platform."""

    status: FulfillmentStatus
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None


class PaymentUpdate(BaseModel):
    """Payment change pushed to a platform."""

    status: PaymentStatus
    amount: Money | None = None
    transaction_id: str | None = None


# ── Engine State ────────────────────────────────────────────────────────────


class EntityMapping(BaseModel):
    """Correspondence between an entity's id on the source and target platform."""

    entity_type: EntityType
    source_system: Platform
    source_id: str
    target_system: Platform
    target_id: str
    last_synced_at: datetime = Field(default_factory=_utcnow)

    def id_on(self, platform: Platform) -> str:
        """Return this entity's id on ``platform``."""
        if platform is self.source_system:
            return self.source_id
        return self.target_id

    def matches(self, system: Platform, entity_id: str) -> bool:
        """True if (system, entity_id) is either end of this mapping."""
        return (self.source_system is system and self.source_id == entity_id) or (
            self.target_system is system and self.target_id == entity_id
        )


class SyncErrorEntry(BaseModel):
    """One failed entity recorded against a Sync Task."""

    entity_id: str | None = None
    message: str
    source_system: Platform | None = None
    error_type: str = "SyncEngineError"
    occurred_at: datetime = Field(default_factory=_utcnow)


class PlatformCounts(BaseModel):
    """Counter split by the platform the write landed on."""

    platform_a: int = 0
    platform_b: int = 0

    def get(self, platform: Platform) -> int:
        return self.platform_a if platform is Platform.A else self.platform_b

    def increment(self, platform: Platform, amount: int = 1) -> None:
        if platform is Platform.A:
            self.platform_a += amount
        else:
            self.platform_b += amount

    def merged(self, other: PlatformCounts) -> PlatformCounts:
        return PlatformCounts(
            platform_a=self.platform_a + other.platform_a,
            platform_b=self.platform_b + other.platform_b,
        )

    @property
    def total(self) -> int:
        return self.platform_a + self.platform_b


class SyncFilters(BaseModel):
    """Optional narrowing of the entities a run lists from the source."""

    created_after: datetime | None = None
    created_before: datetime | None = None
    fulfillment_statuses: list[FulfillmentStatus] = Field(default_factory=list)
    payment_statuses: list[PaymentStatus] = Field(default_factory=list)
    skip_existing: bool = False
    location_id: str | None = None

    def accepts(self, order: Order) -> bool:
        """True if ``order`` passes every configured filter."""
        if self.created_after and order.created_at < self.created_after:
            return False
        if self.created_before and order.created_at > self.created_before:
            return False
        if self.fulfillment_statuses and order.fulfillment_status not in self.fulfillment_statuses:
            return False
        if self.payment_statuses and order.payment_status not in self.payment_statuses:
            return False
        return True


class SyncTask(BaseModel):
    """One run of the orchestrator with its own lifecycle and counters."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    entity_type: EntityType
    direction: SyncDirection
    status: SyncTaskStatus = SyncTaskStatus.PENDING
    conflict_strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY
    filters: SyncFilters = Field(default_factory=SyncFilters)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_entities: int = 0
    processed_count: int = 0
    created_count: PlatformCounts = Field(default_factory=PlatformCounts)
    updated_count: PlatformCounts = Field(default_factory=PlatformCounts)
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    last_synced_entity_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def running_key(self) -> str:
        """Key of the single-running-task slot this task competes for."""
        return f"{self.entity_type.value}:{self.direction.value}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def failure_rate(self) -> float:
        if self.processed_count == 0:
            return 0.0
        return self.failed_count / self.processed_count


# ── Results ─────────────────────────────────────────────────────────────────


class EntitySyncResult(BaseModel):
    """Outcome of the per-entity sync primitive."""

    entity_id: str
    source_system: Platform
    action: SyncAction
    target_id: str | None = None
    created_on: Platform | None = None
    updated_on: list[Platform] = Field(default_factory=list)
    updated_fields: list[str] = Field(default_factory=list)


class BatchResult(BaseModel):
    """Aggregate counters for one batch, merged into the task by the tracker."""

    synced_count: int = 0
    created_count: PlatformCounts = Field(default_factory=PlatformCounts)
    updated_count: PlatformCounts = Field(default_factory=PlatformCounts)
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    last_entity_id: str | None = None

    @property
    def processed_count(self) -> int:
        return self.synced_count + self.failed_count

    def record(self, result: EntitySyncResult) -> None:
        """Fold one successful entity result into the counters."""
        self.synced_count += 1
        if result.action is SyncAction.CREATED and result.created_on is not None:
            self.created_count.increment(result.created_on)
        elif result.action is SyncAction.UPDATED:
            for platform in result.updated_on:
                self.updated_count.increment(platform)
        elif result.action is SyncAction.SKIPPED:
            self.skipped_count += 1

    def record_error(self, entry: SyncErrorEntry) -> None:
        self.failed_count += 1
        self.errors.append(entry)


# ── Inventory ───────────────────────────────────────────────────────────────


class InventoryLevel(BaseModel):
    """Quantity on hand for one SKU on one platform."""

    product_id: str
    variant_id: str | None = None
    sku: str
    quantity: int
    location_id: str | None = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def entity_id(self) -> str:
        return self.variant_id or self.product_id


class InventoryAdjustment(BaseModel):
    """Signed quantity change for one SKU."""

    product_id: str
    variant_id: str | None = None
    sku: str
    quantity_delta: int
    target_quantity: int
    reason: str = "sync"
    location_id: str | None = None
    reference_id: str | None = None


class InventoryAdjustmentBatch(BaseModel):
    """Adjustments submitted to one platform in a single idempotent call."""

    adjustments: list[InventoryAdjustment]
    idempotency_key: str = Field(default_factory=lambda: str(uuid.uuid4()))
    location_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class InventoryComparison(BaseModel):
    """SKU-keyed comparison of both platforms' quantities.

    ``discrepancy`` is ``quantity_b - quantity_a``.
    """

    sku: str
    quantity_a: int | None = None
    quantity_b: int | None = None
    discrepancy: int = 0
    threshold: float = 0
    requires_sync: bool = False
    level_a: InventoryLevel | None = None
    level_b: InventoryLevel | None = None


class ReconcileResult(BaseModel):
    """Outcome of an inventory reconciliation or explicit inventory sync."""

    reconciled: int = 0
    skipped: int = 0
    discrepancies: list[InventoryComparison] = Field(default_factory=list)
    errors: list[SyncErrorEntry] = Field(default_factory=list)
    idempotency_keys: list[str] = Field(default_factory=list)
    interrupted: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


# ── Webhooks ────────────────────────────────────────────────────────────────


class WebhookEvent(BaseModel):
    """Adapter-parsed inbound event, reduced to what the engine needs."""

    webhook_id: str
    platform: Platform
    kind: WebhookEventKind
    raw_type: str
    entity_id: str | None = None
    sku: str | None = None
    received_at: datetime = Field(default_factory=_utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEventRecord(BaseModel):
    """Deduplication fence entry for one delivered webhook."""

    webhook_id: str
    event_type: str
    received_at: datetime = Field(default_factory=_utcnow)


class IngestResult(BaseModel):
    """Response of webhook ingestion."""

    accepted: bool
    is_new: bool
    kind: WebhookEventKind | None = None
    entity_id: str | None = None
    action: SyncAction | None = None
