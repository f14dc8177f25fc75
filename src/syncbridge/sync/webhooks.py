"""Webhook ingestion -- verified, deduplicated, single-entity sync triggers.

Processing order for one delivery:
1. Verify the signature with the originating platform's scheme. A bad
   signature raises WebhookSignatureError before any side effect.
2. Parse the body into a WebhookEvent with a closed ``WebhookEventKind``.
3. Check-and-set the idempotency fence on (platform, webhook_id). A repeated
   delivery returns ``is_new=False`` and triggers nothing.
4. Dispatch on the event kind. Order events fetch the entity from the
   originating platform and run the same per-entity primitive as batch runs;
   inventory events re-sync the single SKU. If the dispatched sync fails the
   fence entry is released so the platform's redelivery can retry it.

Unsupported kinds, missing entity ids, and entities that no longer exist are
logged and acknowledged, never treated as failures.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.syncbridge.core.monitoring import record_webhook
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import NotFoundError, WebhookSignatureError
from src.syncbridge.sync.inventory import InventoryReconciler
from src.syncbridge.sync.orchestrator import SyncOrchestrator
from src.syncbridge.sync.resilience import Clock, SystemClock
from src.syncbridge.sync.schemas import (
    ConflictStrategy,
    IngestResult,
    Platform,
    SyncAction,
    SyncDirection,
    WebhookEvent,
    WebhookEventKind,
    WebhookEventRecord,
)

logger = structlog.get_logger(__name__)

# Native event type strings per platform, translated by the adapters.
NATIVE_EVENT_TYPES: dict[Platform, dict[str, WebhookEventKind]] = {
    Platform.A: {
        "order.created": WebhookEventKind.ORDER_CREATED,
        "order.updated": WebhookEventKind.ORDER_UPDATED,
        "order.status.updated": WebhookEventKind.FULFILLMENT_UPDATED,
        "order.fulfillment.updated": WebhookEventKind.FULFILLMENT_UPDATED,
        "payment.updated": WebhookEventKind.PAYMENT_UPDATED,
        "inventory.updated": WebhookEventKind.INVENTORY_UPDATED,
    },
    Platform.B: {
        "order.created": WebhookEventKind.ORDER_CREATED,
        "order.updated": WebhookEventKind.ORDER_UPDATED,
        "order.fulfillment.updated": WebhookEventKind.FULFILLMENT_UPDATED,
        "payment.updated": WebhookEventKind.PAYMENT_UPDATED,
        "order.payment.updated": WebhookEventKind.PAYMENT_UPDATED,
        "inventory.count.updated": WebhookEventKind.INVENTORY_UPDATED,
    },
}


def classify_event_type(platform: Platform, raw_type: str) -> WebhookEventKind:
    """Map a platform-native event type onto the closed kind set."""
    return NATIVE_EVENT_TYPES[platform].get(raw_type, WebhookEventKind.UNSUPPORTED)


# ── Idempotency Fence ───────────────────────────────────────────────────────


class EventFence(ABC):
    """Deduplication fence for delivered webhooks with a bounded retention window."""

    @abstractmethod
    async def check_and_set(self, platform: Platform, record: WebhookEventRecord) -> bool:
        """Atomically record the event; True if it was not seen before."""
        ...

    @abstractmethod
    async def release(self, platform: Platform, webhook_id: str) -> None:
        """Forget an event so a redelivery is processed again."""
        ...


def _fence_key(platform: Platform, webhook_id: str) -> str:
    return f"{platform.value}:{webhook_id}"


class InMemoryEventFence(EventFence):
    """Process-local fence; entries expire ``ttl_seconds`` after being set."""

    def __init__(self, ttl_seconds: int = 72 * 3600, clock: Clock | None = None) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock or SystemClock()
        self._expires: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def check_and_set(self, platform: Platform, record: WebhookEventRecord) -> bool:
        key = _fence_key(platform, record.webhook_id)
        async with self._lock:
            now = self._clock.monotonic()
            expires_at = self._expires.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires[key] = now + self.ttl_seconds
            return True

    async def release(self, platform: Platform, webhook_id: str) -> None:
        async with self._lock:
            self._expires.pop(_fence_key(platform, webhook_id), None)


class RedisEventFence(EventFence):
    """Redis fence using ``SET NX EX`` so concurrent deliveries have one winner."""

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 72 * 3600,
        key_prefix: str = "syncbridge:webhook",
    ) -> None:
        self._client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, platform: Platform, webhook_id: str) -> str:
        return f"{self.key_prefix}:{_fence_key(platform, webhook_id)}"

    async def check_and_set(self, platform: Platform, record: WebhookEventRecord) -> bool:
        created = await self._client.set(
            self._key(platform, record.webhook_id),
            record.model_dump_json(),
            nx=True,
            ex=self.ttl_seconds,
        )
        return bool(created)

    async def release(self, platform: Platform, webhook_id: str) -> None:
        await self._client.delete(self._key(platform, webhook_id))


# ── Ingestor ────────────────────────────────────────────────────────────────

Handler = Callable[[WebhookEvent], Awaitable[SyncAction | None]]


class WebhookIngestor:
    """Verifies, deduplicates, and dispatches inbound webhooks.

    Args:
        adapters: One (guarded) PlatformAdapter per platform.
        orchestrator: Runs the per-entity sync primitive.
        fence: Idempotency fence.
        inventory: Reconciler for inventory events; None ignores them.
        strategy: Conflict strategy applied to webhook-driven syncs.
        signature_context: Extra keyword arguments per platform for
            ``verify_webhook_signature`` (e.g. the notification URL).
    """

    def __init__(
        self,
        adapters: Mapping[Platform, PlatformAdapter],
        orchestrator: SyncOrchestrator,
        fence: EventFence,
        inventory: InventoryReconciler | None = None,
        *,
        strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
        signature_context: Mapping[Platform, Mapping[str, Any]] | None = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._orchestrator = orchestrator
        self._fence = fence
        self._inventory = inventory
        self.strategy = strategy
        self._signature_context = dict(signature_context or {})

        self._handlers: dict[WebhookEventKind, Handler] = {
            WebhookEventKind.ORDER_CREATED: self._sync_order,
            WebhookEventKind.ORDER_UPDATED: self._sync_order,
            WebhookEventKind.FULFILLMENT_UPDATED: self._sync_fulfillment,
            WebhookEventKind.PAYMENT_UPDATED: self._sync_payment,
            WebhookEventKind.INVENTORY_UPDATED: self._sync_inventory,
            WebhookEventKind.UNSUPPORTED: self._ignore,
        }
        unhandled = set(WebhookEventKind) - set(self._handlers)
        if unhandled:
            msg = f"No webhook handler for {sorted(k.value for k in unhandled)}"
            raise TypeError(msg)

    async def ingest(
        self,
        platform: Platform,
        body: bytes,
        signature: str | None,
        headers: Mapping[str, str] | None = None,
    ) -> IngestResult:
        """Process one webhook delivery from ``platform``.

        Raises:
            WebhookSignatureError: The signature is missing or invalid.
            ValidationError: The body cannot be parsed into an event.
            SyncEngineError: The dispatched sync failed; the fence is released.
        """
        adapter = self._adapters[platform]
        context = self._signature_context.get(platform, {})
        if not adapter.verify_webhook_signature(signature, body, **context):
            logger.warning("webhook.invalid_signature", platform=platform.value)
            record_webhook(platform.value, "unknown", "invalid_signature")
            msg = f"Invalid {platform.value} webhook signature"
            raise WebhookSignatureError(msg)

        event = adapter.parse_webhook_event(body, headers)
        record = WebhookEventRecord(webhook_id=event.webhook_id, event_type=event.raw_type)
        if not await self._fence.check_and_set(platform, record):
            logger.info(
                "webhook.duplicate",
                platform=platform.value,
                webhook_id=event.webhook_id,
                event_type=event.raw_type,
            )
            record_webhook(platform.value, event.kind.value, "duplicate")
            return IngestResult(
                accepted=True, is_new=False, kind=event.kind, entity_id=event.entity_id
            )

        logger.info(
            "webhook.received",
            platform=platform.value,
            webhook_id=event.webhook_id,
            event_type=event.raw_type,
            kind=event.kind.value,
            entity_id=event.entity_id,
        )
        try:
            action = await self._handlers[event.kind](event)
        except Exception:
            await self._fence.release(platform, event.webhook_id)
            record_webhook(platform.value, event.kind.value, "failed")
            logger.exception(
                "webhook.processing_failed",
                platform=platform.value,
                webhook_id=event.webhook_id,
            )
            raise

        record_webhook(platform.value, event.kind.value, "processed")
        return IngestResult(
            accepted=True,
            is_new=True,
            kind=event.kind,
            entity_id=event.entity_id,
            action=action,
        )

    async def _sync_order(
        self, event: WebhookEvent, fields: tuple[str, ...] | None = None
    ) -> SyncAction | None:
        if not event.entity_id:
            logger.warning("webhook.missing_entity_id", webhook_id=event.webhook_id)
            return None

        try:
            order = await self._adapters[event.platform].fetch_order(event.entity_id)
        except NotFoundError:
            order = None
        if order is None:
            logger.warning(
                "webhook.entity_not_found",
                platform=event.platform.value,
                entity_id=event.entity_id,
            )
            return None

        result = await self._orchestrator.sync_entity(
            order,
            SyncDirection.from_source(event.platform),
            strategy=self.strategy,
            fields=fields,
        )
        return result.action

    async def _sync_fulfillment(self, event: WebhookEvent) -> SyncAction | None:
        return await self._sync_order(event, ("fulfillment_status", "tracking"))

    async def _sync_payment(self, event: WebhookEvent) -> SyncAction | None:
        return await self._sync_order(event, ("payment_status",))

    async def _sync_inventory(self, event: WebhookEvent) -> SyncAction | None:
        if self._inventory is None:
            logger.info("webhook.inventory_ignored", webhook_id=event.webhook_id)
            return None
        if not event.sku:
            logger.warning("webhook.missing_sku", webhook_id=event.webhook_id)
            return None
        return await self._inventory.sync_sku(event.sku)

    async def _ignore(self, event: WebhookEvent) -> SyncAction | None:
        logger.info(
            "webhook.unsupported_event",
            platform=event.platform.value,
            event_type=event.raw_type,
        )
        return None
