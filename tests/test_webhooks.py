"""Tests for webhook ingestion: signatures, the idempotency fence, and dispatch."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.syncbridge.sync.errors import TransientError, ValidationError, WebhookSignatureError
from src.syncbridge.sync.schemas import (
    EntityMapping,
    EntityType,
    FulfillmentStatus,
    PaymentStatus,
    Platform,
    SyncAction,
    WebhookEventKind,
    WebhookEventRecord,
)
from src.syncbridge.sync.webhooks import (
    InMemoryEventFence,
    RedisEventFence,
    WebhookIngestor,
    classify_event_type,
)
from tests.fakes import make_level, make_order, webhook_body


@pytest.fixture
def fence(clock) -> InMemoryEventFence:
    return InMemoryEventFence(ttl_seconds=3600, clock=clock)


@pytest.fixture
def ingestor(adapters, orchestrator, fence, reconciler) -> WebhookIngestor:
    return WebhookIngestor(adapters, orchestrator, fence, reconciler)


async def _deliver(ingestor, adapter, body: bytes):
    return await ingestor.ingest(adapter.platform, body, adapter.signature.sign(body))


# ── Classification ─────────────────────────────────────────────────────────


class TestClassifyEventType:
    def test_platform_specific_names(self):
        assert classify_event_type(Platform.A, "order.status.updated") is WebhookEventKind.FULFILLMENT_UPDATED
        assert classify_event_type(Platform.B, "inventory.count.updated") is WebhookEventKind.INVENTORY_UPDATED
        assert classify_event_type(Platform.B, "order.payment.updated") is WebhookEventKind.PAYMENT_UPDATED

    def test_unknown_type_is_unsupported(self):
        assert classify_event_type(Platform.A, "customer.created") is WebhookEventKind.UNSUPPORTED
        assert classify_event_type(Platform.A, "inventory.count.updated") is WebhookEventKind.UNSUPPORTED


# ── Ingestion ──────────────────────────────────────────────────────────────


class TestIngest:
    async def test_new_order_event_creates_counterpart(self, ingestor, adapter_a, adapter_b):
        adapter_a.add(make_order("A1"))

        result = await _deliver(ingestor, adapter_a, webhook_body("evt-1", "order.created", order_id="A1"))

        assert result.is_new is True
        assert result.action is SyncAction.CREATED
        assert adapter_b.writes == [("create_order", "A1")]

    async def test_duplicate_delivery_triggers_nothing(self, ingestor, adapter_a, adapter_b):
        adapter_a.add(make_order("A1"))
        body = webhook_body("evt-1", "order.created", order_id="A1")

        await _deliver(ingestor, adapter_a, body)
        second = await _deliver(ingestor, adapter_a, body)

        assert second.is_new is False
        assert second.accepted is True
        assert len(adapter_b.writes) == 1

    async def test_same_id_from_other_platform_is_distinct(self, ingestor, adapter_a, adapter_b):
        adapter_a.add(make_order("A1"))
        adapter_b.add(make_order("B1", Platform.B))

        await _deliver(ingestor, adapter_a, webhook_body("evt-1", "order.created", order_id="A1"))
        result = await _deliver(ingestor, adapter_b, webhook_body("evt-1", "order.created", order_id="B1"))

        assert result.is_new is True

    async def test_bad_signature_rejected_before_side_effects(self, ingestor, adapter_a, fence):
        body = webhook_body("evt-1", "order.created", order_id="A1")

        with pytest.raises(WebhookSignatureError):
            await ingestor.ingest(Platform.A, body, "sha256=deadbeef")

        assert adapter_a.calls == []
        assert await fence.check_and_set(Platform.A, WebhookEventRecord(webhook_id="evt-1", event_type="x"))

    async def test_missing_signature_rejected(self, ingestor):
        with pytest.raises(WebhookSignatureError):
            await ingestor.ingest(Platform.A, webhook_body("evt-1", "order.created"), None)

    async def test_unparseable_body_is_validation_error(self, ingestor, adapter_a):
        body = b"not json"
        with pytest.raises(ValidationError):
            await _deliver(ingestor, adapter_a, body)

    async def test_fulfillment_event_only_touches_fulfillment(
        self, ingestor, adapter_a, adapter_b, mappings
    ):
        adapter_a.add(
            make_order(
                "A1",
                fulfillment=FulfillmentStatus.SHIPPED,
                payment=PaymentStatus.REFUNDED,
                tracking="1Z1",
            )
        )
        adapter_b.add(make_order("B1", Platform.B))
        await mappings.upsert(
            EntityMapping(
                entity_type=EntityType.ORDER,
                source_system=Platform.A,
                source_id="A1",
                target_system=Platform.B,
                target_id="B1",
            )
        )

        result = await _deliver(
            ingestor, adapter_a, webhook_body("evt-2", "order.status.updated", order_id="A1")
        )

        assert result.kind is WebhookEventKind.FULFILLMENT_UPDATED
        assert adapter_b.writes == [("update_fulfillment", "B1")]
        assert adapter_b.orders["B1"].payment_status is PaymentStatus.PAID

    async def test_unsupported_event_acknowledged(self, ingestor, adapter_a, adapter_b):
        result = await _deliver(ingestor, adapter_a, webhook_body("evt-3", "customer.created"))

        assert result.kind is WebhookEventKind.UNSUPPORTED
        assert result.action is None
        assert adapter_b.calls == []

    async def test_vanished_entity_acknowledged(self, ingestor, adapter_a):
        result = await _deliver(ingestor, adapter_a, webhook_body("evt-4", "order.updated", order_id="gone"))

        assert result.is_new is True
        assert result.action is None

    async def test_missing_entity_id_acknowledged(self, ingestor, adapter_a):
        result = await _deliver(ingestor, adapter_a, webhook_body("evt-5", "order.updated"))
        assert result.action is None

    async def test_inventory_event_syncs_single_sku(self, ingestor, adapter_a, adapter_b):
        adapter_a.inventory = [make_level("SKU-1", 100), make_level("SKU-2", 9)]
        adapter_b.inventory = [make_level("SKU-1", 98), make_level("SKU-2", 1)]

        result = await _deliver(ingestor, adapter_a, webhook_body("evt-6", "inventory.updated", sku="SKU-1"))

        assert result.action is SyncAction.UPDATED
        [adjustment] = adapter_b.adjustment_batches[0].adjustments
        assert adjustment.sku == "SKU-1"

    async def test_failure_releases_fence_for_redelivery(self, ingestor, adapter_a, adapter_b):
        adapter_a.add(make_order("A1"))
        adapter_b.fail_on["create_order"] = [TransientError("platform down")]
        body = webhook_body("evt-7", "order.created", order_id="A1")

        with pytest.raises(TransientError):
            await _deliver(ingestor, adapter_a, body)
        retry = await _deliver(ingestor, adapter_a, body)

        assert retry.is_new is True
        assert retry.action is SyncAction.CREATED

    async def test_platform_b_signature_uses_notification_url(
        self, adapters, orchestrator, fence, adapter_b
    ):
        url = "https://other.example.com/hooks/b"
        ingestor = WebhookIngestor(
            adapters,
            orchestrator,
            fence,
            signature_context={Platform.B: {"notification_url": url}},
        )
        body = webhook_body("evt-8", "customer.updated")

        with pytest.raises(WebhookSignatureError):
            await ingestor.ingest(Platform.B, body, adapter_b.signature.sign(body))
        result = await ingestor.ingest(
            Platform.B, body, adapter_b.signature.sign(body, notification_url=url)
        )
        assert result.accepted is True


# ── Fences ─────────────────────────────────────────────────────────────────


class TestInMemoryEventFence:
    async def test_entry_expires_after_ttl(self, fence, clock):
        record = WebhookEventRecord(webhook_id="evt-1", event_type="order.created")

        assert await fence.check_and_set(Platform.A, record) is True
        assert await fence.check_and_set(Platform.A, record) is False
        clock.advance(3601)
        assert await fence.check_and_set(Platform.A, record) is True


class TestRedisEventFence:
    async def test_set_nx_with_ttl(self):
        client = AsyncMock()
        client.set.side_effect = [True, None]
        fence = RedisEventFence(client, ttl_seconds=60)
        record = WebhookEventRecord(webhook_id="evt-1", event_type="order.created")

        assert await fence.check_and_set(Platform.B, record) is True
        assert await fence.check_and_set(Platform.B, record) is False

        key, value = client.set.call_args.args
        assert key == "syncbridge:webhook:platform_b:evt-1"
        assert "evt-1" in value
        assert client.set.call_args.kwargs == {"nx": True, "ex": 60}

    async def test_release_deletes_key(self):
        client = AsyncMock()
        fence = RedisEventFence(client)

        await fence.release(Platform.A, "evt-9")

        client.delete.assert_awaited_once_with("syncbridge:webhook:platform_a:evt-9")
