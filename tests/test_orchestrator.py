"""Tests for the batch orchestrator and the per-entity sync primitive.

Uses two FakePlatformAdapters and the in-memory stores -- no network or
database. Write counts are read from the fakes' call logs.
"""

from __future__ import annotations

import asyncio

import pytest

from src.syncbridge.sync.errors import ConflictWriteError, NotFoundError, TransientError, ValidationError
from src.syncbridge.sync.orchestrator import SyncOrchestrator, checkpoint_key, outcome_status
from src.syncbridge.sync.schemas import (
    ConflictStrategy,
    EntityMapping,
    EntityType,
    FulfillmentStatus,
    PaymentStatus,
    Platform,
    SyncAction,
    SyncDirection,
    SyncFilters,
    SyncTask,
    SyncTaskStatus,
)
from tests.fakes import make_order


async def _map(mappings, a_id: str, b_id: str) -> None:
    await mappings.upsert(
        EntityMapping(
            entity_type=EntityType.ORDER,
            source_system=Platform.A,
            source_id=a_id,
            target_system=Platform.B,
            target_id=b_id,
        )
    )


# ── Create Path ────────────────────────────────────────────────────────────


class TestCreate:
    """Unmapped entities are validated, created on the target, and mapped."""

    async def test_unmapped_order_created_on_target(self, orchestrator, adapter_a, adapter_b, mappings):
        order = make_order("A1")
        adapter_a.add(order)

        result = await orchestrator.sync_entity(order, SyncDirection.A_TO_B)

        assert result.action is SyncAction.CREATED
        assert result.created_on is Platform.B
        assert result.target_id in adapter_b.orders
        mapping = await mappings.find(EntityType.ORDER, Platform.A, "A1")
        assert mapping.target_id == result.target_id
        assert adapter_a.writes == []

    async def test_b_to_a_creates_on_platform_a(self, orchestrator, adapter_a, mappings):
        order = make_order("B7", Platform.B)

        result = await orchestrator.sync_entity(order, SyncDirection.B_TO_A)

        assert result.created_on is Platform.A
        assert adapter_a.writes == [("create_order", "B7")]
        assert await mappings.find(EntityType.ORDER, Platform.B, "B7") is not None

    async def test_invalid_order_not_created(self, orchestrator, adapter_b, mappings):
        """An order with no items and no total fails validation before any write."""
        order = make_order("A1", with_items=False)

        with pytest.raises(ValidationError, match="no line items"):
            await orchestrator.sync_entity(order, SyncDirection.A_TO_B)

        assert adapter_b.writes == []
        assert await mappings.find(EntityType.ORDER, Platform.A, "A1") is None

    async def test_source_must_match_direction(self, orchestrator):
        with pytest.raises(ValueError, match="cannot be synced"):
            await orchestrator.sync_entity(make_order("B1", Platform.B), SyncDirection.A_TO_B)


# ── Update Path ────────────────────────────────────────────────────────────


class TestConverge:
    """Mapped entities converge with the minimal writes."""

    async def test_shipped_with_tracking_propagates(self, orchestrator, adapter_a, adapter_b, mappings):
        """A1 SHIPPED with tracking, B1 PENDING: one fulfillment write on B1."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED, tracking="1Z999", carrier="UPS")
        b1 = make_order("B1", Platform.B, fulfillment=FulfillmentStatus.PENDING)
        adapter_a.add(a1)
        adapter_b.add(b1)
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert result.action is SyncAction.UPDATED
        assert result.updated_on == [Platform.B]
        assert adapter_b.writes == [("update_fulfillment", "B1")]
        assert adapter_a.writes == []
        stored = adapter_b.orders["B1"]
        assert stored.fulfillment_status is FulfillmentStatus.SHIPPED
        assert stored.shipping.tracking_number == "1Z999"
        assert stored.shipping.carrier == "UPS"

    async def test_second_pass_writes_nothing(self, orchestrator, adapter_a, adapter_b, mappings):
        """Running the same sync twice is idempotent."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED, tracking="1Z999")
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")

        await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)
        writes_after_first = len(adapter_b.writes)
        second = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert second.action is SyncAction.UNCHANGED
        assert len(adapter_b.writes) == writes_after_first

    async def test_status_only_change_uses_update_status(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.PROCESSING)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")

        await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert adapter_b.writes == [("update_status", "B1")]
        assert adapter_b.orders["B1"].fulfillment_status is FulfillmentStatus.PROCESSING

    async def test_one_way_never_writes_source(self, orchestrator, adapter_a, adapter_b, mappings):
        """B ahead of A during an A->B run: nothing is written anywhere."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.PENDING)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B, fulfillment=FulfillmentStatus.SHIPPED, tracking="T1"))
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert result.action is SyncAction.UNCHANGED
        assert adapter_a.writes == []
        assert adapter_b.writes == []

    async def test_one_way_keeps_tracking_of_winning_target(self, orchestrator, adapter_a, adapter_b, mappings):
        """B DELIVERED with its own tracking beats A SHIPPED: B keeps T-B."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED, tracking="T-A")
        adapter_a.add(a1)
        adapter_b.add(
            make_order("B1", Platform.B, fulfillment=FulfillmentStatus.DELIVERED, tracking="T-B")
        )
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert result.action is SyncAction.UNCHANGED
        assert adapter_b.writes == []
        assert adapter_b.orders["B1"].shipping.tracking_number == "T-B"

    async def test_one_way_winning_source_replaces_tracking(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.DELIVERED, tracking="T-A")
        adapter_a.add(a1)
        adapter_b.add(
            make_order("B1", Platform.B, fulfillment=FulfillmentStatus.SHIPPED, tracking="T-B")
        )
        await _map(mappings, "A1", "B1")

        await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert adapter_b.writes == [("update_fulfillment", "B1")]
        stored = adapter_b.orders["B1"]
        assert stored.fulfillment_status is FulfillmentStatus.DELIVERED
        assert stored.shipping.tracking_number == "T-A"

    async def test_bidirectional_updates_losing_side(self, orchestrator, adapter_a, adapter_b, mappings):
        """B ahead of A in a bidirectional sync: A is converged, tracking included."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.PENDING)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B, fulfillment=FulfillmentStatus.SHIPPED, tracking="T1"))
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.BIDIRECTIONAL)

        assert result.updated_on == [Platform.A]
        assert adapter_a.writes == [("update_fulfillment", "A1")]
        assert adapter_a.orders["A1"].fulfillment_status is FulfillmentStatus.SHIPPED
        assert adapter_a.orders["A1"].shipping.tracking_number == "T1"

    async def test_refund_propagates(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", payment=PaymentStatus.REFUNDED)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B, payment=PaymentStatus.PAID))
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert result.updated_fields == ["payment_status"]
        assert adapter_b.writes == [("update_payment", "B1")]
        assert adapter_b.orders["B1"].payment_status is PaymentStatus.REFUNDED

    async def test_skip_strategy_leaves_contested_entity(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(
            a1, SyncDirection.A_TO_B, strategy=ConflictStrategy.SKIP
        )

        assert result.action is SyncAction.SKIPPED
        assert adapter_b.writes == []

    async def test_platform_a_wins_overrides_priority(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.PROCESSING)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B, fulfillment=FulfillmentStatus.DELIVERED))
        await _map(mappings, "A1", "B1")

        await orchestrator.sync_entity(
            a1, SyncDirection.A_TO_B, strategy=ConflictStrategy.PLATFORM_A_WINS
        )

        assert adapter_b.orders["B1"].fulfillment_status is FulfillmentStatus.PROCESSING

    async def test_fields_restrict_the_diff(self, orchestrator, adapter_a, adapter_b, mappings):
        """A payment-scoped sync ignores a fulfillment difference."""
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED, payment=PaymentStatus.REFUNDED)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")

        await orchestrator.sync_entity(a1, SyncDirection.A_TO_B, fields=("payment_status",))

        assert adapter_b.writes == [("update_payment", "B1")]
        assert adapter_b.orders["B1"].fulfillment_status is FulfillmentStatus.PENDING

    async def test_skip_existing_does_not_fetch_target(self, orchestrator, adapter_a, adapter_b, mappings):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.SHIPPED)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B, skip_existing=True)

        assert result.action is SyncAction.SKIPPED
        assert adapter_b.calls == []

    async def test_missing_counterpart_is_not_found(self, orchestrator, mappings):
        await _map(mappings, "A1", "B404")

        with pytest.raises(NotFoundError, match="no longer exists"):
            await orchestrator.sync_entity(make_order("A1"), SyncDirection.A_TO_B)

    async def test_conflict_write_retried_once_with_fresh_state(
        self, orchestrator, adapter_a, adapter_b, mappings
    ):
        a1 = make_order("A1", fulfillment=FulfillmentStatus.PROCESSING)
        adapter_a.add(a1)
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")
        adapter_b.fail_on["update_status"] = [ConflictWriteError("etag mismatch")]

        result = await orchestrator.sync_entity(a1, SyncDirection.A_TO_B)

        assert result.action is SyncAction.UPDATED
        assert ("fetch_order", "A1") in adapter_a.calls
        assert adapter_b.writes == [("update_status", "B1"), ("update_status", "B1")]


# ── Batches and Runs ───────────────────────────────────────────────────────


class TestRun:
    """Chunked runs with checkpoints, failure isolation, and cancellation."""

    async def test_run_creates_everything(self, orchestrator, tracker, adapter_a, adapter_b):
        adapter_a.add(*(make_order(f"A{n}") for n in range(1, 6)))
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        done = await orchestrator.run(task)

        assert done.status is SyncTaskStatus.COMPLETED
        assert done.total_entities == 5
        assert done.processed_count == 5
        assert done.created_count.platform_b == 5
        assert done.last_synced_entity_id == "A5"
        assert len(adapter_b.orders) == 5

    async def test_second_run_makes_zero_writes(self, orchestrator, tracker, adapter_a, adapter_b):
        adapter_a.add(*(make_order(f"A{n}", fulfillment=FulfillmentStatus.SHIPPED) for n in range(1, 4)))
        first = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)
        await orchestrator.run(first)
        writes = len(adapter_b.writes)

        second = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)
        done = await orchestrator.run(second)

        assert len(adapter_b.writes) == writes
        assert done.created_count.total == 0
        assert done.updated_count.total == 0
        assert done.processed_count == 3

    async def test_failures_are_isolated_and_recorded(self, orchestrator, tracker, adapter_a, adapter_b):
        """One invalid order among five: four created, one error, task FAILED (20% > 10%)."""
        adapter_a.add(*(make_order(f"A{n}") for n in range(1, 6)))
        adapter_a.add(make_order("A3", with_items=False))
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        done = await orchestrator.run(task)

        assert done.status is SyncTaskStatus.FAILED
        assert done.created_count.platform_b == 4
        assert done.failed_count == 1
        assert done.errors[0].entity_id == "A3"
        assert done.errors[0].error_type == "ValidationError"

    async def test_failures_within_tolerance_complete(self, adapters, mappings, tracker, adapter_a):
        orchestrator = SyncOrchestrator(adapters, mappings, tracker, failure_tolerance=0.25)
        adapter_a.add(*(make_order(f"A{n}") for n in range(1, 6)))
        adapter_a.add(make_order("A3", with_items=False))
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        done = await orchestrator.run(task)

        assert done.status is SyncTaskStatus.COMPLETED
        assert done.failed_count == 1

    async def test_listing_failure_fails_task(self, orchestrator, tracker, adapter_a):
        adapter_a.fail_on["list_orders"] = [TransientError("gateway down")]
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        done = await orchestrator.run(task)

        assert done.status is SyncTaskStatus.FAILED
        assert done.errors[0].error_type == "TransientError"

    async def test_cancel_between_chunks(self, orchestrator, tracker, adapter_a, adapter_b):
        """Cancelling during the first chunk stops the run after it, INTERRUPTED."""
        adapter_a.add(*(make_order(f"A{n}") for n in range(1, 6)))
        cancel = asyncio.Event()
        original = adapter_b.create_order

        async def create_and_cancel(order):
            if order.id == "A2":
                cancel.set()
            return await original(order)

        adapter_b.create_order = create_and_cancel
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)

        done = await orchestrator.run(task, cancel)

        assert done.status is SyncTaskStatus.INTERRUPTED
        assert done.processed_count == 2
        assert done.last_synced_entity_id == "A2"

    async def test_resumed_task_continues_after_checkpoint(self, orchestrator, tracker, adapter_a, adapter_b):
        """Interrupted after A1..A2; the resumed run only processes A3..A5."""
        orders = [make_order(f"A{n}") for n in range(1, 6)]
        adapter_a.add(*orders)
        task = await tracker.start(EntityType.ORDER, SyncDirection.A_TO_B)
        await orchestrator.process_batch(task.id, orders[:2], SyncDirection.A_TO_B)
        await tracker.complete(task.id, SyncTaskStatus.INTERRUPTED)

        resumed = await tracker.resume(task.id)
        done = await orchestrator.run(resumed)

        created = [entity_id for op, entity_id in adapter_b.calls if op == "create_order"]
        assert created == ["A1", "A2", "A3", "A4", "A5"]
        assert done.status is SyncTaskStatus.COMPLETED
        assert done.processed_count == 5
        assert done.total_entities == 5
        assert done.created_count.platform_b == 5

    async def test_bidirectional_run_creates_both_ways(self, orchestrator, tracker, adapter_a, adapter_b):
        adapter_a.add(make_order("A1"))
        adapter_b.add(make_order("B9", Platform.B))
        task = await tracker.start(EntityType.ORDER, SyncDirection.BIDIRECTIONAL)

        done = await orchestrator.run(task)

        assert done.created_count.platform_a == 1
        assert done.created_count.platform_b == 1
        assert done.last_synced_entity_id == "platform_b:B9"

    async def test_bidirectional_pair_converges(self, orchestrator, tracker, adapter_a, adapter_b, mappings):
        adapter_a.add(make_order("A1", fulfillment=FulfillmentStatus.SHIPPED, tracking="T1"))
        adapter_b.add(make_order("B1", Platform.B))
        await _map(mappings, "A1", "B1")
        task = await tracker.start(EntityType.ORDER, SyncDirection.BIDIRECTIONAL)

        await orchestrator.run(task)

        assert adapter_a.writes == []
        assert adapter_b.orders["B1"].fulfillment_status is FulfillmentStatus.SHIPPED
        assert adapter_b.orders["B1"].shipping.tracking_number == "T1"

    async def test_filters_narrow_listing(self, orchestrator, tracker, adapter_a, adapter_b):
        adapter_a.add(
            make_order("A1", fulfillment=FulfillmentStatus.SHIPPED),
            make_order("A2", fulfillment=FulfillmentStatus.PENDING),
        )
        task = await tracker.start(
            EntityType.ORDER,
            SyncDirection.A_TO_B,
            filters=SyncFilters(fulfillment_statuses=[FulfillmentStatus.SHIPPED]),
        )

        done = await orchestrator.run(task)

        assert done.processed_count == 1
        assert [e for op, e in adapter_b.calls if op == "create_order"] == ["A1"]


# ── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_checkpoint_key_prefixes_bidirectional(self):
        order = make_order("A1")
        assert checkpoint_key(order, SyncDirection.A_TO_B) == "A1"
        assert checkpoint_key(order, SyncDirection.BIDIRECTIONAL) == "platform_a:A1"

    def test_outcome_status_thresholds(self):
        task = SyncTask(entity_type=EntityType.ORDER, direction=SyncDirection.A_TO_B)
        task.processed_count = 20
        task.failed_count = 1
        assert outcome_status(task, 0.1) is SyncTaskStatus.COMPLETED
        task.failed_count = 2
        assert outcome_status(task, 0.1) is SyncTaskStatus.FAILED

    def test_requires_both_adapters(self, adapter_a, mappings, tracker):
        with pytest.raises(ValueError, match="Missing adapters"):
            SyncOrchestrator({Platform.A: adapter_a}, mappings, tracker)
