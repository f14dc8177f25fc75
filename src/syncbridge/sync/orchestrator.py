"""Batch orchestrator -- decides create vs. update per entity and converges both platforms.

Per-entity primitive (``sync_entity``), shared by batch runs and webhooks:
1. Look up the Entity Mapping by the source-side id.
2. No mapping: validate, create in the target, record the mapping.
3. Mapping exists: fetch the target, diff fulfillment status, payment status,
   and tracking; resolve each contested status with the task's strategy and
   issue only the writes needed to converge the losing side.

Batch runs (``run``) list source entities, sort them by id, and process them
in chunks with bounded worker parallelism. Each chunk is merged into the Sync
Task and checkpointed before the next starts, so a resumed task continues
strictly after ``last_synced_entity_id``. Per-entity failures are recorded on
the task and never abort the run.
"""

from __future__ import annotations

import asyncio
from collections.abc import Collection, Mapping
from datetime import datetime, timezone

import structlog

from src.syncbridge.core.monitoring import record_entity_outcome
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.conflict import resolve_field, resolve_fulfillment
from src.syncbridge.sync.errors import (
    ConflictWriteError,
    NotFoundError,
    SyncEngineError,
    ValidationError,
)
from src.syncbridge.sync.mapping import MappingRepository
from src.syncbridge.sync.progress import ProgressTracker
from src.syncbridge.sync.schemas import (
    BatchResult,
    ConflictStrategy,
    EntityMapping,
    EntitySyncResult,
    EntityType,
    FulfillmentUpdate,
    Order,
    PaymentUpdate,
    Platform,
    SyncAction,
    SyncDirection,
    SyncErrorEntry,
    SyncTask,
    SyncTaskStatus,
)

logger = structlog.get_logger(__name__)

STATUS_FIELDS = ("fulfillment_status", "payment_status")
TRACKING_FIELD = "tracking"
SYNCABLE_FIELDS = frozenset({*STATUS_FIELDS, TRACKING_FIELD})


def outcome_status(task: SyncTask, failure_tolerance: float) -> SyncTaskStatus:
    """Terminal status for a finished run: COMPLETED unless failures exceed the tolerance."""
    if task.failed_count == 0 or task.failure_rate < failure_tolerance:
        return SyncTaskStatus.COMPLETED
    return SyncTaskStatus.FAILED


def checkpoint_key(order: Order, direction: SyncDirection) -> str:
    """Sort and checkpoint key of an entity within a run.

    One-way runs use the plain source id. Bidirectional runs list from both
    platforms, so the key is prefixed with the platform to stay unique.
    """
    if direction is SyncDirection.BIDIRECTIONAL:
        return f"{order.platform.value}:{order.id}"
    return order.id


def _tracking(order: Order) -> tuple[str | None, str | None, str | None]:
    shipping = order.shipping
    return (shipping.tracking_number, shipping.carrier, shipping.tracking_url)


def _validate_for_create(order: Order) -> None:
    if not order.items:
        msg = f"Order {order.id} has no line items"
        raise ValidationError(msg, entity_id=order.id)
    if order.total is None:
        msg = f"Order {order.id} has no order total"
        raise ValidationError(msg, entity_id=order.id)


class SyncOrchestrator:
    """Runs the per-entity sync primitive over batches of canonical orders.

    Args:
        adapters: One (guarded) PlatformAdapter per platform.
        mappings: Entity Mapping store.
        tracker: Progress Tracker that owns the Sync Task state.
        batch_size: Entities per checkpointed chunk.
        max_workers: Entities processed concurrently within a chunk.
        failure_tolerance: Failure rate below which a run still COMPLETES.
        tie_side: Platform that wins status ties.
    """

    def __init__(
        self,
        adapters: Mapping[Platform, PlatformAdapter],
        mappings: MappingRepository,
        tracker: ProgressTracker,
        *,
        batch_size: int = 10,
        max_workers: int = 5,
        failure_tolerance: float = 0.1,
        tie_side: Platform = Platform.A,
    ) -> None:
        missing = {Platform.A, Platform.B} - set(adapters)
        if missing:
            msg = f"Missing adapters for {sorted(p.value for p in missing)}"
            raise ValueError(msg)
        self._adapters = dict(adapters)
        self._mappings = mappings
        self._tracker = tracker
        self.batch_size = max(batch_size, 1)
        self.max_workers = max(max_workers, 1)
        self.failure_tolerance = failure_tolerance
        self.tie_side = tie_side

    # ── Per-entity primitive ────────────────────────────────────────────

    async def sync_entity(
        self,
        entity: Order,
        direction: SyncDirection,
        *,
        strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
        fields: Collection[str] | None = None,
        skip_existing: bool = False,
    ) -> EntitySyncResult:
        """Converge one order held by ``entity.platform`` with its counterpart.

        Args:
            entity: Current canonical state on the source platform.
            direction: A_TO_B, B_TO_A, or BIDIRECTIONAL. One-way directions
                never write to the source platform.
            strategy: Conflict strategy for contested status fields.
            fields: Restrict the diff to these fields ("fulfillment_status",
                "payment_status", "tracking"); None means all.
            skip_existing: Skip already-mapped entities without fetching the target.

        Raises:
            SyncEngineError: Any classified failure; batch callers record it.
        """
        source = entity.platform
        if entity.platform not in direction.sources:
            msg = f"Order {entity.id} from {source.value} cannot be synced {direction.value}"
            raise ValueError(msg)
        if fields is not None and not set(fields) <= SYNCABLE_FIELDS:
            msg = f"Unknown sync fields: {sorted(set(fields) - SYNCABLE_FIELDS)}"
            raise ValueError(msg)

        target = source.other
        mapping = await self._mappings.find(EntityType.ORDER, source, entity.id)
        if mapping is None:
            return await self._create(entity, target)

        if skip_existing:
            logger.debug("sync.entity_skipped_existing", entity_id=entity.id)
            return EntitySyncResult(
                entity_id=entity.id,
                source_system=source,
                action=SyncAction.SKIPPED,
                target_id=mapping.id_on(target),
            )

        bidirectional = direction is SyncDirection.BIDIRECTIONAL
        try:
            return await self._converge(entity, mapping, strategy, fields, bidirectional)
        except ConflictWriteError:
            logger.info("sync.write_conflict_retry", entity_id=entity.id, source=source.value)
            fresh = await self._adapters[source].fetch_order(entity.id)
            if fresh is None:
                msg = f"Source order {entity.id} disappeared during sync"
                raise NotFoundError(msg, entity_id=entity.id) from None
            return await self._converge(fresh, mapping, strategy, fields, bidirectional)

    async def _create(self, entity: Order, target: Platform) -> EntitySyncResult:
        _validate_for_create(entity)
        target_id = await self._adapters[target].create_order(entity)
        await self._mappings.upsert(
            EntityMapping(
                entity_type=EntityType.ORDER,
                source_system=entity.platform,
                source_id=entity.id,
                target_system=target,
                target_id=target_id,
            )
        )
        logger.info(
            "sync.entity_created",
            entity_id=entity.id,
            source=entity.platform.value,
            target=target.value,
            target_id=target_id,
        )
        return EntitySyncResult(
            entity_id=entity.id,
            source_system=entity.platform,
            action=SyncAction.CREATED,
            target_id=target_id,
            created_on=target,
        )

    async def _converge(
        self,
        entity: Order,
        mapping: EntityMapping,
        strategy: ConflictStrategy,
        fields: Collection[str] | None,
        bidirectional: bool,
    ) -> EntitySyncResult:
        source = entity.platform
        target = source.other
        target_id = mapping.id_on(target)

        counterpart = await self._adapters[target].fetch_order(target_id)
        if counterpart is None:
            msg = f"Mapped {target.value} order {target_id} for {entity.id} no longer exists"
            raise NotFoundError(msg, entity_id=entity.id)

        orders = {source: entity, target: counterpart}
        writes, contested_skipped = self._plan(orders, source, strategy, fields, bidirectional)

        for platform, changes in writes.items():
            await self._apply(platform, orders, changes)

        await self._mappings.upsert(
            mapping.model_copy(update={"last_synced_at": datetime.now(timezone.utc)})
        )

        updated_fields = sorted({f for changes in writes.values() for f in changes})
        if writes:
            action = SyncAction.UPDATED
        elif contested_skipped:
            action = SyncAction.SKIPPED
        else:
            action = SyncAction.UNCHANGED

        logger.info(
            "sync.entity_converged",
            entity_id=entity.id,
            target_id=target_id,
            action=action.value,
            updated_on=[p.value for p in writes],
            fields=updated_fields,
        )
        return EntitySyncResult(
            entity_id=entity.id,
            source_system=source,
            action=action,
            target_id=target_id,
            updated_on=[p for p in (Platform.A, Platform.B) if p in writes],
            updated_fields=updated_fields,
        )

    def _plan(
        self,
        orders: dict[Platform, Order],
        source: Platform,
        strategy: ConflictStrategy,
        fields: Collection[str] | None,
        bidirectional: bool,
    ) -> tuple[dict[Platform, dict[str, object]], bool]:
        """Work out which fields to write on which platform.

        Returns:
            (writes keyed by platform then field, whether a contested field
            was left alone because the strategy is SKIP).
        """
        target = source.other
        a, b = orders[Platform.A], orders[Platform.B]
        writes: dict[Platform, dict[str, object]] = {}
        contested_skipped = False

        for field in STATUS_FIELDS:
            if fields is not None and field not in fields:
                continue
            value_a, value_b = getattr(a, field), getattr(b, field)
            if value_a == value_b:
                continue
            resolution = resolve_field(
                field,
                value_a,
                value_b,
                strategy=strategy,
                tie_side=self.tie_side,
                a_updated_at=a.updated_at,
                b_updated_at=b.updated_at,
            )
            if resolution is None:
                contested_skipped = True
                continue
            loser = resolution.side.other
            if loser is target or bidirectional:
                writes.setdefault(loser, {})[field] = resolution.value
                logger.debug(
                    "sync.field_resolved",
                    field=field,
                    winner=resolution.side.value,
                    value=resolution.value.value,
                )

        if (fields is None or TRACKING_FIELD in fields) and _tracking(a) != _tracking(b):
            tracking_target = self._tracking_target(orders, source, bidirectional)
            if tracking_target is not None:
                writes.setdefault(tracking_target, {})[TRACKING_FIELD] = _tracking(
                    orders[tracking_target.other]
                )

        return writes, contested_skipped

    def _tracking_target(
        self, orders: dict[Platform, Order], source: Platform, bidirectional: bool
    ) -> Platform | None:
        """Side whose tracking should be overwritten, or None to leave both alone.

        Tracking flows from the side that has a tracking number. When both
        have different numbers, the side with the winning fulfillment status
        keeps its tracking, in one-way and bidirectional runs alike. One-way
        runs never write the source, and a status tie goes to the source.
        """
        target = source.other
        has_source = orders[source].shipping.tracking_number is not None
        has_target = orders[target].shipping.tracking_number is not None

        if has_source and not has_target:
            return target
        if not has_source:
            return source if bidirectional and has_target else None
        winner = resolve_fulfillment(
            orders[Platform.A].fulfillment_status,
            orders[Platform.B].fulfillment_status,
            self.tie_side if bidirectional else source,
        ).side
        if winner is target and not bidirectional:
            return None
        return winner.other

    async def _apply(
        self,
        platform: Platform,
        orders: dict[Platform, Order],
        changes: dict[str, object],
    ) -> None:
        """Issue the minimal adapter calls converging ``platform`` to ``changes``."""
        adapter = self._adapters[platform]
        current = orders[platform]
        other = orders[platform.other]

        if TRACKING_FIELD in changes:
            tracking_number, carrier, tracking_url = changes[TRACKING_FIELD]
            await adapter.update_fulfillment(
                current.id,
                FulfillmentUpdate(
                    status=changes.get("fulfillment_status", current.fulfillment_status),
                    carrier=carrier,
                    tracking_number=tracking_number,
                    tracking_url=tracking_url,
                ),
            )
        elif "fulfillment_status" in changes:
            await adapter.update_status(
                current.id, "fulfillment_status", changes["fulfillment_status"]
            )

        if "payment_status" in changes:
            payment = other.payment
            await adapter.update_payment(
                current.id,
                PaymentUpdate(
                    status=changes["payment_status"],
                    amount=payment.amount if payment else None,
                    transaction_id=payment.transaction_id if payment else None,
                ),
            )

    # ── Batches ─────────────────────────────────────────────────────────

    async def process_batch(
        self,
        task_id: str | None,
        entities: list[Order],
        direction: SyncDirection,
        *,
        strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
        skip_existing: bool = False,
    ) -> BatchResult:
        """Sync every entity concurrently (bounded) and aggregate the results.

        One entity's failure is recorded and never aborts the others. When
        ``task_id`` is given the result is merged into that task, advancing
        its checkpoint to the last entity of the batch.
        """
        semaphore = asyncio.Semaphore(self.max_workers)

        async def run_one(entity: Order) -> EntitySyncResult | SyncErrorEntry:
            async with semaphore:
                try:
                    return await self.sync_entity(
                        entity, direction, strategy=strategy, skip_existing=skip_existing
                    )
                except Exception as exc:
                    logger.error(
                        "sync.entity_failed",
                        entity_id=entity.id,
                        source=entity.platform.value,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return SyncErrorEntry(
                        entity_id=entity.id,
                        message=str(exc),
                        source_system=entity.platform,
                        error_type=type(exc).__name__,
                    )

        outcomes = await asyncio.gather(*(run_one(entity) for entity in entities))

        batch = BatchResult()
        for entity, outcome in zip(entities, outcomes):
            if isinstance(outcome, SyncErrorEntry):
                batch.record_error(outcome)
                record_entity_outcome(entity.platform.value, "failed")
            else:
                batch.record(outcome)
                record_entity_outcome(entity.platform.value, outcome.action.value)
        if entities:
            batch.last_entity_id = checkpoint_key(entities[-1], direction)

        if task_id is not None:
            await self._tracker.update(task_id, batch)
        return batch

    async def _collect(self, task: SyncTask) -> list[Order]:
        """List, filter, and order the entities a task still has to process."""
        entities: list[Order] = []
        for platform in task.direction.sources:
            listed = await self._adapters[platform].list_orders(task.filters)
            entities.extend(order for order in listed if task.filters.accepts(order))

        entities.sort(key=lambda order: checkpoint_key(order, task.direction))
        if task.last_synced_entity_id is not None:
            entities = [
                order
                for order in entities
                if checkpoint_key(order, task.direction) > task.last_synced_entity_id
            ]
        return entities

    async def run(self, task: SyncTask, cancel_event: asyncio.Event | None = None) -> SyncTask:
        """Execute a RUNNING order task to a terminal state.

        Resumed tasks keep their counters and only process entities after the
        checkpoint. Setting ``cancel_event`` stops the run between chunks and
        leaves the task INTERRUPTED, eligible for recovery.
        """
        if task.entity_type is not EntityType.ORDER:
            msg = f"SyncOrchestrator cannot run {task.entity_type.value} tasks"
            raise ValueError(msg)

        try:
            entities = await self._collect(task)
        except SyncEngineError as exc:
            logger.error("sync.listing_failed", task_id=task.id, error=str(exc))
            await self._tracker.update(
                task.id,
                BatchResult(errors=[SyncErrorEntry(message=str(exc), error_type=type(exc).__name__)]),
            )
            return await self._tracker.complete(task.id, SyncTaskStatus.FAILED)

        await self._tracker.set_total(task.id, task.processed_count + len(entities))
        logger.info(
            "sync.run_started",
            task_id=task.id,
            direction=task.direction.value,
            entities=len(entities),
            resume_after=task.last_synced_entity_id,
        )

        try:
            for start in range(0, len(entities), self.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("sync.run_cancelled", task_id=task.id, remaining=len(entities) - start)
                    return await self._tracker.complete(task.id, SyncTaskStatus.INTERRUPTED)
                await self.process_batch(
                    task.id,
                    entities[start : start + self.batch_size],
                    task.direction,
                    strategy=task.conflict_strategy,
                    skip_existing=task.filters.skip_existing,
                )
        except asyncio.CancelledError:
            await asyncio.shield(self._tracker.complete(task.id, SyncTaskStatus.INTERRUPTED))
            raise

        current = await self._tracker.get(task.id)
        return await self._tracker.complete(task.id, outcome_status(current, self.failure_tolerance))
