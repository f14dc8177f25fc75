"""Inventory reconciler -- SKU-keyed, threshold-gated quantity correction.

Inventory counts are not independently owned by both platforms, so no
conflict resolution applies: one platform (A by default) is the source of
truth and the other is adjusted to match it.

- Scheduled reconciliation ignores normal sale-driven drift: a SKU is only
  corrected when ``abs(discrepancy)`` exceeds the greater of 1% of the larger
  quantity and 5 units.
- Explicit syncs (API requests, inventory tasks, inventory webhooks) use a
  threshold of 0.
- SKUs are walked in sorted order, ``batch_size`` at a time. Each chunk's
  drifted SKUs go out as one batch with a fresh idempotency key, so a retried
  batch is never applied twice by the platform. The chunk's last SKU is the
  task checkpoint, and cancellation is honoured between chunks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping

import structlog

from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import MappingConflictError, SyncEngineError
from src.syncbridge.sync.mapping import MappingRepository
from src.syncbridge.sync.orchestrator import outcome_status
from src.syncbridge.sync.progress import ProgressTracker
from src.syncbridge.sync.schemas import (
    BatchResult,
    EntityMapping,
    EntityType,
    InventoryAdjustment,
    InventoryAdjustmentBatch,
    InventoryComparison,
    InventoryLevel,
    Platform,
    ReconcileResult,
    SyncAction,
    SyncDirection,
    SyncErrorEntry,
    SyncTask,
    SyncTaskStatus,
)

logger = structlog.get_logger(__name__)

ThresholdFn = Callable[[int, int], float]


def explicit_threshold(quantity_a: int, quantity_b: int) -> float:
    return 0.0


def compare_levels(
    levels_a: list[InventoryLevel],
    levels_b: list[InventoryLevel],
    threshold: ThresholdFn = explicit_threshold,
) -> list[InventoryComparison]:
    """Pair both platforms' levels by SKU and flag the ones that need syncing.

    SKUs present on only one side are returned with the missing quantity as
    None and ``requires_sync`` False.
    """
    by_sku_a = {level.sku: level for level in levels_a}
    by_sku_b = {level.sku: level for level in levels_b}

    comparisons = []
    for sku in sorted(by_sku_a.keys() | by_sku_b.keys()):
        level_a = by_sku_a.get(sku)
        level_b = by_sku_b.get(sku)
        if level_a is None or level_b is None:
            comparisons.append(
                InventoryComparison(
                    sku=sku,
                    quantity_a=level_a.quantity if level_a else None,
                    quantity_b=level_b.quantity if level_b else None,
                    level_a=level_a,
                    level_b=level_b,
                )
            )
            continue

        discrepancy = level_b.quantity - level_a.quantity
        limit = threshold(level_a.quantity, level_b.quantity)
        comparisons.append(
            InventoryComparison(
                sku=sku,
                quantity_a=level_a.quantity,
                quantity_b=level_b.quantity,
                discrepancy=discrepancy,
                threshold=limit,
                requires_sync=abs(discrepancy) > limit,
                level_a=level_a,
                level_b=level_b,
            )
        )
    return comparisons


class InventoryReconciler:
    """Compares inventory across platforms and adjusts the non-authoritative side.

    Args:
        adapters: One (guarded) PlatformAdapter per platform.
        mappings: Optional Entity Mapping store; matched SKUs are recorded as
            INVENTORY mappings (A variant/product id <-> B variant/product id).
        tracker: Progress Tracker, required only for ``run``.
        batch_size: Adjustments per submitted batch.
        reconcile_percent: Scheduled threshold as a fraction of the larger quantity.
        reconcile_min_units: Scheduled threshold floor in units.
        default_location_id: Location used when none is given.
        failure_tolerance: Failure rate below which an inventory task still COMPLETES.
    """

    def __init__(
        self,
        adapters: Mapping[Platform, PlatformAdapter],
        mappings: MappingRepository | None = None,
        tracker: ProgressTracker | None = None,
        *,
        batch_size: int = 50,
        reconcile_percent: float = 0.01,
        reconcile_min_units: int = 5,
        default_location_id: str | None = None,
        failure_tolerance: float = 0.1,
    ) -> None:
        self._adapters = dict(adapters)
        self._mappings = mappings
        self._tracker = tracker
        self.batch_size = max(batch_size, 1)
        self.reconcile_percent = reconcile_percent
        self.reconcile_min_units = reconcile_min_units
        self.default_location_id = default_location_id or None
        self.failure_tolerance = failure_tolerance

    def scheduled_threshold(self, quantity_a: int, quantity_b: int) -> float:
        return max(self.reconcile_percent * max(quantity_a, quantity_b), self.reconcile_min_units)

    async def _fetch_levels(
        self, location_id: str | None
    ) -> tuple[list[InventoryLevel], list[InventoryLevel]]:
        return await asyncio.gather(
            self._adapters[Platform.A].fetch_inventory(location_id),
            self._adapters[Platform.B].fetch_inventory(location_id),
        )

    async def reconcile(
        self,
        location_id: str | None = None,
        *,
        explicit: bool = False,
        authoritative: Platform = Platform.A,
        task_id: str | None = None,
        resume_after: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Reconcile every SKU at ``location_id`` against the authoritative platform.

        Args:
            location_id: Location to reconcile; defaults to the configured one.
            explicit: Use a zero threshold instead of the scheduled tolerance.
            authoritative: Platform whose quantities win.
            task_id: Sync Task to report each chunk into.
            resume_after: Checkpoint SKU; only SKUs sorting after it are processed.
            cancel_event: Checked between chunks; when set the remaining SKUs
                are left alone and the result is marked ``interrupted``.

        Returns:
            ReconcileResult with the adjusted SKU count, skipped SKUs, the
            discrepancies acted on, per-batch errors, and idempotency keys used.
        """
        location_id = location_id or self.default_location_id
        levels_a, levels_b = await self._fetch_levels(location_id)
        threshold = explicit_threshold if explicit else self.scheduled_threshold
        comparisons = compare_levels(levels_a, levels_b, threshold)
        if resume_after is not None:
            comparisons = [c for c in comparisons if c.sku > resume_after]

        if task_id is not None and self._tracker is not None:
            current = await self._tracker.get(task_id)
            await self._tracker.set_total(task_id, current.processed_count + len(comparisons))

        result = await self._apply(comparisons, authoritative, location_id, task_id, cancel_event)
        logger.info(
            "inventory.reconcile_complete",
            location_id=location_id,
            explicit=explicit,
            authoritative=authoritative.value,
            compared=len(comparisons),
            resume_after=resume_after,
            reconciled=result.reconciled,
            skipped=result.skipped,
            errors=len(result.errors),
            interrupted=result.interrupted,
        )
        return result

    async def sync_sku(self, sku: str, location_id: str | None = None) -> SyncAction:
        """Explicitly sync one SKU from Platform A to Platform B (threshold 0)."""
        location_id = location_id or self.default_location_id
        levels_a, levels_b = await self._fetch_levels(location_id)
        comparisons = compare_levels(
            [level for level in levels_a if level.sku == sku],
            [level for level in levels_b if level.sku == sku],
        )
        if not comparisons:
            logger.warning("inventory.sku_not_found", sku=sku)
            return SyncAction.SKIPPED

        result = await self._apply(comparisons, Platform.A, location_id, None)
        if result.errors:
            first = result.errors[0]
            raise SyncEngineError(first.message, entity_id=sku)
        if result.reconciled:
            return SyncAction.UPDATED
        return SyncAction.SKIPPED if result.skipped else SyncAction.UNCHANGED

    async def _record_mapping(self, comparison: InventoryComparison) -> None:
        level_a, level_b = comparison.level_a, comparison.level_b
        existing = await self._mappings.find(EntityType.INVENTORY, Platform.A, level_a.entity_id)
        if existing is not None and existing.matches(Platform.B, level_b.entity_id):
            return
        await self._mappings.upsert(
            EntityMapping(
                entity_type=EntityType.INVENTORY,
                source_system=Platform.A,
                source_id=level_a.entity_id,
                target_system=Platform.B,
                target_id=level_b.entity_id,
            )
        )

    async def _apply(
        self,
        comparisons: list[InventoryComparison],
        authoritative: Platform,
        location_id: str | None,
        task_id: str | None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Walk ``comparisons`` in SKU order, one checkpointed chunk at a time."""
        result = ReconcileResult()
        for start in range(0, len(comparisons), self.batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("inventory.run_cancelled", remaining=len(comparisons) - start)
                result.interrupted = True
                break
            chunk = comparisons[start : start + self.batch_size]
            progress = await self._apply_chunk(chunk, authoritative, location_id, result)
            if task_id is not None and self._tracker is not None:
                await self._tracker.update(task_id, progress)
        return result

    async def _apply_chunk(
        self,
        chunk: list[InventoryComparison],
        authoritative: Platform,
        location_id: str | None,
        result: ReconcileResult,
    ) -> BatchResult:
        """Adjust one chunk's drifted SKUs in a single batch.

        The returned progress counts every SKU in the chunk (unmatched,
        unchanged, adjusted, or failed) and checkpoints on its last SKU.
        """
        follower = authoritative.other
        progress = BatchResult(last_entity_id=chunk[-1].sku)
        adjustments: list[InventoryAdjustment] = []

        for comparison in chunk:
            if comparison.level_a is None or comparison.level_b is None:
                result.skipped += 1
                progress.skipped_count += 1
                progress.synced_count += 1
                logger.debug("inventory.sku_unmatched", sku=comparison.sku)
                continue

            if self._mappings is not None:
                try:
                    await self._record_mapping(comparison)
                except MappingConflictError as exc:
                    entry = SyncErrorEntry(
                        entity_id=comparison.sku,
                        message=exc.message,
                        error_type=type(exc).__name__,
                    )
                    progress.record_error(entry)
                    result.errors.append(entry)
                    continue

            if not comparison.requires_sync:
                progress.synced_count += 1
                continue

            source_level = comparison.level_a if authoritative is Platform.A else comparison.level_b
            target_level = comparison.level_b if authoritative is Platform.A else comparison.level_a
            result.discrepancies.append(comparison)
            adjustments.append(
                InventoryAdjustment(
                    product_id=target_level.product_id,
                    variant_id=target_level.variant_id,
                    sku=comparison.sku,
                    quantity_delta=source_level.quantity - target_level.quantity,
                    target_quantity=source_level.quantity,
                    location_id=location_id or target_level.location_id,
                    reference_id=source_level.entity_id,
                )
            )

        if not adjustments:
            return progress

        batch = InventoryAdjustmentBatch(adjustments=adjustments, location_id=location_id)
        try:
            await self._adapters[follower].apply_inventory_adjustments(batch)
        except SyncEngineError as exc:
            logger.error(
                "inventory.batch_failed",
                idempotency_key=batch.idempotency_key,
                size=len(adjustments),
                error=str(exc),
            )
            for adjustment in adjustments:
                entry = SyncErrorEntry(
                    entity_id=adjustment.sku,
                    message=str(exc),
                    source_system=authoritative,
                    error_type=type(exc).__name__,
                )
                progress.record_error(entry)
                result.errors.append(entry)
        else:
            result.reconciled += len(adjustments)
            result.idempotency_keys.append(batch.idempotency_key)
            progress.synced_count += len(adjustments)
            progress.updated_count.increment(follower, len(adjustments))
            logger.info(
                "inventory.batch_applied",
                platform=follower.value,
                idempotency_key=batch.idempotency_key,
                size=len(adjustments),
            )
        return progress

    async def run(self, task: SyncTask, cancel_event: asyncio.Event | None = None) -> SyncTask:
        """Execute a RUNNING inventory task as an explicit sync.

        A_TO_B makes Platform A authoritative, B_TO_A Platform B. Resumed
        tasks keep their counters and only process SKUs after the checkpoint.
        Setting ``cancel_event`` stops the run between chunks and leaves the
        task INTERRUPTED, eligible for recovery.
        """
        if self._tracker is None:
            msg = "InventoryReconciler.run requires a ProgressTracker"
            raise RuntimeError(msg)
        if task.direction is SyncDirection.BIDIRECTIONAL:
            msg = "Inventory sync has a single source of truth and cannot run bidirectionally"
            raise ValueError(msg)

        if cancel_event is not None and cancel_event.is_set():
            return await self._tracker.complete(task.id, SyncTaskStatus.INTERRUPTED)

        authoritative = task.direction.sources[0]
        try:
            result = await self.reconcile(
                task.filters.location_id,
                explicit=True,
                authoritative=authoritative,
                task_id=task.id,
                resume_after=task.last_synced_entity_id,
                cancel_event=cancel_event,
            )
        except SyncEngineError as exc:
            logger.error("inventory.run_failed", task_id=task.id, error=str(exc))
            await self._tracker.update(
                task.id,
                BatchResult(errors=[SyncErrorEntry(message=str(exc), error_type=type(exc).__name__)]),
            )
            return await self._tracker.complete(task.id, SyncTaskStatus.FAILED)
        except asyncio.CancelledError:
            await asyncio.shield(self._tracker.complete(task.id, SyncTaskStatus.INTERRUPTED))
            raise

        if result.interrupted:
            return await self._tracker.complete(task.id, SyncTaskStatus.INTERRUPTED)
        current = await self._tracker.get(task.id)
        return await self._tracker.complete(task.id, outcome_status(current, self.failure_tolerance))
