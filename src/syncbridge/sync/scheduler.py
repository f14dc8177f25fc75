"""Scheduled inventory reconciliation.

Wraps an APScheduler AsyncIOScheduler with one interval job that runs a
thresholded (non-explicit) reconciliation of the default location. A failed
run is logged and the next interval tries again.

Exports:
    ReconcileScheduler: Interval scheduler for inventory reconciliation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.syncbridge.sync.errors import SyncEngineError

if TYPE_CHECKING:
    from src.syncbridge.sync.service import SyncService

logger = structlog.get_logger(__name__)

JOB_ID = "inventory_reconcile"


class ReconcileScheduler:
    """Runs ``service.reconcile_inventory()`` every ``interval_minutes``.

    Args:
        service: Service whose inventory reconciler runs on each tick.
        interval_minutes: Minutes between runs; 0 or less disables the job.
        location_id: Location to reconcile; None uses the service default.
    """

    def __init__(
        self,
        service: SyncService,
        interval_minutes: int,
        location_id: str | None = None,
    ) -> None:
        self._service = service
        self.interval_minutes = interval_minutes
        self.location_id = location_id
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        """Start the scheduler. Returns False when the interval disables it."""
        if self.interval_minutes <= 0:
            logger.info("inventory.scheduler_disabled")
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Reconcile inventory across platforms",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self._scheduler.start()
        logger.info(
            "inventory.scheduler_started",
            interval_minutes=self.interval_minutes,
            location_id=self.location_id,
        )
        return True

    async def run_once(self) -> None:
        """One scheduled reconciliation; engine failures are logged, not raised."""
        try:
            result = await self._service.reconcile_inventory(self.location_id)
        except SyncEngineError as exc:
            logger.error("inventory.scheduled_run_failed", error=str(exc))
            return
        logger.info(
            "inventory.scheduled_run_complete",
            reconciled=result.reconciled,
            skipped=result.skipped,
            errors=len(result.errors),
        )

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("inventory.scheduler_stopped")
        self._scheduler = None


__all__ = ["ReconcileScheduler"]
