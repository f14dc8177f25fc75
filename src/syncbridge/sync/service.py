"""SyncService -- the engine's exposed surface for schedulers and the HTTP API.

Operations:
- run_sync(entity_type, direction, filters?) -> task id. The running slot is
  claimed before returning, so a concurrent second call is rejected with
  TaskAlreadyRunningError; the run itself continues in a background asyncio task.
- get_task / list_tasks: latest persisted state, including partial errors.
- cancel(task_id): cooperative; the run stops between chunks as INTERRUPTED.
- recover(task_id): resume an INTERRUPTED or orphaned task after its checkpoint.
- ingest_webhook(platform, body, signature): verified, deduplicated sync trigger.
- reconcile_inventory(location_id?): scheduled (thresholded) or explicit reconcile.

``create_sync_service`` wires adapters, stores, and the webhook fence from
Settings, choosing SQL/Redis backends when configured and in-memory otherwise.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping

import structlog

from src.syncbridge.config import Settings
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import (
    NoActiveTaskError,
    TaskAlreadyRunningError,
    ValidationError,
)
from src.syncbridge.sync.inventory import InventoryReconciler
from src.syncbridge.sync.mapping import InMemoryMappingRepository, MappingRepository
from src.syncbridge.sync.orchestrator import SyncOrchestrator
from src.syncbridge.sync.progress import InMemoryTaskStore, ProgressTracker, TaskStore
from src.syncbridge.sync.resilience import (
    BackoffSchedule,
    Clock,
    GuardedAdapter,
    RetryPolicy,
    SystemClock,
    TokenBucket,
)
from src.syncbridge.sync.schemas import (
    BatchResult,
    ConflictStrategy,
    EntityType,
    IngestResult,
    Platform,
    ReconcileResult,
    SyncDirection,
    SyncErrorEntry,
    SyncFilters,
    SyncTask,
    SyncTaskStatus,
)
from src.syncbridge.sync.webhooks import (
    EventFence,
    InMemoryEventFence,
    RedisEventFence,
    WebhookIngestor,
)

logger = structlog.get_logger(__name__)

Runner = Callable[[SyncTask, asyncio.Event], Awaitable[SyncTask]]


class SyncService:
    """Facade over the orchestrator, tracker, webhook ingestor, and reconciler.

    Args:
        orchestrator: Order batch orchestrator.
        tracker: Progress Tracker shared by every component.
        ingestor: Webhook ingestor.
        reconciler: Inventory reconciler.
        default_strategy: Conflict strategy when a run does not name one.
        adapters: Adapters closed on shutdown.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        tracker: ProgressTracker,
        ingestor: WebhookIngestor,
        reconciler: InventoryReconciler,
        *,
        default_strategy: ConflictStrategy = ConflictStrategy.STATUS_PRIORITY,
        adapters: Mapping[Platform, PlatformAdapter] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.tracker = tracker
        self.ingestor = ingestor
        self.reconciler = reconciler
        self.default_strategy = default_strategy
        self._adapters = dict(adapters or {})
        self._running: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}

    # ── Runs ────────────────────────────────────────────────────────────

    async def run_sync(
        self,
        entity_type: EntityType,
        direction: SyncDirection,
        filters: SyncFilters | None = None,
        conflict_strategy: ConflictStrategy | None = None,
    ) -> str:
        """Start a run and return its task id without waiting for it to finish.

        Raises:
            ValidationError: Inventory runs cannot be bidirectional.
            TaskAlreadyRunningError: A task for (entity_type, direction) is running.
        """
        if entity_type is EntityType.INVENTORY and direction is SyncDirection.BIDIRECTIONAL:
            msg = "Inventory sync has a single source of truth and cannot run bidirectionally"
            raise ValidationError(msg)

        task = await self.tracker.start(
            entity_type,
            direction,
            conflict_strategy=conflict_strategy or self.default_strategy,
            filters=filters,
        )
        self._launch(task)
        return task.id

    def _runner_for(self, task: SyncTask) -> Runner:
        if task.entity_type is EntityType.INVENTORY:
            return self.reconciler.run
        return self.orchestrator.run

    def _launch(self, task: SyncTask) -> None:
        cancel_event = asyncio.Event()
        runner = self._runner_for(task)
        background = asyncio.create_task(
            self._execute(runner, task, cancel_event), name=f"sync-task-{task.id}"
        )
        self._running[task.id] = (background, cancel_event)
        background.add_done_callback(lambda _: self._running.pop(task.id, None))

    async def _execute(self, runner: Runner, task: SyncTask, cancel_event: asyncio.Event) -> None:
        try:
            await runner(task, cancel_event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("sync.run_crashed", task_id=task.id)
            await self._fail(task.id, exc)

    async def _fail(self, task_id: str, exc: Exception) -> None:
        try:
            await self.tracker.update(
                task_id,
                BatchResult(errors=[SyncErrorEntry(message=str(exc), error_type=type(exc).__name__)]),
            )
            await self.tracker.complete(task_id, SyncTaskStatus.FAILED)
        except NoActiveTaskError:
            logger.warning("sync.task_already_terminal", task_id=task_id)

    def is_running_locally(self, task_id: str) -> bool:
        return task_id in self._running

    async def wait(self, task_id: str) -> SyncTask:
        """Wait for a run started by this process, then return the task."""
        entry = self._running.get(task_id)
        if entry is not None:
            await asyncio.gather(entry[0], return_exceptions=True)
        return await self.tracker.get(task_id)

    async def get_task(self, task_id: str) -> SyncTask:
        return await self.tracker.get(task_id)

    async def list_tasks(self, status: SyncTaskStatus | None = None) -> list[SyncTask]:
        return await self.tracker.list_tasks(status)

    async def cancel(self, task_id: str) -> SyncTask:
        """Ask a run to stop after its current chunk.

        A RUNNING task with no live runner in this process (left behind by a
        crashed instance) is marked INTERRUPTED directly. Terminal tasks are
        returned unchanged.
        """
        task = await self.tracker.get(task_id)
        entry = self._running.get(task_id)
        if entry is not None:
            entry[1].set()
            logger.info("sync.cancel_requested", task_id=task_id)
            return task
        if task.status is SyncTaskStatus.RUNNING:
            logger.info("sync.orphan_interrupted", task_id=task_id)
            return await self.tracker.complete(task_id, SyncTaskStatus.INTERRUPTED)
        return task

    async def recover(self, task_id: str) -> SyncTask:
        """Resume a recoverable task in the background, continuing after its checkpoint.

        Raises:
            TaskNotFoundError: Unknown task.
            SyncEngineError: The task finished COMPLETED or FAILED.
            TaskAlreadyRunningError: The task (or another for the same key) is running.
        """
        if self.is_running_locally(task_id):
            task = await self.tracker.get(task_id)
            raise TaskAlreadyRunningError(task.running_key, task_id)
        task = await self.tracker.resume(task_id)
        self._launch(task)
        return task

    # ── Webhooks / inventory ────────────────────────────────────────────

    async def ingest_webhook(
        self,
        platform: Platform,
        body: bytes,
        signature: str | None,
        headers: Mapping[str, str] | None = None,
    ) -> IngestResult:
        return await self.ingestor.ingest(platform, body, signature, headers)

    async def reconcile_inventory(
        self, location_id: str | None = None, *, explicit: bool = False
    ) -> ReconcileResult:
        return await self.reconciler.reconcile(location_id, explicit=explicit)

    async def shutdown(self) -> None:
        """Stop in-process runs; they end INTERRUPTED and remain recoverable."""
        entries = list(self._running.values())
        for background, cancel_event in entries:
            cancel_event.set()
            background.cancel()
        if entries:
            await asyncio.gather(*(b for b, _ in entries), return_exceptions=True)
        for adapter in self._adapters.values():
            await adapter.aclose()
        logger.info("sync.service_stopped", interrupted=len(entries))


# ── Wiring ──────────────────────────────────────────────────────────────────


def _guard(
    adapter: PlatformAdapter,
    rate_per_minute: int,
    burst: int,
    settings: Settings,
    clock: Clock,
) -> GuardedAdapter:
    schedule = BackoffSchedule(
        base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        max_attempts=settings.RETRY_MAX_ATTEMPTS,
    )
    return GuardedAdapter(
        adapter,
        TokenBucket(rate_per_minute, burst, clock),
        RetryPolicy(schedule, settings.CALL_TIMEOUT_SECONDS, clock),
    )


def _http_adapters(settings: Settings) -> dict[Platform, PlatformAdapter]:
    from src.syncbridge.adapters import (
        HexBodySignature,
        HttpPlatformAdapter,
        UrlBodyBase64Signature,
    )

    return {
        Platform.A: HttpPlatformAdapter(
            Platform.A,
            settings.PLATFORM_A_BASE_URL,
            settings.PLATFORM_A_API_TOKEN,
            HexBodySignature(settings.PLATFORM_A_WEBHOOK_SECRET),
            timeout=settings.CALL_TIMEOUT_SECONDS,
        ),
        Platform.B: HttpPlatformAdapter(
            Platform.B,
            settings.PLATFORM_B_BASE_URL,
            settings.PLATFORM_B_API_TOKEN,
            UrlBodyBase64Signature(
                settings.PLATFORM_B_WEBHOOK_SECRET, settings.PLATFORM_B_WEBHOOK_URL
            ),
            timeout=settings.CALL_TIMEOUT_SECONDS,
        ),
    }


def create_sync_service(
    settings: Settings,
    *,
    adapters: Mapping[Platform, PlatformAdapter] | None = None,
    mappings: MappingRepository | None = None,
    task_store: TaskStore | None = None,
    fence: EventFence | None = None,
    clock: Clock | None = None,
) -> SyncService:
    """Build a SyncService from settings.

    Explicit collaborators win; otherwise SQL stores are used when
    DATABASE_URL is set and a Redis fence when REDIS_URL is set, with
    in-memory fallbacks for single-process use.
    """
    clock = clock or SystemClock()
    raw = dict(adapters) if adapters is not None else _http_adapters(settings)
    guarded: dict[Platform, PlatformAdapter] = {
        Platform.A: _guard(
            raw[Platform.A],
            settings.PLATFORM_A_RATE_LIMIT_PER_MINUTE,
            settings.PLATFORM_A_BURST,
            settings,
            clock,
        ),
        Platform.B: _guard(
            raw[Platform.B],
            settings.PLATFORM_B_RATE_LIMIT_PER_MINUTE,
            settings.PLATFORM_B_BURST,
            settings,
            clock,
        ),
    }

    if settings.DATABASE_URL and (mappings is None or task_store is None):
        from src.syncbridge.core.database import get_session
        from src.syncbridge.sync.repository import SqlMappingRepository, SqlTaskStore

        mappings = mappings or SqlMappingRepository(get_session)
        task_store = task_store or SqlTaskStore(get_session)
    mappings = mappings or InMemoryMappingRepository()
    task_store = task_store or InMemoryTaskStore()

    if fence is None:
        if settings.REDIS_URL:
            from src.syncbridge.core.redis import get_redis_pool

            fence = RedisEventFence(get_redis_pool(), settings.WEBHOOK_DEDUP_TTL_SECONDS)
        else:
            fence = InMemoryEventFence(settings.WEBHOOK_DEDUP_TTL_SECONDS, clock)

    tie_side = Platform(settings.CONFLICT_TIE_BREAK_SIDE)
    strategy = ConflictStrategy(settings.DEFAULT_CONFLICT_STRATEGY)

    tracker = ProgressTracker(task_store)
    orchestrator = SyncOrchestrator(
        guarded,
        mappings,
        tracker,
        batch_size=settings.SYNC_BATCH_SIZE,
        max_workers=settings.SYNC_MAX_WORKERS,
        failure_tolerance=settings.SYNC_FAILURE_TOLERANCE,
        tie_side=tie_side,
    )
    reconciler = InventoryReconciler(
        guarded,
        mappings,
        tracker,
        batch_size=settings.INVENTORY_BATCH_SIZE,
        reconcile_percent=settings.INVENTORY_RECONCILE_PERCENT,
        reconcile_min_units=settings.INVENTORY_RECONCILE_MIN_UNITS,
        default_location_id=settings.INVENTORY_DEFAULT_LOCATION_ID,
        failure_tolerance=settings.SYNC_FAILURE_TOLERANCE,
    )
    ingestor = WebhookIngestor(
        guarded,
        orchestrator,
        fence,
        reconciler,
        strategy=strategy,
        signature_context={Platform.B: {"notification_url": settings.PLATFORM_B_WEBHOOK_URL}},
    )

    logger.info(
        "sync.service_configured",
        mapping_store=type(mappings).__name__,
        task_store=type(task_store).__name__,
        fence=type(fence).__name__,
        tie_side=tie_side.value,
        default_strategy=strategy.value,
    )
    return SyncService(
        orchestrator,
        tracker,
        ingestor,
        reconciler,
        default_strategy=strategy,
        adapters=guarded,
    )
