"""Rate limiting and retry discipline for outbound platform calls.

Every outbound adapter call passes through a GuardedAdapter, which:
1. Waits on the platform's TokenBucket (sustained rate + burst, shared by all
   workers talking to that platform).
2. Runs the call under a per-call timeout.
3. Retries TransientError and RateLimitedError with the BackoffSchedule,
   honoring a platform-supplied ``retry_after`` when it is longer.

ValidationError, NotFoundError, ConflictWriteError, and FatalError are never
retried here; ConflictWriteError is handled by the orchestrator with a fresh
read. The only suspension points are the token wait and the backoff sleep,
both routed through an injectable Clock so tests never spin or really sleep.
"""

from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from src.syncbridge.core.monitoring import record_platform_call, record_rate_limit_tokens
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import RateLimitedError, TransientError
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

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Retryable HTTP statuses, used by adapters when classifying responses.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


# ── Clock ───────────────────────────────────────────────────────────────────


class Clock(ABC):
    """Time source for rate-limit windows, backoff delays, and TTLs."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic timeline."""
        ...

    @abstractmethod
    def now(self) -> datetime:
        """Current wall-clock time (UTC)."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock(Clock):
    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# ── Rate Limiter ────────────────────────────────────────────────────────────


class TokenBucket:
    """Token bucket enforcing a sustained per-minute rate with a burst allowance.

    The bucket starts full (``burst_size`` tokens) and refills continuously at
    ``rate_per_minute / 60`` tokens per second. ``acquire()`` suspends the
    caller until a token is available; waiters are served in arrival order
    because the refill-and-take step runs under a lock.

    Args:
        rate_per_minute: Sustained calls allowed per minute.
        burst_size: Maximum tokens held at once (concurrent burst).
        clock: Time source; defaults to SystemClock.
    """

    def __init__(
        self,
        rate_per_minute: int,
        burst_size: int = 1,
        clock: Clock | None = None,
    ) -> None:
        if rate_per_minute <= 0:
            msg = "rate_per_minute must be positive"
            raise ValueError(msg)
        if burst_size <= 0:
            msg = "burst_size must be positive"
            raise ValueError(msg)
        self.rate_per_minute = rate_per_minute
        self.burst_size = burst_size
        self._clock = clock or SystemClock()
        self._rate_per_second = rate_per_minute / 60.0
        self._tokens = float(burst_size)
        self.last_refill = self._clock.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock.monotonic()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self._tokens = min(float(self.burst_size), self._tokens + elapsed * self._rate_per_second)
            self.last_refill = now

    @property
    def remaining(self) -> int:
        """Whole tokens currently available."""
        self._refill()
        return int(self._tokens)

    def get_retry_after(self) -> float:
        """Seconds until the next token is available (0 if one is available now)."""
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self._rate_per_second

    def try_consume(self) -> bool:
        """Take a token without waiting; False if none is available."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self) -> float:
        """Wait for and take one token.

        Returns:
            Seconds spent waiting.
        """
        async with self._lock:
            wait = self.get_retry_after()
            if wait > 0:
                await self._clock.sleep(wait)
                self._refill()
            self._tokens = max(self._tokens - 1, 0.0)
            return wait


# ── Retry ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BackoffSchedule:
    """Exponential backoff with optional proportional jitter.

    ``delay_for(n)`` is the wait after the n-th failed attempt:
    ``min(base_delay * multiplier ** (n - 1), max_delay)`` plus up to
    ``jitter`` of that value at random.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1
    max_attempts: int = 3

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return delay


class RetryPolicy:
    """Bounded retry loop for one outbound call, built on tenacity.

    Args:
        schedule: Attempt budget and backoff delays.
        timeout: Per-call timeout in seconds; a timeout counts as TransientError.
        clock: Time source for backoff sleeps.
    """

    def __init__(
        self,
        schedule: BackoffSchedule | None = None,
        timeout: float | None = 30.0,
        clock: Clock | None = None,
    ) -> None:
        self.schedule = schedule or BackoffSchedule()
        self.timeout = timeout
        self._clock = clock or SystemClock()

    def _wait(self, retry_state: RetryCallState) -> float:
        delay = self.schedule.delay_for(retry_state.attempt_number)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return delay

    def _log_backoff(self, name: str, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry.backing_off",
            operation=name,
            attempt=retry_state.attempt_number,
            max_attempts=self.schedule.max_attempts,
            delay_seconds=round(retry_state.upcoming_sleep, 3),
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
        )

    async def _attempt(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        if self.timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            msg = f"{name} timed out after {self.timeout}s"
            raise TransientError(msg) from exc

    async def call(self, operation: Callable[[], Awaitable[T]], *, name: str = "call") -> T:
        """Run ``operation`` until it succeeds, fails non-retryably, or the budget is spent.

        The last exception is re-raised unchanged once attempts are exhausted.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.schedule.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type((TransientError, RateLimitedError)),
            before_sleep=lambda state: self._log_backoff(name, state),
            sleep=self._clock.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(operation, name)
        raise AssertionError("unreachable")  # pragma: no cover


# ── Guarded Adapter ─────────────────────────────────────────────────────────


class GuardedAdapter(PlatformAdapter):
    """PlatformAdapter decorator routing every outbound call through a limiter and retry policy.

    Each attempt (including retries) takes its own token, so retries never
    exceed the platform's sustained rate. Signature verification and webhook
    parsing are local and pass straight through.
    """

    def __init__(
        self,
        inner: PlatformAdapter,
        limiter: TokenBucket,
        retry: RetryPolicy,
    ) -> None:
        self.inner = inner
        self.limiter = limiter
        self.retry = retry

    @property
    def platform(self) -> Platform:
        return self.inner.platform

    async def _guard(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        async def limited() -> T:
            await self.limiter.acquire()
            record_rate_limit_tokens(self.platform.value, self.limiter.remaining)
            return await operation()

        start = time.perf_counter()
        try:
            result = await self.retry.call(limited, name=f"{self.platform.value}.{name}")
        except Exception as exc:
            record_platform_call(
                self.platform.value, name, type(exc).__name__, time.perf_counter() - start
            )
            raise
        record_platform_call(self.platform.value, name, "ok", time.perf_counter() - start)
        return result

    async def list_orders(self, filters: SyncFilters | None = None) -> list[Order]:
        return await self._guard("list_orders", lambda: self.inner.list_orders(filters))

    async def fetch_order(self, order_id: str) -> Order | None:
        return await self._guard("fetch_order", lambda: self.inner.fetch_order(order_id))

    async def create_order(self, order: Order) -> str:
        return await self._guard("create_order", lambda: self.inner.create_order(order))

    async def update_status(self, order_id: str, field: str, value: Any) -> None:
        await self._guard("update_status", lambda: self.inner.update_status(order_id, field, value))

    async def update_fulfillment(self, order_id: str, update: FulfillmentUpdate) -> None:
        await self._guard(
            "update_fulfillment", lambda: self.inner.update_fulfillment(order_id, update)
        )

    async def update_payment(self, order_id: str, update: PaymentUpdate) -> None:
        await self._guard("update_payment", lambda: self.inner.update_payment(order_id, update))

    async def fetch_inventory(self, location_id: str | None = None) -> list[InventoryLevel]:
        return await self._guard("fetch_inventory", lambda: self.inner.fetch_inventory(location_id))

    async def apply_inventory_adjustments(self, batch: InventoryAdjustmentBatch) -> None:
        await self._guard(
            "apply_inventory_adjustments", lambda: self.inner.apply_inventory_adjustments(batch)
        )

    def verify_webhook_signature(self, signature: str | None, body: bytes, **context: Any) -> bool:
        return self.inner.verify_webhook_signature(signature, body, **context)

    def parse_webhook_event(
        self, body: bytes, headers: Mapping[str, str] | None = None
    ) -> WebhookEvent:
        return self.inner.parse_webhook_event(body, headers)

    async def aclose(self) -> None:
        await self.inner.aclose()
