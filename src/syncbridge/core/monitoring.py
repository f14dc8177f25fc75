"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_entity_outcome() / record_platform_call() / record_webhook() /
  record_rate_limit_tokens(): metrics the engine updates as it works
- init_sentry(): Initialize Sentry for the FastAPI app
- get_metrics_response(): Response for the /metrics route
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_entities_total = Counter(
    "sync_entities_total",
    "Entities processed by the orchestrator",
    ["source", "outcome"],
)

platform_calls_total = Counter(
    "platform_calls_total",
    "Outbound platform calls, counted once per logical call after retries",
    ["platform", "operation", "outcome"],
)

platform_call_duration_seconds = Histogram(
    "platform_call_duration_seconds",
    "Outbound platform call duration in seconds, including backoff",
    ["platform", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries",
    ["platform", "kind", "outcome"],
)

rate_limit_tokens_available = Gauge(
    "rate_limit_tokens_available",
    "Whole tokens left in a platform's rate limiter after the last acquire",
    ["platform"],
)


def record_entity_outcome(source: str, outcome: str) -> None:
    sync_entities_total.labels(source=source, outcome=outcome).inc()


def record_platform_call(platform: str, operation: str, outcome: str, duration: float) -> None:
    platform_calls_total.labels(platform=platform, operation=operation, outcome=outcome).inc()
    platform_call_duration_seconds.labels(platform=platform, operation=operation).observe(duration)


def record_webhook(platform: str, kind: str, outcome: str) -> None:
    webhook_events_total.labels(platform=platform, kind=kind, outcome=outcome).inc()


def record_rate_limit_tokens(platform: str, remaining: int) -> None:
    rate_limit_tokens_available.labels(platform=platform).set(remaining)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern keeps task ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
