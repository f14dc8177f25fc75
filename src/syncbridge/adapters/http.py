"""Async HTTP platform adapter over httpx.

HttpPlatformAdapter talks to a platform gateway that exchanges canonical JSON
(the shapes in ``src.syncbridge.sync.schemas``):

    GET    /orders                      -> {"orders": [...], "next_cursor": str | null}
    GET    /orders/{id}                 -> order
    POST   /orders                      -> {"id": str}
    PATCH  /orders/{id}/status          <- {"field": str, "value": str}
    PUT    /orders/{id}/fulfillment     <- FulfillmentUpdate
    PUT    /orders/{id}/payment         <- PaymentUpdate
    GET    /inventory                   -> {"levels": [...]}
    POST   /inventory/adjustments       <- InventoryAdjustmentBatch (Idempotency-Key header)

Every failure is classified into the engine's error taxonomy here; retries
and rate limiting are applied by the GuardedAdapter wrapping this adapter.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import httpx
import pydantic
import structlog

from src.syncbridge.adapters.signatures import SignatureScheme
from src.syncbridge.sync.adapter import PlatformAdapter
from src.syncbridge.sync.errors import (
    ConflictWriteError,
    FatalError,
    NotFoundError,
    RateLimitedError,
    SyncEngineError,
    TransientError,
    ValidationError,
)
from src.syncbridge.sync.resilience import RETRYABLE_STATUS_CODES
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
from src.syncbridge.sync.webhooks import classify_event_type

logger = structlog.get_logger(__name__)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def classify_response(response: httpx.Response, entity_id: str | None = None) -> SyncEngineError:
    """Translate a non-2xx response into the engine's error taxonomy."""
    status = response.status_code
    detail = f"{response.request.method} {response.request.url.path} returned {status}"
    if status in (400, 422):
        return ValidationError(detail, entity_id=entity_id)
    if status in (401, 403):
        return FatalError(detail, entity_id=entity_id)
    if status == 404:
        return NotFoundError(detail, entity_id=entity_id)
    if status in (409, 412):
        return ConflictWriteError(detail, entity_id=entity_id)
    if status == 429:
        return RateLimitedError(detail, retry_after=_retry_after(response), entity_id=entity_id)
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        return TransientError(detail, entity_id=entity_id)
    return FatalError(detail, entity_id=entity_id)


class HttpPlatformAdapter(PlatformAdapter):
    """PlatformAdapter for one platform's canonical-JSON gateway.

    Args:
        platform: Which platform this adapter serves.
        base_url: Gateway base URL.
        api_token: Bearer token sent on every request.
        signature: Webhook signature scheme for this platform.
        client: Optional preconfigured httpx.AsyncClient (tests pass one with
            a MockTransport); otherwise one is created and owned here.
        timeout: Per-request timeout in seconds for the owned client.
        page_size: Orders requested per page.
    """

    def __init__(
        self,
        platform: Platform,
        base_url: str,
        api_token: str,
        signature: SignatureScheme,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        page_size: int = 100,
    ) -> None:
        self._platform = platform
        self._signature = signature
        self.page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @property
    def platform(self) -> Platform:
        return self._platform

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        entity_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{method} {path} timed out"
            raise TransientError(msg, entity_id=entity_id) from exc
        except httpx.TransportError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise TransientError(msg, entity_id=entity_id) from exc

        if response.is_success:
            return response

        error = classify_response(response, entity_id)
        logger.warning(
            "platform.request_failed",
            platform=self._platform.value,
            method=method,
            path=path,
            status=response.status_code,
            error_type=type(error).__name__,
        )
        raise error

    def _to_order(self, data: dict[str, Any]) -> Order:
        try:
            return Order.model_validate({**data, "platform": self._platform.value})
        except pydantic.ValidationError as exc:
            msg = f"Malformed {self._platform.value} order {data.get('id')}: {exc.error_count()} errors"
            raise ValidationError(msg, entity_id=data.get("id")) from exc

    # ── Orders ──────────────────────────────────────────────────────────

    async def list_orders(self, filters: SyncFilters | None = None) -> list[Order]:
        params: dict[str, Any] = {"limit": self.page_size}
        if filters is not None:
            if filters.created_after:
                params["created_after"] = filters.created_after.isoformat()
            if filters.created_before:
                params["created_before"] = filters.created_before.isoformat()
            if filters.fulfillment_statuses:
                params["fulfillment_status"] = [s.value for s in filters.fulfillment_statuses]
            if filters.payment_statuses:
                params["payment_status"] = [s.value for s in filters.payment_statuses]

        orders: list[Order] = []
        cursor: str | None = None
        while True:
            if cursor:
                params["cursor"] = cursor
            response = await self._request("GET", "/orders", params=params)
            body = response.json()
            orders.extend(self._to_order(item) for item in body.get("orders", []))
            cursor = body.get("next_cursor")
            if not cursor:
                break

        logger.debug("platform.orders_listed", platform=self._platform.value, count=len(orders))
        return orders

    async def fetch_order(self, order_id: str) -> Order | None:
        try:
            response = await self._request("GET", f"/orders/{order_id}", entity_id=order_id)
        except NotFoundError:
            return None
        return self._to_order(response.json())

    async def create_order(self, order: Order) -> str:
        payload = order.model_dump(mode="json", exclude={"id", "platform"})
        payload["external_reference"] = order.id
        response = await self._request("POST", "/orders", entity_id=order.id, json=payload)
        new_id = response.json().get("id")
        if not new_id:
            msg = f"{self._platform.value} create returned no id for {order.id}"
            raise FatalError(msg, entity_id=order.id)
        return str(new_id)

    async def update_status(self, order_id: str, field: str, value: Any) -> None:
        await self._request(
            "PATCH",
            f"/orders/{order_id}/status",
            entity_id=order_id,
            json={"field": field, "value": getattr(value, "value", value)},
        )

    async def update_fulfillment(self, order_id: str, update: FulfillmentUpdate) -> None:
        await self._request(
            "PUT",
            f"/orders/{order_id}/fulfillment",
            entity_id=order_id,
            json=update.model_dump(mode="json", exclude_none=True),
        )

    async def update_payment(self, order_id: str, update: PaymentUpdate) -> None:
        await self._request(
            "PUT",
            f"/orders/{order_id}/payment",
            entity_id=order_id,
            json=update.model_dump(mode="json", exclude_none=True),
        )

    # ── Inventory ───────────────────────────────────────────────────────

    async def fetch_inventory(self, location_id: str | None = None) -> list[InventoryLevel]:
        params = {"location_id": location_id} if location_id else {}
        response = await self._request("GET", "/inventory", params=params)
        try:
            return [InventoryLevel.model_validate(item) for item in response.json().get("levels", [])]
        except pydantic.ValidationError as exc:
            msg = f"Malformed {self._platform.value} inventory payload"
            raise ValidationError(msg) from exc

    async def apply_inventory_adjustments(self, batch: InventoryAdjustmentBatch) -> None:
        await self._request(
            "POST",
            "/inventory/adjustments",
            headers={"Idempotency-Key": batch.idempotency_key},
            json=batch.model_dump(mode="json"),
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    def verify_webhook_signature(self, signature: str | None, body: bytes, **context: Any) -> bool:
        return self._signature.verify(signature, body, **context)

    def parse_webhook_event(
        self, body: bytes, headers: Mapping[str, str] | None = None
    ) -> WebhookEvent:
        """Parse ``{"event_id", "type", "data": {...}}`` into a WebhookEvent.

        The referenced order id is read from ``data.order_id`` (falling back
        to ``data.id``) and the SKU from ``data.sku``.
        """
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = f"{self._platform.value} webhook body is not valid JSON"
            raise ValidationError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"{self._platform.value} webhook body must be a JSON object"
            raise ValidationError(msg)

        webhook_id = payload.get("event_id") or payload.get("id")
        if not webhook_id:
            msg = f"{self._platform.value} webhook has no event id"
            raise ValidationError(msg)

        raw_type = str(payload.get("type") or payload.get("event_type") or "")
        data = payload.get("data") or {}
        entity_id = data.get("order_id") or data.get("id")
        return WebhookEvent(
            webhook_id=str(webhook_id),
            platform=self._platform,
            kind=classify_event_type(self._platform, raw_type),
            raw_type=raw_type,
            entity_id=str(entity_id) if entity_id else None,
            sku=data.get("sku"),
            payload=payload,
        )
