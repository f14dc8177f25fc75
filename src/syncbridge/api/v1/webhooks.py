"""Inbound platform webhook endpoint.

The raw body is read untouched so the signature can be verified over the
exact bytes the platform signed. Each platform names its signature header
in settings.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.syncbridge.api.deps import get_sync_service
from src.syncbridge.config import get_settings
from src.syncbridge.sync.errors import SyncEngineError, ValidationError, WebhookSignatureError
from src.syncbridge.sync.schemas import IngestResult, Platform
from src.syncbridge.sync.service import SyncService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _signature_header(platform: Platform) -> str:
    settings = get_settings()
    if platform is Platform.A:
        return settings.PLATFORM_A_SIGNATURE_HEADER
    return settings.PLATFORM_B_SIGNATURE_HEADER


@router.post("/{platform}", response_model=IngestResult)
async def receive_webhook(
    platform: Platform,
    request: Request,
    service: SyncService = Depends(get_sync_service),
) -> IngestResult:
    """Verify, deduplicate, and dispatch one webhook delivery.

    Returns 401 for a bad signature and 422 for an unparseable body. A failed
    sync returns 503 so the platform redelivers; the delivery was not fenced.
    """
    body = await request.body()
    signature = request.headers.get(_signature_header(platform))
    try:
        return await service.ingest_webhook(platform, body, signature, dict(request.headers))
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except SyncEngineError as exc:
        logger.warning("webhook.delivery_rejected", platform=platform.value, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
