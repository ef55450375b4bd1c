"""Payment gateway webhook and webhook event admin routers.

Webhook endpoints are total: every delivery gets a definite status. 200 for
processed, duplicate and ignored events, 401 for verification failures, 400
for an event posted to the other family's endpoint and 500 for everything
else so the gateway retries.
"""

import logging
import math
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.config import settings
from academy_billing.core.database import get_db
from academy_billing.core.exceptions import (
    BillingEngineError,
    NotFoundError,
    ValidationError,
    VerificationError,
)
from academy_billing.core.messages import get_message
from academy_billing.core.metrics import WEBHOOKS_RECEIVED_TOTAL
from academy_billing.core.security import Principal, Role, require_roles
from academy_billing.modules.payment_gateway.event_log import WebhookEventLog
from academy_billing.modules.payment_gateway.payloads import EventSource
from academy_billing.modules.payment_gateway.repository import (
    WebhookEventFilters,
    WebhookEventRepository,
)
from academy_billing.modules.payment_gateway.schemas import (
    Pagination,
    WebhookAck,
    WebhookEventListResponse,
    WebhookEventResponse,
    WebhookEventStats,
    WebhookEventUpdateResponse,
)
from academy_billing.modules.payment_gateway.service import MirrorUpdater, WebhookService
from academy_billing.modules.payment_gateway.signature import WebhookVerifier

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

admin_router = APIRouter(prefix="/admin/webhook-events", tags=["Webhook Events Admin"])


def get_webhook_service(session: AsyncSession = Depends(get_db)) -> WebhookService:
    return WebhookService(
        verifier=WebhookVerifier(
            settings.PORTONE_WEBHOOK_SECRET,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        ),
        event_log=WebhookEventLog(),
        mirror=MirrorUpdater(session),
    )


# ==================== Webhook Endpoints ====================


async def _handle_webhook(request: Request, source: EventSource, service: WebhookService):
    if not settings.PORTONE_WEBHOOK_SECRET:
        logger.error(f"Rejecting {source.value} webhook: PORTONE_WEBHOOK_SECRET is not set")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": get_message("webhook.not_configured")},
        )

    body = await request.body()
    try:
        result = await service.handle(body, request.headers, expected_source=source)
    except VerificationError:
        WEBHOOKS_RECEIVED_TOTAL.labels(source=source.value, event_type="", outcome="rejected").inc()
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": get_message("webhook.invalid_signature")},
        )
    except ValidationError as e:
        WEBHOOKS_RECEIVED_TOTAL.labels(source=source.value, event_type="", outcome="rejected").inc()
        logger.warning(f"{source.value} webhook refused: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": e.message, "code": e.code},
        )
    except BillingEngineError as e:
        WEBHOOKS_RECEIVED_TOTAL.labels(source=source.value, event_type="", outcome="failed").inc()
        logger.error(
            f"{source.value} webhook failed: {e.message}",
            extra={"code": e.code, "retryable": e.retryable},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": get_message("webhook.failed"), "code": e.code},
        )
    except Exception as e:
        WEBHOOKS_RECEIVED_TOTAL.labels(source=source.value, event_type="", outcome="failed").inc()
        logger.exception(f"Unexpected error handling {source.value} webhook: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": get_message("webhook.failed")},
        )

    return WebhookAck(message=result.message, outcome=result.outcome.value)


@webhook_router.post("/settlements", response_model=WebhookAck)
async def settlement_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Receive PortOne settlement status webhooks."""
    return await _handle_webhook(request, EventSource.SETTLEMENT, service)


@webhook_router.post("/payouts", response_model=WebhookAck)
async def payout_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
):
    """Receive PortOne payout status webhooks."""
    return await _handle_webhook(request, EventSource.PAYOUT, service)


# ==================== Admin Endpoints ====================


@admin_router.get("", response_model=WebhookEventListResponse)
async def list_webhook_events(
    type: Optional[str] = Query(None, description="Event source: settlement, payout or unknown"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    event_status: Optional[str] = Query(None, alias="status"),
    processed: Optional[bool] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    session: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_roles(Role.SUPER_ADMIN, Role.ADMIN)),
):
    """List webhook events with filters, pagination and summary stats."""
    filters = WebhookEventFilters(
        source=type,
        event_type=event_type,
        status=event_status,
        processed=processed,
        start_date=start_date,
        end_date=end_date,
    )
    repo = WebhookEventRepository(session)
    events, total = await repo.list_events(filters, limit=limit, offset=(page - 1) * limit)
    stats = await repo.get_stats(filters)

    return WebhookEventListResponse(
        events=[WebhookEventResponse.model_validate(e) for e in events],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
        stats=WebhookEventStats(**stats),
    )


@admin_router.post("/{event_id}/processed", response_model=WebhookEventUpdateResponse)
async def mark_webhook_event_processed(
    event_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_roles(Role.SUPER_ADMIN)),
):
    """Mark a webhook event as processed after manual review."""
    repo = WebhookEventRepository(session)
    event = await repo.get_by_id(event_id)
    if event is None:
        raise NotFoundError(get_message("webhook.event_not_found"), resource="webhook_event")

    event = await repo.mark_processed(event)
    logger.info(f"Webhook event {event_id} marked processed by {principal.user_id}")
    return WebhookEventUpdateResponse(event=WebhookEventResponse.model_validate(event))
