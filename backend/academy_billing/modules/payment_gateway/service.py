"""Webhook processing service.

Pipeline per delivery: verify signature, parse, skip if already processed,
update the settlement or payout mirror, then append to the event log.
Deliveries may arrive duplicated and out of order; the event log makes
duplicates no-ops and the mirrors ignore events older than what they hold.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.alerting import AlertManager, AlertName, alert_manager
from academy_billing.core.exceptions import PersistenceError, ValidationError
from academy_billing.core.logging import log_error
from academy_billing.core.messages import get_message
from academy_billing.core.metrics import (
    WEBHOOK_AUDIT_LOG_FAILURES_TOTAL,
    WEBHOOKS_RECEIVED_TOTAL,
)
from academy_billing.modules.payment_gateway.event_log import (
    WebhookEventLog,
    build_webhook_event,
)
from academy_billing.modules.payment_gateway.models import Payout, Settlement
from academy_billing.modules.payment_gateway.payloads import (
    EventSource,
    PayoutEvent,
    SettlementEvent,
    UnknownEvent,
    WebhookPayload,
    parse_webhook_payload,
)
from academy_billing.modules.payment_gateway.repository import (
    PayoutRepository,
    SettlementRepository,
)
from academy_billing.modules.payment_gateway.signature import WebhookVerifier

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_type: str
    entity_id: Optional[str]
    message: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_stale(last_event_at: Optional[datetime], event_at: datetime) -> bool:
    return last_event_at is not None and _as_utc(event_at) < _as_utc(last_event_at)


class MirrorUpdater:
    """Writes the gateway's reported state into the settlement/payout mirrors."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settlements = SettlementRepository(session)
        self.payouts = PayoutRepository(session)

    async def apply(self, payload: Union[SettlementEvent, PayoutEvent]) -> bool:
        """Record the event's status unless the mirror already holds a newer one.

        Returns:
            True if the mirror changed

        Raises:
            PersistenceError: The mirror could not be written
        """
        try:
            if isinstance(payload, SettlementEvent):
                changed = await self._apply_settlement(payload)
            else:
                changed = await self._apply_payout(payload)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(
                f"Failed to update {payload.source.value} {payload.entity_id}: {e}"
            ) from e
        return changed

    async def _apply_settlement(self, event: SettlementEvent) -> bool:
        settlement = await self.settlements.get_by_settlement_id(event.entity_id)
        if settlement is None:
            settlement = await self.settlements.add(
                Settlement(settlement_id=event.entity_id, status=event.status)
            )
        elif _is_stale(settlement.last_event_at, event.timestamp):
            logger.info(
                f"Ignoring out-of-order {event.event_type} for settlement {event.entity_id}"
            )
            return False

        data = event.data
        settlement.status = event.status
        settlement.partner_id = data.partner_id or settlement.partner_id
        settlement.payment_id = data.payment_id or settlement.payment_id
        if data.amount is not None:
            settlement.order_amount = data.amount.order
            settlement.settlement_amount = data.amount.settlement
        settlement.currency = data.currency or settlement.currency
        settlement.settlement_date = data.settlement_date or settlement.settlement_date
        settlement.last_event_type = event.event_type
        settlement.last_event_at = event.timestamp
        return True

    async def _apply_payout(self, event: PayoutEvent) -> bool:
        payout = await self.payouts.get_by_payout_id(event.entity_id)
        if payout is None:
            payout = await self.payouts.add(Payout(payout_id=event.entity_id, status=event.status))
        elif _is_stale(payout.last_event_at, event.timestamp):
            logger.info(f"Ignoring out-of-order {event.event_type} for payout {event.entity_id}")
            return False

        data = event.data
        payout.status = event.status
        payout.partner_id = data.partner_id or payout.partner_id
        payout.amount = data.amount if data.amount is not None else payout.amount
        payout.currency = data.currency or payout.currency
        payout.scheduled_at = data.scheduled_at or payout.scheduled_at
        payout.payout_at = data.payout_at or payout.payout_at
        payout.failure_reason = data.failure_reason if event.is_failure else None
        payout.last_event_type = event.event_type
        payout.last_event_at = event.timestamp
        return True


class WebhookService:
    """Handles one verified-or-rejected webhook delivery end to end."""

    def __init__(
        self,
        verifier: WebhookVerifier,
        event_log: WebhookEventLog,
        mirror: MirrorUpdater,
        alerts: AlertManager = alert_manager,
    ):
        self.verifier = verifier
        self.event_log = event_log
        self.mirror = mirror
        self.alerts = alerts

    async def handle(
        self,
        body: bytes,
        headers: Mapping[str, str],
        now: Optional[float] = None,
        expected_source: Optional[EventSource] = None,
    ) -> WebhookResult:
        """Process a raw delivery.

        ``expected_source`` is the event family the receiving endpoint
        serves; a known event of another family is refused.

        Raises:
            VerificationError: Signature, headers or timestamp rejected
            MalformedPayloadError: Body does not parse
            ValidationError: Event belongs to the other endpoint
            PersistenceError: Idempotency lookup or mirror update failed
        """
        webhook_headers = await self.verifier.verify(body, headers, now)
        payload = parse_webhook_payload(body)
        if (
            expected_source is not None
            and not isinstance(payload, UnknownEvent)
            and payload.source != expected_source
        ):
            raise ValidationError(
                get_message(
                    "webhook.wrong_endpoint",
                    event_type=payload.event_type,
                    source=expected_source.value,
                ),
                field="type",
                code="wrong_endpoint",
            )
        raw_data = json.loads(body)
        webhook_id = webhook_headers.webhook_id

        if isinstance(payload, UnknownEvent):
            logger.warning(
                f"Ignoring unhandled webhook event type: {payload.event_type}",
                extra={"webhook_id": webhook_id},
            )
            await self._record_audit(payload, webhook_id, raw_data)
            self._count(payload, WebhookOutcome.IGNORED)
            return WebhookResult(
                outcome=WebhookOutcome.IGNORED,
                event_type=payload.event_type,
                entity_id=None,
                message=get_message("webhook.ignored"),
            )

        if await self.event_log.is_processed(payload.entity_id, payload.event_type):
            logger.info(
                "webhook_duplicate_ignored",
                extra={
                    "webhook_id": webhook_id,
                    "entity_id": payload.entity_id,
                    "event_type": payload.event_type,
                },
            )
            self._count(payload, WebhookOutcome.DUPLICATE)
            return WebhookResult(
                outcome=WebhookOutcome.DUPLICATE,
                event_type=payload.event_type,
                entity_id=payload.entity_id,
                message=get_message("webhook.processed"),
            )

        try:
            await self.mirror.apply(payload)
        except PersistenceError as e:
            await self._record_audit(
                payload, webhook_id, raw_data, processed=False, error_message=e.message
            )
            raise

        if isinstance(payload, PayoutEvent) and payload.is_failure:
            await self.alerts.fire(
                AlertName.PAYOUT_FAILED,
                f"Payout {payload.entity_id} failed: {payload.data.failure_reason or 'unknown reason'}",
                key=payload.entity_id,
                partner_id=payload.partner_id,
                amount=payload.amount,
            )

        await self._record_audit(payload, webhook_id, raw_data)
        self._count(payload, WebhookOutcome.PROCESSED)
        logger.info(
            "webhook_processed",
            extra={
                "webhook_id": webhook_id,
                "entity_id": payload.entity_id,
                "event_type": payload.event_type,
                "status": payload.status,
            },
        )
        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED,
            event_type=payload.event_type,
            entity_id=payload.entity_id,
            message=get_message("webhook.processed"),
        )

    async def _record_audit(
        self,
        payload: WebhookPayload,
        webhook_id: str,
        raw_data: dict,
        processed: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        """Append to the event log; a failure here degrades audit, not the response."""
        event = build_webhook_event(payload, webhook_id, raw_data, processed, error_message)
        if isinstance(payload, UnknownEvent):
            event.status = "IGNORED"
        try:
            await self.event_log.record(event)
        except PersistenceError as e:
            WEBHOOK_AUDIT_LOG_FAILURES_TOTAL.labels(source=payload.source.value).inc()
            log_error(
                logger,
                "Failed to write webhook audit log",
                exception=e,
                webhook_id=webhook_id,
                event_type=payload.event_type,
            )
            await self.alerts.fire(
                AlertName.WEBHOOK_AUDIT_LOG_FAILED,
                f"Audit log write failed for {payload.event_type}: {e.message}",
                key=payload.source.value,
                webhook_id=webhook_id,
            )

    @staticmethod
    def _count(payload: WebhookPayload, outcome: WebhookOutcome) -> None:
        WEBHOOKS_RECEIVED_TOTAL.labels(
            source=payload.source.value,
            event_type=payload.event_type,
            outcome=outcome.value,
        ).inc()
