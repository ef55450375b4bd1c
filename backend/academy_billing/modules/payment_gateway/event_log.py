"""Durable webhook event log.

Every delivery is recorded once per (entity id, event type). The log writes
through its own session so an audit write never shares a transaction with
the state change it describes: a failed audit write cannot roll back a
mirror update, and vice versa.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.database import async_session_maker
from academy_billing.core.exceptions import PersistenceError
from academy_billing.modules.payment_gateway.models import WebhookEvent
from academy_billing.modules.payment_gateway.payloads import UnknownEvent, WebhookPayload
from academy_billing.modules.payment_gateway.repository import WebhookEventRepository

logger = logging.getLogger(__name__)


class RecordOutcome(str, Enum):
    RECORDED = "recorded"
    UPDATED = "updated"
    DUPLICATE = "duplicate"


def build_webhook_event(
    payload: WebhookPayload,
    webhook_id: Optional[str],
    raw_data: Optional[dict],
    processed: bool = True,
    error_message: Optional[str] = None,
) -> WebhookEvent:
    """Build the log entry for a parsed payload.

    Unknown events have no entity of their own and are keyed by the
    delivery's webhook id.
    """
    now = datetime.utcnow()
    if isinstance(payload, UnknownEvent):
        return WebhookEvent(
            webhook_id=webhook_id,
            source=payload.source.value,
            event_type=payload.event_type,
            entity_id=webhook_id or "",
            event_timestamp=payload.timestamp,
            processed=processed,
            processed_at=now if processed else None,
            error_message=error_message,
            raw_data=raw_data,
        )

    return WebhookEvent(
        webhook_id=webhook_id,
        source=payload.source.value,
        event_type=payload.event_type,
        entity_id=payload.entity_id,
        partner_id=payload.partner_id,
        payment_id=payload.payment_id,
        status=payload.status,
        amount=payload.amount,
        currency=payload.currency,
        event_timestamp=payload.timestamp,
        processed=processed,
        processed_at=now if processed else None,
        error_message=error_message,
        raw_data=raw_data,
    )


class WebhookEventLog:
    """Records deliveries and answers whether one was already processed."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session_maker):
        self.session_factory = session_factory

    async def find(self, entity_id: str, event_type: str) -> Optional[WebhookEvent]:
        try:
            async with self.session_factory() as session:
                return await WebhookEventRepository(session).get_by_entity(entity_id, event_type)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read webhook event log: {e}") from e

    async def is_processed(self, entity_id: str, event_type: str) -> bool:
        event = await self.find(entity_id, event_type)
        return event is not None and event.processed

    async def record(self, event: WebhookEvent) -> RecordOutcome:
        """Append a delivery, or complete an earlier unprocessed record of it.

        Raises:
            PersistenceError: The log could not be written
        """
        entity_id, event_type = event.entity_id, event.event_type
        processed_at, raw_data = event.processed_at, event.raw_data
        try:
            async with self.session_factory() as session:
                session.add(event)
                try:
                    await session.commit()
                    return RecordOutcome.RECORDED
                except IntegrityError:
                    await session.rollback()

                existing = await WebhookEventRepository(session).get_by_entity(
                    entity_id, event_type
                )
                if existing is None or existing.processed or processed_at is None:
                    logger.debug(f"Webhook event already recorded: {event_type} {entity_id}")
                    return RecordOutcome.DUPLICATE

                existing.processed = True
                existing.processed_at = processed_at
                existing.error_message = None
                existing.raw_data = raw_data
                await session.commit()
                return RecordOutcome.UPDATED
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write webhook event log: {e}") from e
