"""Repository for webhook event and settlement/payout mirror data access."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.modules.payment_gateway.models import Payout, Settlement, WebhookEvent


@dataclass
class WebhookEventFilters:
    """Filters for the admin webhook event listing."""
    source: Optional[str] = None
    event_type: Optional[str] = None
    status: Optional[str] = None
    processed: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def conditions(self) -> list:
        conditions = []
        if self.source:
            conditions.append(WebhookEvent.source == self.source)
        if self.event_type:
            conditions.append(WebhookEvent.event_type == self.event_type)
        if self.status:
            conditions.append(WebhookEvent.status == self.status)
        if self.processed is not None:
            conditions.append(WebhookEvent.processed.is_(self.processed))
        if self.start_date:
            conditions.append(WebhookEvent.received_at >= self.start_date)
        if self.end_date:
            conditions.append(WebhookEvent.received_at <= self.end_date)
        return conditions


class WebhookEventRepository:
    """Repository for webhook event log queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, event_id: uuid.UUID) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    async def get_by_entity(self, entity_id: str, event_type: str) -> Optional[WebhookEvent]:
        """Get the delivery record for an entity and event type."""
        result = await self.session.execute(
            select(WebhookEvent).where(
                and_(
                    WebhookEvent.entity_id == entity_id,
                    WebhookEvent.event_type == event_type,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_events(
        self,
        filters: WebhookEventFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookEvent], int]:
        """Get events matching filters, newest first, with the total count."""
        conditions = filters.conditions()
        count_query = select(func.count()).select_from(WebhookEvent)
        query = select(WebhookEvent)
        if conditions:
            count_query = count_query.where(and_(*conditions))
            query = query.where(and_(*conditions))

        total = await self.session.execute(count_query)
        result = await self.session.execute(
            query.order_by(WebhookEvent.received_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), int(total.scalar_one())

    async def get_stats(self, filters: WebhookEventFilters) -> dict[str, int]:
        """Totals for the matching events: processed, unprocessed and failed."""
        conditions = filters.conditions()
        query = select(
            func.count(),
            func.coalesce(func.sum(case((WebhookEvent.processed.is_(True), 1), else_=0)), 0),
            func.coalesce(
                func.sum(case((WebhookEvent.error_message.is_not(None), 1), else_=0)), 0
            ),
        ).select_from(WebhookEvent)
        if conditions:
            query = query.where(and_(*conditions))

        total, processed, failed = (await self.session.execute(query)).one()
        return {
            "total": int(total),
            "processed": int(processed),
            "unprocessed": int(total) - int(processed),
            "failed": int(failed),
        }

    async def mark_processed(self, event: WebhookEvent) -> WebhookEvent:
        event.processed = True
        event.processed_at = datetime.utcnow()
        event.error_message = None
        await self.session.commit()
        await self.session.refresh(event)
        return event


class SettlementRepository:
    """Repository for the settlement mirror."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_settlement_id(self, settlement_id: str) -> Optional[Settlement]:
        result = await self.session.execute(
            select(Settlement).where(Settlement.settlement_id == settlement_id)
        )
        return result.scalar_one_or_none()

    async def add(self, settlement: Settlement) -> Settlement:
        self.session.add(settlement)
        await self.session.flush()
        return settlement


class PayoutRepository:
    """Repository for the payout mirror."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_payout_id(self, payout_id: str) -> Optional[Payout]:
        result = await self.session.execute(
            select(Payout).where(Payout.payout_id == payout_id)
        )
        return result.scalar_one_or_none()

    async def add(self, payout: Payout) -> Payout:
        self.session.add(payout)
        await self.session.flush()
        return payout
