"""Repository for billing database operations."""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.modules.billing.models import (
    ACTIVE_STATUSES,
    Invoice,
    Subscription,
    SubscriptionStatus,
)
from academy_billing.modules.billing.plans import BillingCycle


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_by_academy(self, academy_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.academy_id == academy_id)
        )
        return result.scalar_one_or_none()

    async def get_due_for_billing(self, today: date) -> list[Subscription]:
        """Active, auto-renewing subscriptions whose billing date has arrived."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.auto_renew.is_(True),
                    Subscription.next_billing_date.is_not(None),
                    Subscription.next_billing_date <= today,
                )
            )
            .order_by(Subscription.next_billing_date)
        )
        return list(result.scalars().all())

    async def get_lapsed_cancellations(self, today: date) -> list[Subscription]:
        """Canceled-at-period-end subscriptions whose last period is over."""
        result = await self.session.execute(
            select(Subscription).where(
                and_(
                    Subscription.status.in_(ACTIVE_STATUSES),
                    Subscription.canceled_at.is_not(None),
                    Subscription.auto_renew.is_(False),
                    Subscription.current_period_end < today,
                )
            )
        )
        return list(result.scalars().all())

    async def list_page(
        self,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        """Subscriptions across all academies, newest first, with the total count."""
        conditions = [Subscription.status == status] if status else []
        total = await self.session.execute(
            select(func.count()).select_from(Subscription).where(*conditions)
        )
        result = await self.session.execute(
            select(Subscription)
            .where(*conditions)
            .order_by(Subscription.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total.scalar_one())

    async def metrics(self, since: datetime) -> dict:
        """Revenue and churn aggregates across all subscriptions.

        Yearly amounts are spread over twelve months for MRR.
        """
        monthly_value = case(
            (Subscription.billing_cycle == BillingCycle.YEARLY.value, Subscription.monthly_amount / 12),
            else_=Subscription.monthly_amount,
        )
        result = await self.session.execute(
            select(
                func.coalesce(
                    func.sum(monthly_value).filter(Subscription.status.in_(ACTIVE_STATUSES)), 0
                ),
                func.count().filter(Subscription.status.in_(ACTIVE_STATUSES)),
                func.count().filter(Subscription.created_at >= since),
                func.count().filter(Subscription.canceled_at >= since),
                func.count(),
            )
        )
        mrr, active, new, canceled, total = result.one()
        return {
            "total": int(total),
            "mrr": int(mrr),
            "active": int(active),
            "new": int(new),
            "canceled": int(canceled),
        }

    async def save(self, subscription: Subscription) -> Subscription:
        """Commit pending changes to a subscription."""
        self.session.add(subscription)
        await self.session.commit()
        await self.session.refresh(subscription)
        return subscription


class InvoiceRepository:
    """Repository for invoice operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, invoice_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.id == invoice_id)
        )
        return result.scalar_one_or_none()

    async def add(self, invoice: Invoice) -> Invoice:
        """Stage an invoice in the current transaction without committing."""
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def save(self, invoice: Invoice) -> Invoice:
        self.session.add(invoice)
        await self.session.commit()
        await self.session.refresh(invoice)
        return invoice

    async def list_by_academy(
        self,
        academy_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        """Get invoices for an academy, newest first, with the total count."""
        total = await self.session.execute(
            select(func.count()).select_from(Invoice).where(Invoice.academy_id == academy_id)
        )
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.academy_id == academy_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total.scalar_one())

    async def list_for_admin(
        self,
        subscription_id: Optional[uuid.UUID] = None,
        academy_id: Optional[uuid.UUID] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        """Invoices filtered by subscription and/or academy, newest first."""
        conditions = []
        if subscription_id is not None:
            conditions.append(Invoice.subscription_id == subscription_id)
        if academy_id is not None:
            conditions.append(Invoice.academy_id == academy_id)
        total = await self.session.execute(
            select(func.count()).select_from(Invoice).where(*conditions)
        )
        result = await self.session.execute(
            select(Invoice)
            .where(*conditions)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total.scalar_one())
