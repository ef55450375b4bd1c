"""Recurring billing job.

Runs daily: charges every active, auto-renewing subscription whose next
billing date has arrived, advances its period and commits any pending
tier or add-on change that falls due at that boundary.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.alerting import AlertManager, AlertName, alert_manager
from academy_billing.core.celery_app import celery_app
from academy_billing.core.config import settings
from academy_billing.core.database import async_session_maker
from academy_billing.core.exceptions import BillingEngineError, GatewayError, PersistenceError
from academy_billing.core.metrics import BILLING_CHARGES_TOTAL
from academy_billing.modules.billing.models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Subscription,
    SubscriptionStatus,
)
from academy_billing.modules.billing.plans import get_plan
from academy_billing.modules.billing.proration import add_billing_period
from academy_billing.modules.billing.repository import InvoiceRepository, SubscriptionRepository
from academy_billing.modules.billing.service import apply_rollover, plan_rollover
from academy_billing.modules.payment_gateway.client import (
    ALREADY_PAID,
    PortOneClient,
    get_portone_client,
)

logger = logging.getLogger(__name__)


def renewal_payment_id(subscription: Subscription, period_start: date) -> str:
    """Gateway payment id for one period's renewal.

    Derived from the subscription and the period so a rerun after a lost
    write reuses it and the gateway refuses to charge twice.
    """
    return f"sub_{subscription.id.hex}_renew_{period_start:%Y%m%d}"


def _already_paid(error: GatewayError) -> bool:
    return (error.details or {}).get("type") == ALREADY_PAID


async def charge_subscription(
    session: AsyncSession,
    subscription: Subscription,
    gateway: PortOneClient,
    today: date,
    alerts: AlertManager = alert_manager,
) -> bool:
    """Charge one subscription for its next period.

    On success a paid invoice is written, the period advances and due
    pending changes are applied. On failure the subscription becomes
    past_due and a failed invoice records the gateway's reason.

    Returns:
        True if the charge succeeded

    Raises:
        PersistenceError: The charge went through but could not be recorded;
            a reconciliation alert carrying the payment id has been fired
    """
    invoice_repo = InvoiceRepository(session)
    subscription_repo = SubscriptionRepository(session)

    # The new period is billed at the amount it will run on
    rollover = plan_rollover(subscription, today)
    amount = rollover.monthly_amount if rollover else subscription.monthly_amount
    plan_tier = rollover.plan_tier if rollover else subscription.plan_tier

    period_start = subscription.next_billing_date
    anchor_day = subscription.billing_anchor_day or period_start.day
    period_end = add_billing_period(period_start, subscription.billing_cycle, anchor_day)
    payment_id = renewal_payment_id(subscription, period_start)
    subscription_id = subscription.id
    academy_id = subscription.academy_id

    invoice = Invoice(
        academy_id=academy_id,
        subscription_id=subscription_id,
        invoice_type=InvoiceType.RECURRING.value,
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        status=InvoiceStatus.PENDING.value,
        billing_period_start=period_start,
        billing_period_end=period_end,
        plan_tier=plan_tier,
        billing_cycle=subscription.billing_cycle,
        payment_id=payment_id,
        invoice_metadata={"portone_payment_id": payment_id},
    )

    failure_reason: Optional[str] = None
    charged = False
    if amount > 0:
        if not subscription.billing_key:
            failure_reason = "No billing key registered"
        else:
            try:
                charge = await gateway.charge_billing_key(
                    payment_id=payment_id,
                    billing_key=subscription.billing_key,
                    order_name=f"{get_plan(plan_tier).name} subscription",
                    amount=amount,
                    currency=invoice.currency,
                )
                invoice.receipt_url = charge.receipt_url
                charged = True
            except GatewayError as e:
                if _already_paid(e):
                    # An earlier run charged this period but lost its writes
                    logger.warning(
                        f"Renewal {payment_id} was already paid, recording it without charging"
                    )
                    invoice.invoice_metadata = {**invoice.invoice_metadata, "recovered": True}
                    charged = True
                else:
                    failure_reason = e.message

    if failure_reason is not None:
        invoice.status = InvoiceStatus.FAILED.value
        invoice.failed_at = datetime.utcnow()
        invoice.failure_reason = failure_reason
        subscription.status = SubscriptionStatus.PAST_DUE.value
        await invoice_repo.add(invoice)
        await subscription_repo.save(subscription)

        BILLING_CHARGES_TOTAL.labels(outcome="failed").inc()
        logger.warning(
            f"Recurring charge failed for subscription {subscription_id}: {failure_reason}"
        )
        await alerts.fire(
            AlertName.SUBSCRIPTION_PAYMENT_FAILED,
            f"Recurring charge of {amount} failed: {failure_reason}",
            key=str(subscription_id),
            academy_id=str(academy_id),
            payment_id=payment_id,
        )
        return False

    now = datetime.utcnow()
    invoice.status = InvoiceStatus.PAID.value
    invoice.paid_at = now
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.next_billing_date = period_end
    subscription.billing_anchor_day = anchor_day
    subscription.last_payment_date = now
    apply_rollover(subscription, today)

    try:
        await invoice_repo.add(invoice)
        await subscription_repo.save(subscription)
    except SQLAlchemyError as e:
        await session.rollback()
        if not charged:
            raise
        logger.error(
            f"Renewal {payment_id} of {amount} was charged but could not be recorded: {e}",
            exc_info=True,
        )
        BILLING_CHARGES_TOTAL.labels(outcome="reconcile").inc()
        await alerts.fire(
            AlertName.BILLING_RECONCILIATION_REQUIRED,
            f"Subscription {subscription_id} charged {amount} but the renewal was not recorded",
            key=payment_id,
            payment_id=payment_id,
            subscription_id=str(subscription_id),
            academy_id=str(academy_id),
            amount=amount,
        )
        raise PersistenceError(
            f"Renewal {payment_id} charged but not recorded",
            details={"payment_id": payment_id},
        ) from e

    BILLING_CHARGES_TOTAL.labels(outcome="succeeded").inc()
    logger.info(
        f"Recurring charge of {amount} succeeded for subscription {subscription_id}, "
        f"next billing {period_end}"
    )
    return True


async def expire_lapsed_cancellations(session: AsyncSession, today: date) -> int:
    """End subscriptions canceled at period end once that period is over."""
    subscription_repo = SubscriptionRepository(session)
    lapsed = await subscription_repo.get_lapsed_cancellations(today)
    for subscription in lapsed:
        subscription.status = SubscriptionStatus.CANCELED.value
        await subscription_repo.save(subscription)
        logger.info(f"Subscription {subscription.id} ended after cancellation")
    return len(lapsed)


async def run_billing_cycle(
    session: AsyncSession,
    gateway: PortOneClient,
    today: Optional[date] = None,
    alerts: AlertManager = alert_manager,
) -> dict:
    """Charge every subscription due on or before ``today``.

    Returns:
        Summary with counts and per-subscription errors
    """
    today = today or date.today()
    subscription_repo = SubscriptionRepository(session)
    due_ids: list[uuid.UUID] = [s.id for s in await subscription_repo.get_due_for_billing(today)]

    summary = {
        "date": today.isoformat(),
        "subscriptions_found": len(due_ids),
        "successful_payments": 0,
        "failed_payments": 0,
        "errors": [],
        "reconciliation_required": [],
    }

    try:
        summary["expired"] = await expire_lapsed_cancellations(session, today)
    except SQLAlchemyError as e:
        await session.rollback()
        summary["expired"] = 0
        summary["errors"].append(f"Expiring canceled subscriptions: {e}")
        logger.error(f"Error expiring canceled subscriptions: {e}", exc_info=True)

    for subscription_id in due_ids:
        try:
            subscription = await subscription_repo.get_by_id(subscription_id)
            if subscription is None:
                continue
            if await charge_subscription(session, subscription, gateway, today, alerts):
                summary["successful_payments"] += 1
            else:
                summary["failed_payments"] += 1
                summary["errors"].append(f"Subscription {subscription_id}: payment failed")
        except (BillingEngineError, SQLAlchemyError) as e:
            await session.rollback()
            summary["failed_payments"] += 1
            summary["errors"].append(f"Subscription {subscription_id}: {e}")
            if isinstance(e, PersistenceError) and "payment_id" in e.details:
                summary["reconciliation_required"].append(e.details["payment_id"])
            logger.error(
                f"Error processing subscription {subscription_id}: {e}", exc_info=True
            )

    logger.info(
        f"Billing cycle for {today}: {summary['successful_payments']} succeeded, "
        f"{summary['failed_payments']} failed of {summary['subscriptions_found']}"
    )
    return summary


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300, name="billing.run_billing_cycle")
def run_billing_cycle_task(self, today: Optional[str] = None) -> dict:
    """Run the recurring billing job.

    Args:
        today: ISO date override, defaults to the current date
    """
    return asyncio.run(_run_billing_cycle_async(today))


async def _run_billing_cycle_async(today: Optional[str]) -> dict:
    run_date = date.fromisoformat(today) if today else date.today()
    async with async_session_maker() as session:
        return await run_billing_cycle(session, get_portone_client(), run_date)
