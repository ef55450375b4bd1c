"""Subscription state manager.

Owns every transition of an academy's subscription: immediate prorated
upgrades, deferred downgrades, add-on purchases and the billing-cycle
rollover that commits pending changes.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.alerting import AlertManager, AlertName, alert_manager
from academy_billing.core.config import settings
from academy_billing.core.exceptions import (
    BillingEngineError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from academy_billing.core.messages import get_message
from academy_billing.modules.billing.addons import (
    AddonQuantities,
    calculate_addon_cost,
    ensure_valid_addon_quantities,
    round_up_to_increments,
)
from academy_billing.modules.billing.limits import exceeded_limits
from academy_billing.modules.billing.models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Subscription,
    SubscriptionStatus,
)
from academy_billing.modules.billing.plans import (
    BillingCycle,
    PlanLimits,
    PlanTier,
    TierChangeType,
    get_plan,
    get_tier_change_type,
    is_unlimited,
)
from academy_billing.modules.billing.proration import (
    ProrationResult,
    add_billing_period,
    days_remaining,
    prorate,
)
from academy_billing.modules.billing.repository import InvoiceRepository, SubscriptionRepository
from academy_billing.modules.billing.usage import UsageAggregator, UsageSnapshot
from academy_billing.modules.payment_gateway.client import PortOneClient

logger = logging.getLogger(__name__)

STATUS_TYPES = {
    SubscriptionStatus.ACTIVE.value: "success",
    SubscriptionStatus.TRIALING.value: "success",
    SubscriptionStatus.PAST_DUE.value: "warning",
    SubscriptionStatus.CANCELED.value: "error",
}


@dataclass(frozen=True)
class DowngradeViolation:
    """One metric where current usage exceeds the target tier's limit."""
    metric: str
    current: float
    limit: int
    message: str

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "current": self.current,
            "limit": self.limit,
            "message": self.message,
        }


class DowngradeBlockedError(ValidationError):
    """Raised when usage does not fit the target tier of a downgrade."""

    code = "downgrade_blocked"

    def __init__(self, message: str, violations: list[DowngradeViolation]):
        super().__init__(
            message,
            field="targetTier",
            details={"violations": [v.to_dict() for v in violations]},
        )
        self.violations = violations


@dataclass(frozen=True)
class RolloverPlan:
    """What a subscription becomes at its billing boundary."""
    plan_tier: str
    addons: AddonQuantities
    limits: PlanLimits
    features: dict
    monthly_amount: int
    tier_changed: bool
    addons_changed: bool


@dataclass
class UpgradeResult:
    subscription: Subscription
    proration: ProrationResult
    invoice: Optional[Invoice]
    previous_tier: str
    addons_adjusted: bool = False


@dataclass
class DowngradeResult:
    current_tier: str
    target_tier: str
    effective_date: date
    new_monthly_amount: int


@dataclass
class AddonPurchaseResult:
    subscription: Subscription
    addons: AddonQuantities
    addon_cost: int
    new_monthly_amount: int
    effective_date: Optional[date]
    applied_immediately: bool


@dataclass
class SubscribeResult:
    subscription: Subscription
    invoice: Invoice
    payment_id: str


@dataclass
class CancelResult:
    subscription: Subscription
    effective_date: date
    immediate: bool


@dataclass(frozen=True)
class PlanOffer:
    """A plan as offered to one academy."""
    tier: str
    name: str
    monthly_price: int
    yearly_price: int
    limits: PlanLimits
    features: dict
    is_current_plan: bool
    recommended: bool
    upgrade_proration: Optional[int] = None


# ==================== Pure helpers ====================


def compute_limits(plan_tier: str, addons: AddonQuantities) -> PlanLimits:
    """Effective limits: plan base plus add-ons, unlimited stays unlimited."""
    base = get_plan(plan_tier).limits
    return PlanLimits(
        students=base.students if is_unlimited(base.students) else base.students + addons.students,
        teachers=base.teachers if is_unlimited(base.teachers) else base.teachers + addons.teachers,
        classrooms=base.classrooms,
        storage_gb=(
            base.storage_gb if is_unlimited(base.storage_gb) else base.storage_gb + addons.storage_gb
        ),
    )


def compute_monthly_amount(plan_tier: str, billing_cycle: str, addons: AddonQuantities) -> int:
    """Amount charged per billing cycle: base plan price plus add-on cost.

    Add-on prices are monthly, so a yearly cycle pays twelve of them.
    """
    plan = get_plan(plan_tier)
    base_price = plan.price_for(billing_cycle)
    addon_cost = calculate_addon_cost(
        plan_tier, addons.students, addons.teachers, addons.storage_gb, addons.ai_cards
    )
    if billing_cycle == BillingCycle.YEARLY.value:
        addon_cost *= 12
    amount = base_price + addon_cost
    if amount < 0:
        raise ValidationError(
            get_message("subscription.amount_undefined", tier=plan_tier),
            field="monthly_amount",
        )
    return amount


def carry_over_addons(target_tier: str, addons: AddonQuantities) -> AddonQuantities:
    """Add-ons as they would stand on another tier.

    Tiers without add-on pricing drop all add-ons, and AI report cards are
    dropped where the tier does not sell them. Other quantities are rounded
    up to the target tier's increments, so the academy never loses capacity
    it already paid for.
    """
    return round_up_to_increments(target_tier, addons)


def find_downgrade_violations(
    usage: UsageSnapshot,
    target_tier: str,
    limits: PlanLimits,
) -> list[DowngradeViolation]:
    """Itemize every metric whose usage exceeds the given target limits."""
    plan = get_plan(target_tier)
    violations = []
    for metric, limit in limits.as_dict().items():
        if is_unlimited(limit):
            continue
        current = usage.get(metric)
        if current > limit:
            shown = round(current, 2) if metric == "storage_gb" else current
            violations.append(DowngradeViolation(
                metric=metric,
                current=shown,
                limit=limit,
                message=get_message(
                    f"violation.{metric}", current=shown, plan=plan.name, limit=limit
                ),
            ))
    return violations


def plan_rollover(subscription: Subscription, today: Optional[date] = None) -> Optional[RolloverPlan]:
    """Work out the pending changes due at ``today``, without mutating.

    Returns None when nothing is due.
    """
    today = today or date.today()
    tier_due = (
        subscription.has_pending_tier_change()
        and subscription.pending_change_effective_date is not None
        and subscription.pending_change_effective_date <= today
    )
    addons_due = (
        subscription.has_pending_addons()
        and subscription.pending_addons_effective_date <= today
    )
    if not tier_due and not addons_due:
        return None

    plan_tier = subscription.pending_tier if tier_due else subscription.plan_tier
    addons = subscription.pending_addons() if addons_due else subscription.current_addons()
    addons = carry_over_addons(plan_tier, addons)

    return RolloverPlan(
        plan_tier=plan_tier,
        addons=addons,
        limits=compute_limits(plan_tier, addons),
        features=dict(get_plan(plan_tier).features),
        monthly_amount=compute_monthly_amount(plan_tier, subscription.billing_cycle, addons),
        tier_changed=tier_due,
        addons_changed=addons_due,
    )


def _apply_plan(
    subscription: Subscription,
    plan_tier: str,
    addons: AddonQuantities,
    monthly_amount: int,
) -> None:
    limits = compute_limits(plan_tier, addons)
    subscription.plan_tier = plan_tier
    subscription.student_limit = limits.students
    subscription.teacher_limit = limits.teachers
    subscription.classroom_limit = limits.classrooms
    subscription.storage_limit_gb = limits.storage_gb
    subscription.features_enabled = dict(get_plan(plan_tier).features)
    subscription.additional_students = addons.students
    subscription.additional_teachers = addons.teachers
    subscription.additional_storage_gb = addons.storage_gb
    subscription.additional_ai_cards = addons.ai_cards
    subscription.monthly_amount = monthly_amount


def _clear_pending_tier(subscription: Subscription) -> None:
    subscription.pending_tier = None
    subscription.pending_monthly_amount = None
    subscription.pending_change_effective_date = None


def _clear_pending_addons(subscription: Subscription) -> None:
    subscription.pending_additional_students = None
    subscription.pending_additional_teachers = None
    subscription.pending_additional_storage_gb = None
    subscription.pending_additional_ai_cards = None
    subscription.pending_addons_effective_date = None


def apply_rollover(subscription: Subscription, today: Optional[date] = None) -> bool:
    """Commit pending tier and add-on changes that are due.

    Recomputes limits, features and the monthly amount, then clears the
    pending fields that were applied. Returns True if anything changed.
    """
    rollover = plan_rollover(subscription, today)
    if rollover is None:
        return False

    previous_tier = subscription.plan_tier
    _apply_plan(subscription, rollover.plan_tier, rollover.addons, rollover.monthly_amount)
    if rollover.tier_changed:
        _clear_pending_tier(subscription)
    if rollover.addons_changed:
        _clear_pending_addons(subscription)

    logger.info(
        f"Rollover applied for academy {subscription.academy_id}: "
        f"{previous_tier} -> {rollover.plan_tier}, amount {rollover.monthly_amount}"
    )
    return True


def status_message(subscription: Optional[Subscription]) -> tuple[str, str]:
    """Human status message and its severity type."""
    if subscription is None or subscription.status not in STATUS_TYPES:
        return get_message("status.unknown"), "error"
    return get_message(f"status.{subscription.status}"), STATUS_TYPES[subscription.status]


RECOMMENDED_TIER = PlanTier.PRO.value


def plan_offers(
    subscription: Optional[Subscription] = None,
    today: Optional[date] = None,
) -> list[PlanOffer]:
    """Every plan in tier order, marked against the academy's subscription.

    For an active subscription each higher tier carries the prorated amount
    an upgrade would charge today.
    """
    today = today or date.today()
    current_tier = subscription.plan_tier if subscription else PlanTier.FREE.value
    can_prorate = subscription is not None and subscription.is_active(today)

    offers = []
    for tier in PlanTier:
        plan = get_plan(tier.value)
        upgrade_proration = None
        if can_prorate and get_tier_change_type(current_tier, tier.value) == TierChangeType.UPGRADE:
            addons = carry_over_addons(tier.value, subscription.current_addons())
            upgrade_proration = prorate(
                subscription.monthly_amount,
                compute_monthly_amount(tier.value, subscription.billing_cycle, addons),
                subscription.current_period_start,
                subscription.current_period_end,
                today,
            ).amount
        offers.append(PlanOffer(
            tier=plan.tier,
            name=plan.name,
            monthly_price=plan.monthly_price,
            yearly_price=plan.yearly_price,
            limits=plan.limits,
            features=dict(plan.features),
            is_current_plan=plan.tier == current_tier,
            recommended=plan.tier == RECOMMENDED_TIER,
            upgrade_proration=upgrade_proration,
        ))
    return offers


@dataclass(frozen=True)
class SubscriptionMetrics:
    mrr: int
    arr: int
    active_subscriptions: int
    new_last_30_days: int
    canceled_last_30_days: int
    churn_rate: float


METRICS_WINDOW_DAYS = 30


def build_metrics(raw: dict) -> SubscriptionMetrics:
    """Derive ARR and churn from the repository aggregates.

    Churn is cancellations in the window over all subscriptions, as a
    percentage with one decimal.
    """
    total = raw["total"]
    churn = raw["canceled"] / total * 100 if total else 0.0
    return SubscriptionMetrics(
        mrr=raw["mrr"],
        arr=raw["mrr"] * 12,
        active_subscriptions=raw["active"],
        new_last_30_days=raw["new"],
        canceled_last_30_days=raw["canceled"],
        churn_rate=round(churn, 1),
    )


def _usage_shortfall(limits: PlanLimits, usage: UsageSnapshot) -> Optional[tuple[str, int, float]]:
    for resource in ("students", "teachers", "storage_gb"):
        limit = getattr(limits, resource)
        current = usage.get(resource)
        if not is_unlimited(limit) and current > limit:
            return resource, limit, round(current, 2)
    return None


# ==================== Service ====================


class SubscriptionService:
    """Service for subscription state transitions."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PortOneClient] = None,
        usage: Optional[UsageAggregator] = None,
        alerts: AlertManager = alert_manager,
    ):
        self.session = session
        self.gateway = gateway
        self.alerts = alerts
        self.subscription_repo = SubscriptionRepository(session)
        self.invoice_repo = InvoiceRepository(session)
        self.usage = usage or UsageAggregator(session)

    async def get_subscription(self, academy_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_academy(academy_id)
        if subscription is None:
            raise NotFoundError(get_message("subscription.not_found"), resource="subscription")
        return subscription

    async def get_status(self, academy_id: uuid.UUID, today: Optional[date] = None) -> dict:
        """Subscription fields plus freshly computed usage and limit state."""
        today = today or date.today()
        subscription = await self.get_subscription(academy_id)
        usage = await self.usage.usage(academy_id)
        exceeded = exceeded_limits(subscription, usage)
        message, message_type = status_message(subscription)

        return {
            "subscription": subscription,
            "usage": usage,
            "limits": {
                "students": subscription.student_limit,
                "teachers": subscription.teacher_limit,
                "classrooms": subscription.classroom_limit,
                "storage_gb": subscription.storage_limit_gb,
            },
            "exceeded": exceeded,
            "within_limits": not exceeded,
            "is_active": subscription.is_active(today),
            "days_remaining": days_remaining(subscription.current_period_end, today),
            "status_message": message,
            "status_type": message_type,
        }

    # ==================== Subscribe & cancel ====================

    async def subscribe(
        self,
        academy_id: uuid.UUID,
        plan_tier: str,
        billing_cycle: str,
        billing_key: str,
        today: Optional[date] = None,
    ) -> SubscribeResult:
        """Start a paid subscription and charge its first period.

        The card is charged before anything is written, so a declined card
        leaves no subscription behind. An academy on the free tier, or whose
        paid subscription has lapsed or been canceled, reuses its row.

        Raises:
            ValidationError: Free or unknown tier, bad billing cycle, missing
                billing key, or an active paid subscription already exists
            GatewayError: The first charge was rejected
            PersistenceError: The charge went through but was not recorded
        """
        today = today or date.today()
        plan = get_plan(plan_tier)
        if plan_tier == PlanTier.FREE.value:
            raise ValidationError(
                get_message("subscription.free_not_purchasable"),
                field="planTier",
                code="free_not_purchasable",
            )
        plan.price_for(billing_cycle)
        if not billing_key:
            raise ValidationError(
                get_message("subscription.billing_key_required"), field="billingKey"
            )

        existing = await self.subscription_repo.get_by_academy(academy_id)
        if (
            existing is not None
            and existing.plan_tier != PlanTier.FREE.value
            and existing.is_active(today)
        ):
            raise ValidationError(
                get_message("subscription.already_subscribed"), code="already_subscribed"
            )
        if self.gateway is None:
            raise BillingEngineError(
                get_message("subscription.gateway_not_configured"),
                code="gateway_not_configured",
            )

        addons = AddonQuantities()
        amount = compute_monthly_amount(plan_tier, billing_cycle, addons)
        period_end = add_billing_period(today, billing_cycle, today.day)
        payment_id = f"acad_{academy_id.hex[:8]}_new_{uuid.uuid4().hex[:12]}"

        charge = await self.gateway.charge_billing_key(
            payment_id=payment_id,
            billing_key=billing_key,
            order_name=f"{plan.name} subscription",
            amount=amount,
            currency=settings.DEFAULT_CURRENCY,
        )
        logger.info(
            f"First charge {payment_id} of {amount} succeeded for academy {academy_id}",
            extra={"plan_tier": plan_tier, "billing_cycle": billing_cycle},
        )

        now = datetime.utcnow()
        limits = compute_limits(plan_tier, addons)
        fields = {
            "plan_tier": plan_tier,
            "status": SubscriptionStatus.ACTIVE.value,
            "billing_cycle": billing_cycle,
            "monthly_amount": amount,
            "auto_renew": True,
            "current_period_start": today,
            "current_period_end": period_end,
            "next_billing_date": period_end,
            "billing_anchor_day": today.day,
            "trial_ends_at": None,
            "last_payment_date": now,
            "billing_key": billing_key,
            "billing_key_issued_at": now,
            "student_limit": limits.students,
            "teacher_limit": limits.teachers,
            "classroom_limit": limits.classrooms,
            "storage_limit_gb": limits.storage_gb,
            "features_enabled": dict(plan.features),
            "additional_students": 0,
            "additional_teachers": 0,
            "additional_storage_gb": 0,
            "additional_ai_cards": 0,
            "canceled_at": None,
        }

        if existing is None:
            subscription = Subscription(id=uuid.uuid4(), academy_id=academy_id, **fields)
        else:
            subscription = existing
            for name, value in fields.items():
                setattr(subscription, name, value)
            _clear_pending_tier(subscription)
            _clear_pending_addons(subscription)

        invoice = Invoice(
            academy_id=academy_id,
            subscription_id=subscription.id,
            invoice_type=InvoiceType.INITIAL.value,
            amount=amount,
            currency=settings.DEFAULT_CURRENCY,
            status=InvoiceStatus.PAID.value,
            paid_at=now,
            billing_period_start=today,
            billing_period_end=period_end,
            plan_tier=plan_tier,
            billing_cycle=billing_cycle,
            payment_id=payment_id,
            receipt_url=charge.receipt_url,
            invoice_metadata={"portone_payment_id": payment_id},
        )

        # Subscription and its first invoice commit together
        try:
            self.session.add(subscription)
            await self.invoice_repo.add(invoice)
            subscription = await self.subscription_repo.save(subscription)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                f"First charge {payment_id} for academy {academy_id} succeeded "
                f"but could not be recorded: {e}",
                exc_info=True,
            )
            await self.alerts.fire(
                AlertName.BILLING_RECONCILIATION_REQUIRED,
                f"Academy {academy_id} charged {amount} for a new subscription "
                f"that was not recorded",
                key=payment_id,
                payment_id=payment_id,
                academy_id=str(academy_id),
                amount=amount,
            )
            raise PersistenceError(
                get_message("subscription.charged_not_recorded"),
                details={"payment_id": payment_id},
            ) from e

        logger.info(f"Academy {academy_id} subscribed to {plan_tier} ({billing_cycle})")
        return SubscribeResult(subscription=subscription, invoice=invoice, payment_id=payment_id)

    async def cancel(
        self,
        academy_id: uuid.UUID,
        immediate: bool = False,
        today: Optional[date] = None,
    ) -> CancelResult:
        """Stop renewing the subscription.

        By default the academy keeps its plan until the current period ends;
        ``immediate`` ends it now. Scheduled tier and add-on changes are
        dropped either way. Nothing is refunded here.
        """
        today = today or date.today()
        subscription = await self.get_subscription(academy_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise ValidationError(
                get_message("subscription.already_canceled"), code="already_canceled"
            )

        subscription.auto_renew = False
        subscription.canceled_at = datetime.utcnow()
        subscription.next_billing_date = None
        _clear_pending_tier(subscription)
        _clear_pending_addons(subscription)
        if immediate:
            subscription.status = SubscriptionStatus.CANCELED.value
            effective_date = today
        else:
            effective_date = subscription.current_period_end

        subscription = await self.subscription_repo.save(subscription)
        logger.info(
            f"Subscription canceled for academy {academy_id}, effective {effective_date}",
            extra={"immediate": immediate},
        )
        return CancelResult(
            subscription=subscription, effective_date=effective_date, immediate=immediate
        )

    async def offers(self, academy_id: Optional[uuid.UUID] = None, today: Optional[date] = None) -> list[PlanOffer]:
        subscription = None
        if academy_id is not None:
            subscription = await self.subscription_repo.get_by_academy(academy_id)
        return plan_offers(subscription, today)

    # ==================== Upgrade ====================

    async def upgrade(
        self,
        academy_id: uuid.UUID,
        target_tier: str,
        today: Optional[date] = None,
    ) -> UpgradeResult:
        """Move to a higher tier now and charge the prorated difference.

        Raises:
            ValidationError: Unknown tier, not an upgrade, or inactive subscription
            GatewayError: The proration charge was rejected; nothing is changed
                except a failed invoice being recorded
        """
        today = today or date.today()
        subscription = await self.get_subscription(academy_id)
        if not subscription.is_active(today):
            raise ValidationError(get_message("subscription.inactive"), code="subscription_inactive")

        if get_tier_change_type(subscription.plan_tier, target_tier) != TierChangeType.UPGRADE:
            raise ValidationError(
                get_message("subscription.not_upgrade"), field="targetTier", code="not_upgrade"
            )

        addons = carry_over_addons(target_tier, subscription.current_addons())
        addons_adjusted = addons != subscription.current_addons()
        pending_addons = subscription.pending_addons()
        if pending_addons is not None:
            pending_addons = carry_over_addons(target_tier, pending_addons)

        new_amount = compute_monthly_amount(target_tier, subscription.billing_cycle, addons)
        proration = prorate(
            subscription.monthly_amount,
            new_amount,
            subscription.current_period_start,
            subscription.current_period_end,
            today,
        )

        invoice = None
        if proration.amount > 0:
            invoice = await self._charge_proration(subscription, target_tier, proration, today)

        previous_tier = subscription.plan_tier
        _apply_plan(subscription, target_tier, addons, new_amount)
        _clear_pending_tier(subscription)
        if pending_addons is not None:
            subscription.pending_additional_students = pending_addons.students
            subscription.pending_additional_teachers = pending_addons.teachers
            subscription.pending_additional_storage_gb = pending_addons.storage_gb
            subscription.pending_additional_ai_cards = pending_addons.ai_cards

        subscription = await self.subscription_repo.save(subscription)
        logger.info(
            f"Academy {academy_id} upgraded {previous_tier} -> {target_tier}, "
            f"prorated charge {proration.amount}"
        )
        return UpgradeResult(
            subscription=subscription,
            proration=proration,
            invoice=invoice,
            previous_tier=previous_tier,
            addons_adjusted=addons_adjusted,
        )

    async def _charge_proration(
        self,
        subscription: Subscription,
        target_tier: str,
        proration: ProrationResult,
        today: date,
    ) -> Invoice:
        """Record the proration invoice and charge it when a billing key exists."""
        payment_id = (
            f"sub_{subscription.id.hex[:8]}_upgrade_{int(datetime.utcnow().timestamp() * 1000)}"
        )
        invoice = Invoice(
            academy_id=subscription.academy_id,
            subscription_id=subscription.id,
            invoice_type=InvoiceType.UPGRADE_PRORATION.value,
            amount=proration.amount,
            currency=settings.DEFAULT_CURRENCY,
            status=InvoiceStatus.PENDING.value,
            billing_period_start=today,
            billing_period_end=subscription.current_period_end,
            plan_tier=target_tier,
            billing_cycle=subscription.billing_cycle,
            payment_id=payment_id,
            invoice_metadata={
                "from_tier": subscription.plan_tier,
                "to_tier": target_tier,
                "days_remaining": proration.days_remaining,
                "total_days": proration.total_days,
            },
        )
        await self.invoice_repo.add(invoice)

        if self.gateway is None or not subscription.billing_key:
            return invoice

        try:
            charge = await self.gateway.charge_billing_key(
                payment_id=payment_id,
                billing_key=subscription.billing_key,
                order_name=f"{get_plan(target_tier).name} upgrade",
                amount=proration.amount,
                currency=invoice.currency,
            )
        except GatewayError as e:
            invoice.status = InvoiceStatus.FAILED.value
            invoice.failed_at = datetime.utcnow()
            invoice.failure_reason = e.message
            await self.invoice_repo.save(invoice)
            logger.warning(
                f"Upgrade charge failed for academy {subscription.academy_id}: {e.message}"
            )
            raise

        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = datetime.utcnow()
        invoice.receipt_url = charge.receipt_url
        subscription.last_payment_date = invoice.paid_at
        return invoice

    # ==================== Downgrade ====================

    async def request_downgrade(self, academy_id: uuid.UUID, target_tier: str) -> DowngradeResult:
        """Schedule a move to a lower tier at the next billing date.

        Current usage is validated against the target tier first; the current
        tier is never changed here.

        Raises:
            ValidationError: Unknown tier or not a downgrade
            DowngradeBlockedError: Usage exceeds the target tier's limits
        """
        subscription = await self.get_subscription(academy_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise ValidationError(get_message("subscription.inactive"), code="subscription_inactive")

        if get_tier_change_type(subscription.plan_tier, target_tier) != TierChangeType.DOWNGRADE:
            raise ValidationError(
                get_message("subscription.not_downgrade"), field="targetTier", code="not_downgrade"
            )

        addons = carry_over_addons(
            target_tier, subscription.pending_addons() or subscription.current_addons()
        )
        usage = await self.usage.usage(academy_id)
        violations = find_downgrade_violations(
            usage, target_tier, compute_limits(target_tier, addons)
        )
        if violations:
            logger.info(
                f"Downgrade blocked for academy {academy_id} to {target_tier}",
                extra={"violations": [v.metric for v in violations]},
            )
            raise DowngradeBlockedError(
                get_message("subscription.downgrade_blocked", plan=get_plan(target_tier).name),
                violations,
            )

        new_amount = compute_monthly_amount(target_tier, subscription.billing_cycle, addons)
        effective_date = subscription.next_billing_date or subscription.current_period_end

        subscription.pending_tier = target_tier
        subscription.pending_monthly_amount = new_amount
        subscription.pending_change_effective_date = effective_date
        await self.subscription_repo.save(subscription)

        logger.info(
            f"Downgrade scheduled for academy {academy_id}: "
            f"{subscription.plan_tier} -> {target_tier} on {effective_date}"
        )
        return DowngradeResult(
            current_tier=subscription.plan_tier,
            target_tier=target_tier,
            effective_date=effective_date,
            new_monthly_amount=new_amount,
        )

    async def cancel_pending_change(self, academy_id: uuid.UUID) -> Subscription:
        subscription = await self.get_subscription(academy_id)
        if not subscription.has_pending_tier_change():
            raise ValidationError(
                get_message("subscription.no_pending_change"), code="no_pending_change"
            )
        _clear_pending_tier(subscription)
        logger.info(f"Pending plan change canceled for academy {academy_id}")
        return await self.subscription_repo.save(subscription)

    # ==================== Add-ons ====================

    async def purchase_addons(
        self,
        academy_id: uuid.UUID,
        addons: AddonQuantities,
        immediate: bool = True,
        today: Optional[date] = None,
    ) -> AddonPurchaseResult:
        """Set the academy's add-on quantities.

        Quantities are totals, not increments. Immediate purchases change
        limits now and the amount billed from the next cycle; deferred ones
        are recorded as pending until the next billing date.

        Raises:
            ValidationError: Inactive subscription, invalid quantities, or new
                limits that would fall below current usage
        """
        subscription = await self.get_subscription(academy_id)
        if not subscription.is_active(today):
            raise ValidationError(get_message("subscription.inactive"), code="subscription_inactive")

        plan_tier = subscription.plan_tier
        if not immediate and subscription.pending_tier:
            plan_tier = subscription.pending_tier
        ensure_valid_addon_quantities(plan_tier, addons)

        limits = compute_limits(plan_tier, addons)
        usage = await self.usage.usage(academy_id)
        shortfall = _usage_shortfall(limits, usage)
        if shortfall is not None:
            resource, limit, current = shortfall
            raise ValidationError(
                get_message("addons.below_usage", resource=resource, limit=limit, current=current),
                field=resource,
                code="below_usage",
            )

        addon_cost = calculate_addon_cost(
            plan_tier, addons.students, addons.teachers, addons.storage_gb, addons.ai_cards
        )
        new_amount = compute_monthly_amount(plan_tier, subscription.billing_cycle, addons)

        if immediate:
            _apply_plan(subscription, plan_tier, addons, new_amount)
            _clear_pending_addons(subscription)
            effective_date = None
        else:
            effective_date = subscription.next_billing_date or subscription.current_period_end
            subscription.pending_additional_students = addons.students
            subscription.pending_additional_teachers = addons.teachers
            subscription.pending_additional_storage_gb = addons.storage_gb
            subscription.pending_additional_ai_cards = addons.ai_cards
            subscription.pending_addons_effective_date = effective_date
            if subscription.pending_tier:
                subscription.pending_monthly_amount = new_amount

        subscription = await self.subscription_repo.save(subscription)
        logger.info(
            f"Add-ons updated for academy {academy_id} "
            f"({'immediate' if immediate else f'effective {effective_date}'}), "
            f"amount {new_amount}"
        )
        return AddonPurchaseResult(
            subscription=subscription,
            addons=addons,
            addon_cost=addon_cost,
            new_monthly_amount=new_amount,
            effective_date=effective_date,
            applied_immediately=immediate,
        )

    # ==================== Rollover & invoices ====================

    async def rollover(self, academy_id: uuid.UUID, today: Optional[date] = None) -> Subscription:
        """Apply due pending changes for one academy and persist them."""
        subscription = await self.get_subscription(academy_id)
        if apply_rollover(subscription, today):
            subscription = await self.subscription_repo.save(subscription)
        return subscription

    async def list_invoices(
        self,
        academy_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        return await self.invoice_repo.list_by_academy(academy_id, limit=limit, offset=offset)

    # ==================== Admin ====================

    async def list_subscriptions(
        self,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        return await self.subscription_repo.list_page(status=status, limit=limit, offset=offset)

    async def metrics(self, now: Optional[datetime] = None) -> SubscriptionMetrics:
        """MRR, ARR and 30-day churn across every academy."""
        now = now or datetime.utcnow()
        raw = await self.subscription_repo.metrics(since=now - timedelta(days=METRICS_WINDOW_DAYS))
        return build_metrics(raw)

    async def list_all_invoices(
        self,
        subscription_id: Optional[uuid.UUID] = None,
        academy_id: Optional[uuid.UUID] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        if subscription_id is None and academy_id is None:
            raise ValidationError(
                get_message("admin.invoice_filter_required"), field="subscriptionId"
            )
        return await self.invoice_repo.list_for_admin(
            subscription_id=subscription_id, academy_id=academy_id, limit=limit, offset=offset
        )
