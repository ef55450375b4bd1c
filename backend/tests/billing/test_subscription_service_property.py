"""Property-based tests for subscription state transitions.

**Feature: academy-billing, Property 7: Downgrade Rejection**
**Validates: Requirements 4.8, 8**
"""

import uuid
from datetime import date, timedelta
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy.exc import OperationalError

from academy_billing.core.alerting import AlertManager, AlertName
from academy_billing.core.exceptions import (
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from academy_billing.modules.billing.addons import AddonQuantities
from academy_billing.modules.billing.models import (
    InvoiceStatus,
    InvoiceType,
    Subscription,
    SubscriptionStatus,
)
from academy_billing.modules.billing.plans import PlanLimits, get_plan
from academy_billing.modules.billing.proration import prorate
from academy_billing.modules.billing.service import (
    DowngradeBlockedError,
    SubscriptionService,
    apply_rollover,
    build_metrics,
    carry_over_addons,
    compute_limits,
    compute_monthly_amount,
    find_downgrade_violations,
    plan_offers,
    plan_rollover,
    status_message,
)
from academy_billing.modules.billing.usage import BYTES_PER_GB, UsageSnapshot
from academy_billing.modules.payment_gateway.client import ChargeResult


TODAY = date(2025, 6, 15)
PERIOD_START = date(2025, 6, 1)
PERIOD_END = date(2025, 7, 1)


def make_subscription(
    tier: str = "basic",
    status: str = SubscriptionStatus.ACTIVE.value,
    billing_cycle: str = "monthly",
    addons: AddonQuantities = AddonQuantities(),
    billing_key: Optional[str] = None,
) -> Subscription:
    limits = compute_limits(tier, addons)
    return Subscription(
        id=uuid.uuid4(),
        academy_id=uuid.uuid4(),
        plan_tier=tier,
        status=status,
        billing_cycle=billing_cycle,
        monthly_amount=compute_monthly_amount(tier, billing_cycle, addons),
        auto_renew=True,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        next_billing_date=PERIOD_END,
        billing_key=billing_key,
        student_limit=limits.students,
        teacher_limit=limits.teachers,
        classroom_limit=limits.classrooms,
        storage_limit_gb=limits.storage_gb,
        features_enabled=dict(get_plan(tier).features),
        additional_students=addons.students,
        additional_teachers=addons.teachers,
        additional_storage_gb=addons.storage_gb,
        additional_ai_cards=addons.ai_cards,
    )


def make_service(
    subscription: Optional[Subscription],
    usage: UsageSnapshot = UsageSnapshot(),
    gateway=None,
) -> SubscriptionService:
    aggregator = AsyncMock()
    aggregator.usage.return_value = usage
    service = SubscriptionService(MagicMock(), gateway=gateway, usage=aggregator)

    service.subscription_repo = AsyncMock()
    service.subscription_repo.get_by_academy.return_value = subscription
    service.subscription_repo.save.side_effect = lambda s: s

    service.invoice_repo = AsyncMock()
    service.invoice_repo.add.side_effect = lambda i: i
    service.invoice_repo.save.side_effect = lambda i: i
    return service


class TestDowngradeRejection:
    """Property tests for downgrade rejection.

    **Feature: academy-billing, Property 7: Downgrade Rejection**
    **Validates: Requirements 4.8, 8**
    """

    @pytest.mark.asyncio
    async def test_sixty_students_cannot_fit_fifty_student_tier(self) -> None:
        """**Feature: academy-billing, Property 7: Downgrade Rejection**

        A tenant with 60 students downgrading to a 50-student tier SHALL be
        rejected with a violation citing 60 and 50.
        """
        subscription = make_subscription("basic")
        service = make_service(subscription, UsageSnapshot(students=60, teachers=3))

        with pytest.raises(DowngradeBlockedError) as exc_info:
            await service.request_downgrade(subscription.academy_id, "individual")

        violations = exc_info.value.violations
        assert len(violations) == 1
        assert violations[0].metric == "students"
        assert violations[0].current == 60
        assert violations[0].limit == 50
        assert "60" in violations[0].message and "50" in violations[0].message
        assert exc_info.value.status_code == 400
        assert subscription.pending_tier is None
        service.subscription_repo.save.assert_not_awaited()

    @given(
        students=st.integers(min_value=0, max_value=200),
        teachers=st.integers(min_value=0, max_value=20),
        storage_gb=st.integers(min_value=0, max_value=20),
    )
    @settings(max_examples=100)
    def test_violations_list_exactly_the_overages(
        self,
        students: int,
        teachers: int,
        storage_gb: int,
    ) -> None:
        """**Feature: academy-billing, Property 7: Downgrade Rejection**

        *For any* usage, violations SHALL name exactly the metrics above the
        target limits.
        """
        limits = PlanLimits(students=50, teachers=5, classrooms=10, storage_gb=5)
        usage = UsageSnapshot(
            students=students, teachers=teachers, storage_bytes=storage_gb * BYTES_PER_GB
        )

        violations = find_downgrade_violations(usage, "individual", limits)

        expected = {
            metric
            for metric, current, limit in (
                ("students", students, 50),
                ("teachers", teachers, 5),
                ("storage_gb", storage_gb, 5),
            )
            if current > limit
        }
        assert {v.metric for v in violations} == expected

    @pytest.mark.asyncio
    async def test_fitting_downgrade_is_scheduled_not_applied(self) -> None:
        subscription = make_subscription("pro")
        service = make_service(subscription, UsageSnapshot(students=80, teachers=8))

        result = await service.request_downgrade(subscription.academy_id, "basic")

        assert result.effective_date == PERIOD_END
        assert result.new_monthly_amount == 50000
        assert subscription.plan_tier == "pro"
        assert subscription.student_limit == 500
        assert subscription.pending_tier == "basic"
        assert subscription.pending_monthly_amount == 50000
        assert subscription.pending_change_effective_date == PERIOD_END

    @pytest.mark.asyncio
    async def test_upgrade_target_is_not_a_downgrade(self) -> None:
        subscription = make_subscription("basic")
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.request_downgrade(subscription.academy_id, "pro")

        assert exc_info.value.code == "not_downgrade"

    @pytest.mark.asyncio
    async def test_unknown_tier_rejected(self) -> None:
        subscription = make_subscription("basic")
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.request_downgrade(subscription.academy_id, "bronze")

        assert exc_info.value.code == "invalid_tier"

    @pytest.mark.asyncio
    async def test_missing_subscription_not_found(self) -> None:
        service = make_service(None)

        with pytest.raises(NotFoundError):
            await service.request_downgrade(uuid.uuid4(), "free")

    @pytest.mark.asyncio
    async def test_cancel_pending_change_clears_fields(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_monthly_amount = 50000
        subscription.pending_change_effective_date = PERIOD_END
        service = make_service(subscription)

        await service.cancel_pending_change(subscription.academy_id)

        assert subscription.pending_tier is None
        assert subscription.pending_monthly_amount is None
        assert subscription.pending_change_effective_date is None

    @pytest.mark.asyncio
    async def test_cancel_without_pending_change_rejected(self) -> None:
        subscription = make_subscription("pro")
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.cancel_pending_change(subscription.academy_id)

        assert exc_info.value.code == "no_pending_change"


class TestUpgrade:
    """Tests for immediate prorated upgrades.

    **Feature: academy-billing, Property 8: Upgrade Proration**
    **Validates: Requirements 4.4, 4.8, 10.8**
    """

    @pytest.mark.asyncio
    async def test_upgrade_applies_tier_and_charges_proration(self) -> None:
        subscription = make_subscription("basic", billing_key="bk_test")
        gateway = AsyncMock()
        gateway.charge_billing_key.return_value = ChargeResult(
            payment_id="p", receipt_url="https://receipts.example/1"
        )
        service = make_service(subscription, gateway=gateway)

        result = await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        # 16 of 30 days of a 100000 difference
        assert result.proration.days_remaining == 16
        assert result.proration.amount == 53333
        assert result.previous_tier == "basic"
        assert subscription.plan_tier == "pro"
        assert subscription.monthly_amount == 150000
        assert subscription.student_limit == 500
        assert result.invoice.status == InvoiceStatus.PAID.value
        assert result.invoice.invoice_type == InvoiceType.UPGRADE_PRORATION.value
        assert result.invoice.amount == 53333
        assert result.invoice.receipt_url == "https://receipts.example/1"
        gateway.charge_billing_key.assert_awaited_once()
        assert gateway.charge_billing_key.await_args.kwargs["amount"] == 53333

    @pytest.mark.asyncio
    async def test_upgrade_without_gateway_leaves_invoice_pending(self) -> None:
        subscription = make_subscription("basic")
        service = make_service(subscription)

        result = await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        assert result.invoice.status == InvoiceStatus.PENDING.value
        assert subscription.plan_tier == "pro"

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_tier_and_records_failed_invoice(self) -> None:
        subscription = make_subscription("basic", billing_key="bk_test")
        gateway = AsyncMock()
        gateway.charge_billing_key.side_effect = GatewayError(
            "Card declined", status_code=400, details={"type": "PG_PROVIDER"}
        )
        service = make_service(subscription, gateway=gateway)

        with pytest.raises(GatewayError):
            await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        assert subscription.plan_tier == "basic"
        failed_invoice = service.invoice_repo.save.await_args.args[0]
        assert failed_invoice.status == InvoiceStatus.FAILED.value
        assert failed_invoice.failure_reason == "Card declined"
        service.subscription_repo.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upgrade_clears_pending_downgrade(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_monthly_amount = 50000
        subscription.pending_change_effective_date = PERIOD_END
        service = make_service(subscription)

        await service.upgrade(subscription.academy_id, "enterprise", today=TODAY)

        assert subscription.plan_tier == "enterprise"
        assert subscription.pending_tier is None
        assert subscription.pending_change_effective_date is None

    @pytest.mark.asyncio
    async def test_upgrade_on_day_one_charges_full_difference(self) -> None:
        subscription = make_subscription("basic")
        service = make_service(subscription)

        result = await service.upgrade(subscription.academy_id, "pro", today=PERIOD_START)

        assert result.proration.amount == 100000

    @pytest.mark.asyncio
    async def test_downgrade_target_is_not_an_upgrade(self) -> None:
        subscription = make_subscription("pro")
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.upgrade(subscription.academy_id, "basic", today=TODAY)

        assert exc_info.value.code == "not_upgrade"

    @pytest.mark.asyncio
    async def test_inactive_subscription_cannot_upgrade(self) -> None:
        subscription = make_subscription("basic", status=SubscriptionStatus.PAST_DUE.value)
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        assert exc_info.value.code == "subscription_inactive"

    @pytest.mark.asyncio
    async def test_upgrade_carries_addons(self) -> None:
        subscription = make_subscription("basic", addons=AddonQuantities(students=20, storage_gb=10))
        service = make_service(subscription)

        await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        assert subscription.additional_students == 20
        assert subscription.student_limit == 520
        assert subscription.storage_limit_gb == 60
        assert subscription.monthly_amount == 150000 + 50000 + 15000

    @pytest.mark.asyncio
    async def test_upgrade_rounds_addons_up_to_larger_increment(self) -> None:
        subscription = make_subscription("individual", addons=AddonQuantities(students=5))
        service = make_service(subscription)

        result = await service.upgrade(subscription.academy_id, "basic", today=TODAY)

        assert subscription.plan_tier == "basic"
        assert subscription.additional_students == 10
        assert subscription.student_limit == 110
        assert subscription.monthly_amount == 50000 + 25000
        # 16 of 30 days of the 75000 - 39000 difference
        assert result.proration.amount == 19200
        assert result.addons_adjusted is True

    @pytest.mark.asyncio
    async def test_upgrade_with_matching_increments_is_not_adjusted(self) -> None:
        subscription = make_subscription("basic", addons=AddonQuantities(students=20))
        service = make_service(subscription)

        result = await service.upgrade(subscription.academy_id, "pro", today=TODAY)

        assert result.addons_adjusted is False


class TestAddonPurchase:
    """Tests for add-on purchases.

    **Feature: academy-billing, Property 4: Add-on Cost**
    **Validates: Requirements 4.5, 10.8**
    """

    @pytest.mark.asyncio
    async def test_immediate_purchase_raises_limits_and_amount(self) -> None:
        subscription = make_subscription("basic")
        subscription.current_period_end = date.today() + timedelta(days=10)
        service = make_service(subscription)

        result = await service.purchase_addons(
            subscription.academy_id, AddonQuantities(students=20), immediate=True
        )

        assert result.addon_cost == 50000
        assert result.new_monthly_amount == 100000
        assert result.applied_immediately is True
        assert subscription.student_limit == 120
        assert subscription.additional_students == 20
        assert subscription.monthly_amount == 100000

    @pytest.mark.asyncio
    async def test_deferred_purchase_is_pending_until_next_billing(self) -> None:
        subscription = make_subscription("basic")
        subscription.current_period_end = date.today() + timedelta(days=10)
        service = make_service(subscription)

        result = await service.purchase_addons(
            subscription.academy_id, AddonQuantities(storage_gb=5), immediate=False
        )

        assert result.effective_date == subscription.next_billing_date
        assert subscription.storage_limit_gb == 10
        assert subscription.pending_additional_storage_gb == 5
        assert subscription.pending_addons_effective_date == subscription.next_billing_date

    @pytest.mark.asyncio
    async def test_reduction_below_usage_rejected(self) -> None:
        subscription = make_subscription("basic", addons=AddonQuantities(students=20))
        subscription.current_period_end = date.today() + timedelta(days=10)
        service = make_service(subscription, UsageSnapshot(students=115))

        with pytest.raises(ValidationError) as exc_info:
            await service.purchase_addons(
                subscription.academy_id, AddonQuantities(students=10), immediate=True
            )

        assert exc_info.value.code == "below_usage"
        assert exc_info.value.field == "students"
        assert subscription.additional_students == 20

    @pytest.mark.asyncio
    async def test_invalid_increment_rejected(self) -> None:
        subscription = make_subscription("basic")
        subscription.current_period_end = date.today() + timedelta(days=10)
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.purchase_addons(subscription.academy_id, AddonQuantities(students=7))

        assert exc_info.value.field == "students"

    @pytest.mark.asyncio
    async def test_inactive_subscription_cannot_buy(self) -> None:
        subscription = make_subscription("basic", status=SubscriptionStatus.CANCELED.value)
        service = make_service(subscription)

        with pytest.raises(ValidationError):
            await service.purchase_addons(subscription.academy_id, AddonQuantities(students=10))


class TestRollover:
    """Tests for the billing-boundary rollover of pending changes.

    **Feature: academy-billing, Property 9: Billing Rollover**
    **Validates: Requirements 4.8**
    """

    def test_nothing_due_before_effective_date(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_change_effective_date = PERIOD_END

        assert plan_rollover(subscription, PERIOD_END - timedelta(days=1)) is None
        assert apply_rollover(subscription, PERIOD_END - timedelta(days=1)) is False
        assert subscription.plan_tier == "pro"

    def test_pending_downgrade_applied_on_effective_date(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_monthly_amount = 50000
        subscription.pending_change_effective_date = PERIOD_END

        assert apply_rollover(subscription, PERIOD_END) is True

        assert subscription.plan_tier == "basic"
        assert subscription.student_limit == 100
        assert subscription.monthly_amount == 50000
        assert subscription.features_enabled["api_access"] is False
        assert subscription.pending_tier is None
        assert subscription.pending_change_effective_date is None

    def test_pending_addons_applied_with_tier(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_change_effective_date = PERIOD_END
        subscription.pending_additional_students = 10
        subscription.pending_additional_teachers = 0
        subscription.pending_additional_storage_gb = 5
        subscription.pending_additional_ai_cards = 0
        subscription.pending_addons_effective_date = PERIOD_END

        apply_rollover(subscription, PERIOD_END)

        assert subscription.additional_students == 10
        assert subscription.student_limit == 110
        assert subscription.storage_limit_gb == 15
        assert subscription.monthly_amount == 50000 + 25000 + 12000
        assert subscription.pending_addons_effective_date is None

    def test_downgrade_to_free_drops_addons(self) -> None:
        subscription = make_subscription("basic", addons=AddonQuantities(students=10))
        subscription.pending_tier = "free"
        subscription.pending_change_effective_date = PERIOD_END

        apply_rollover(subscription, PERIOD_END)

        assert subscription.plan_tier == "free"
        assert subscription.additional_students == 0
        assert subscription.student_limit == 20
        assert subscription.monthly_amount == 0

    def test_carry_over_drops_ai_cards_where_unsold(self) -> None:
        addons = carry_over_addons("pro", AddonQuantities(students=10, ai_cards=100))

        assert addons == AddonQuantities(students=10)

    def test_carry_over_rounds_up_to_target_increments(self) -> None:
        addons = carry_over_addons("basic", AddonQuantities(students=5, teachers=15, storage_gb=3))

        assert addons == AddonQuantities(students=10, teachers=20, storage_gb=5)

    def test_yearly_amount_includes_twelve_months_of_addons(self) -> None:
        amount = compute_monthly_amount("basic", "yearly", AddonQuantities(students=10))

        assert amount == 500000 + 25000 * 12

    def test_unlimited_stays_unlimited_with_addons(self) -> None:
        limits = compute_limits("enterprise", AddonQuantities(students=10, storage_gb=20))

        assert limits.students == -1
        assert limits.storage_gb == -1


class TestStatusMessage:

    @pytest.mark.parametrize(
        "status,expected_type",
        [
            (SubscriptionStatus.ACTIVE.value, "success"),
            (SubscriptionStatus.TRIALING.value, "success"),
            (SubscriptionStatus.PAST_DUE.value, "warning"),
            (SubscriptionStatus.CANCELED.value, "error"),
        ],
    )
    def test_status_types(self, status, expected_type):
        message, message_type = status_message(make_subscription(status=status))

        assert message
        assert message_type == expected_type

    def test_missing_subscription_is_error(self):
        _, message_type = status_message(None)

        assert message_type == "error"

    @pytest.mark.asyncio
    async def test_get_status_reports_exceeded_limits(self):
        subscription = make_subscription("basic")
        service = make_service(subscription, UsageSnapshot(students=150))

        status = await service.get_status(subscription.academy_id, today=TODAY)

        assert status["within_limits"] is False
        assert status["exceeded"] == [{"resource": "students", "current": 150, "limit": 100}]
        assert status["is_active"] is True
        assert status["days_remaining"] == 16


class TestSubscribe:
    """Tests for a first paid signup."""

    @staticmethod
    def _gateway(receipt_url: str = "https://receipt/1") -> AsyncMock:
        gateway = AsyncMock()

        async def charge(**kwargs):
            return ChargeResult(payment_id=kwargs["payment_id"], receipt_url=receipt_url)

        gateway.charge_billing_key.side_effect = charge
        return gateway

    @pytest.mark.asyncio
    async def test_new_academy_is_charged_then_recorded(self) -> None:
        gateway = self._gateway()
        service = make_service(None, gateway=gateway)
        academy_id = uuid.uuid4()

        result = await service.subscribe(academy_id, "basic", "monthly", "bk_new", today=TODAY)

        charge = gateway.charge_billing_key.await_args.kwargs
        assert charge["amount"] == 50000
        assert charge["billing_key"] == "bk_new"
        assert charge["payment_id"] == result.payment_id

        subscription = result.subscription
        assert subscription.academy_id == academy_id
        assert subscription.plan_tier == "basic"
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.current_period_start == TODAY
        assert subscription.current_period_end == date(2025, 7, 15)
        assert subscription.next_billing_date == date(2025, 7, 15)
        assert subscription.billing_anchor_day == 15
        assert subscription.student_limit == 100
        assert subscription.features_enabled == get_plan("basic").features

        invoice = result.invoice
        assert invoice.invoice_type == InvoiceType.INITIAL.value
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.subscription_id == subscription.id
        assert invoice.payment_id == result.payment_id
        assert invoice.receipt_url == "https://receipt/1"
        service.invoice_repo.add.assert_awaited_once()
        service.subscription_repo.save.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_free_academy_reuses_its_row(self) -> None:
        free = make_subscription("free")
        free.pending_tier = "free"
        service = make_service(free, gateway=self._gateway())

        result = await service.subscribe(free.academy_id, "pro", "yearly", "bk", today=TODAY)

        assert result.subscription is free
        assert free.plan_tier == "pro"
        assert free.monthly_amount == 1500000
        assert free.current_period_end == date(2026, 6, 15)
        assert free.pending_tier is None

    @pytest.mark.asyncio
    async def test_active_paid_academy_cannot_subscribe_again(self) -> None:
        gateway = self._gateway()
        subscription = make_subscription("basic")
        service = make_service(subscription, gateway=gateway)

        with pytest.raises(ValidationError) as exc_info:
            await service.subscribe(subscription.academy_id, "pro", "monthly", "bk", today=TODAY)

        assert exc_info.value.code == "already_subscribed"
        gateway.charge_billing_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lapsed_paid_academy_may_subscribe_again(self) -> None:
        lapsed = make_subscription("basic", status=SubscriptionStatus.CANCELED.value)
        lapsed.canceled_at = None
        service = make_service(lapsed, gateway=self._gateway())

        result = await service.subscribe(lapsed.academy_id, "basic", "monthly", "bk", today=TODAY)

        assert result.subscription.status == SubscriptionStatus.ACTIVE.value
        assert result.subscription.auto_renew is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tier,cycle,billing_key,code",
        [
            ("free", "monthly", "bk", "free_not_purchasable"),
            ("platinum", "monthly", "bk", "invalid_tier"),
            ("basic", "weekly", "bk", "validation_error"),
            ("basic", "monthly", "", "validation_error"),
        ],
    )
    async def test_invalid_requests_are_rejected_before_charging(
        self, tier: str, cycle: str, billing_key: str, code: str
    ) -> None:
        gateway = self._gateway()
        service = make_service(None, gateway=gateway)

        with pytest.raises(ValidationError) as exc_info:
            await service.subscribe(uuid.uuid4(), tier, cycle, billing_key, today=TODAY)

        assert exc_info.value.code == code
        gateway.charge_billing_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_declined_card_writes_nothing(self) -> None:
        gateway = AsyncMock()
        gateway.charge_billing_key.side_effect = GatewayError("Card declined", status_code=400)
        service = make_service(None, gateway=gateway)

        with pytest.raises(GatewayError):
            await service.subscribe(uuid.uuid4(), "basic", "monthly", "bk", today=TODAY)

        service.invoice_repo.add.assert_not_awaited()
        service.subscription_repo.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_write_after_first_charge_fires_reconciliation_alert(self) -> None:
        alerts = AlertManager()
        service = make_service(None, gateway=self._gateway())
        service.alerts = alerts
        service.session = MagicMock()
        service.session.rollback = AsyncMock()
        service.subscription_repo.save.side_effect = OperationalError(
            "COMMIT", {}, Exception("connection lost")
        )

        with pytest.raises(PersistenceError) as exc_info:
            await service.subscribe(uuid.uuid4(), "basic", "monthly", "bk", today=TODAY)

        payment_id = exc_info.value.details["payment_id"]
        service.session.rollback.assert_awaited_once()
        fired = alerts.get_alert_history(name=AlertName.BILLING_RECONCILIATION_REQUIRED.value)
        assert len(fired) == 1
        assert fired[0].context["payment_id"] == payment_id
        assert fired[0].context["amount"] == 50000


class TestCancel:
    """Tests for stopping renewal."""

    @pytest.mark.asyncio
    async def test_cancel_keeps_plan_until_period_end(self) -> None:
        subscription = make_subscription("pro")
        subscription.pending_tier = "basic"
        subscription.pending_change_effective_date = PERIOD_END
        service = make_service(subscription)

        result = await service.cancel(subscription.academy_id, today=TODAY)

        assert result.effective_date == PERIOD_END
        assert result.immediate is False
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.auto_renew is False
        assert subscription.canceled_at is not None
        assert subscription.next_billing_date is None
        assert subscription.pending_tier is None
        assert subscription.is_active(TODAY)

    @pytest.mark.asyncio
    async def test_immediate_cancel_ends_now(self) -> None:
        subscription = make_subscription("basic")
        service = make_service(subscription)

        result = await service.cancel(subscription.academy_id, immediate=True, today=TODAY)

        assert result.effective_date == TODAY
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert not subscription.is_active(TODAY)

    @pytest.mark.asyncio
    async def test_cancel_twice_is_rejected(self) -> None:
        subscription = make_subscription("basic", status=SubscriptionStatus.CANCELED.value)
        service = make_service(subscription)

        with pytest.raises(ValidationError) as exc_info:
            await service.cancel(subscription.academy_id, today=TODAY)

        assert exc_info.value.code == "already_canceled"
        service.subscription_repo.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_without_subscription_is_not_found(self) -> None:
        service = make_service(None)
        with pytest.raises(NotFoundError):
            await service.cancel(uuid.uuid4(), today=TODAY)


class TestPlanOffers:
    """Tests for the plan listing."""

    def test_anonymous_listing_marks_free_as_current(self) -> None:
        offers = plan_offers(None, today=TODAY)

        assert [o.tier for o in offers] == ["free", "individual", "basic", "pro", "enterprise"]
        assert [o.tier for o in offers if o.is_current_plan] == ["free"]
        assert [o.tier for o in offers if o.recommended] == ["pro"]
        assert all(o.upgrade_proration is None for o in offers)

    def test_only_higher_tiers_carry_upgrade_proration(self) -> None:
        subscription = make_subscription("basic")
        offers = {o.tier: o for o in plan_offers(subscription, today=TODAY)}

        assert offers["basic"].is_current_plan
        assert offers["free"].upgrade_proration is None
        assert offers["individual"].upgrade_proration is None
        assert offers["basic"].upgrade_proration is None
        expected = prorate(
            subscription.monthly_amount,
            compute_monthly_amount("pro", "monthly", AddonQuantities()),
            PERIOD_START,
            PERIOD_END,
            TODAY,
        ).amount
        assert offers["pro"].upgrade_proration == expected
        assert offers["enterprise"].upgrade_proration > expected

    def test_lapsed_subscription_gets_no_proration(self) -> None:
        subscription = make_subscription("basic", status=SubscriptionStatus.CANCELED.value)
        offers = plan_offers(subscription, today=TODAY)
        assert all(o.upgrade_proration is None for o in offers)


class TestMetrics:
    def test_churn_is_share_of_all_subscriptions(self) -> None:
        metrics = build_metrics({"total": 3, "mrr": 100000, "active": 2, "new": 1, "canceled": 1})

        assert metrics.arr == 1200000
        assert metrics.churn_rate == 33.3

    def test_no_subscriptions_means_no_churn(self) -> None:
        metrics = build_metrics({"total": 0, "mrr": 0, "active": 0, "new": 0, "canceled": 0})

        assert metrics.churn_rate == 0.0

    @pytest.mark.asyncio
    async def test_invoice_listing_needs_subscription_or_academy(self) -> None:
        service = make_service(None)

        with pytest.raises(ValidationError):
            await service.list_all_invoices()

        service.invoice_repo.list_for_admin.assert_not_awaited()
