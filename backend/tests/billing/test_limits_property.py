"""Property-based tests for limit enforcement.

**Feature: academy-billing, Property 5: Unlimited Sentinel**
**Validates: Requirements 4.7, 8**
"""

import asyncio
import uuid
from datetime import date, timedelta
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings, strategies as st

from academy_billing.core.exceptions import LimitExceededError
from academy_billing.core.store import InMemoryKeyValueStore, TenantLock
from academy_billing.modules.billing.limits import (
    DecisionReason,
    LimitGate,
    ResourceKind,
    evaluate_limit,
    exceeded_limits,
)
from academy_billing.modules.billing.models import Subscription, SubscriptionStatus
from academy_billing.modules.billing.plans import UNLIMITED, get_plan
from academy_billing.modules.billing.usage import BYTES_PER_GB, UsageSnapshot


TODAY = date(2025, 6, 15)


def make_subscription(
    tier: str = "basic",
    status: str = SubscriptionStatus.ACTIVE.value,
    period_end: date = TODAY + timedelta(days=15),
    student_limit: Optional[int] = None,
    teacher_limit: Optional[int] = None,
    classroom_limit: Optional[int] = None,
    storage_limit_gb: Optional[int] = None,
) -> Subscription:
    plan = get_plan(tier)
    limits = plan.limits
    return Subscription(
        id=uuid.uuid4(),
        academy_id=uuid.uuid4(),
        plan_tier=tier,
        status=status,
        billing_cycle="monthly",
        monthly_amount=plan.monthly_price,
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
        next_billing_date=period_end,
        student_limit=limits.students if student_limit is None else student_limit,
        teacher_limit=limits.teachers if teacher_limit is None else teacher_limit,
        classroom_limit=limits.classrooms if classroom_limit is None else classroom_limit,
        storage_limit_gb=limits.storage_gb if storage_limit_gb is None else storage_limit_gb,
        features_enabled=dict(plan.features),
    )


numeric_kind_strategy = st.sampled_from([
    ResourceKind.STUDENT_ADD,
    ResourceKind.TEACHER_ADD,
    ResourceKind.CLASSROOM_ADD,
    ResourceKind.STORAGE_ADD,
])

usage_strategy = st.builds(
    UsageSnapshot,
    students=st.integers(min_value=0, max_value=10**7),
    teachers=st.integers(min_value=0, max_value=10**6),
    managers=st.integers(min_value=0, max_value=1000),
    parents=st.integers(min_value=0, max_value=10**6),
    classrooms=st.integers(min_value=0, max_value=10**6),
    storage_bytes=st.integers(min_value=0, max_value=10**15),
)


class TestUnlimitedSentinel:
    """Property tests for the unlimited limit sentinel.

    **Feature: academy-billing, Property 5: Unlimited Sentinel**
    **Validates: Requirements 4.7, 8**
    """

    @given(
        kind=numeric_kind_strategy,
        usage=usage_strategy,
        delta=st.integers(min_value=0, max_value=10**12),
    )
    @settings(max_examples=100)
    def test_unlimited_always_allows(
        self,
        kind: ResourceKind,
        usage: UsageSnapshot,
        delta: int,
    ) -> None:
        """**Feature: academy-billing, Property 5: Unlimited Sentinel**

        *For any* usage magnitude and request size, a limit of -1 SHALL
        always be allowed.
        """
        subscription = make_subscription("enterprise")

        decision = evaluate_limit(subscription, usage, kind, delta, today=TODAY)

        assert decision.allowed, f"{kind.value} denied with unlimited plan: {decision.message}"
        assert decision.reason == DecisionReason.UNLIMITED
        assert decision.limit == UNLIMITED

    @given(usage=usage_strategy)
    @settings(max_examples=100)
    def test_unlimited_never_reported_as_exceeded(self, usage: UsageSnapshot) -> None:
        """**Feature: academy-billing, Property 5: Unlimited Sentinel**

        *For any* usage, an unlimited plan SHALL have no exceeded limits.
        """
        assert exceeded_limits(make_subscription("enterprise"), usage) == []


class TestLimitDecisions:
    """Property tests for finite limit decisions.

    **Feature: academy-billing, Property 6: Limit Enforcement**
    **Validates: Requirements 4.7**
    """

    @given(
        limit=st.integers(min_value=0, max_value=1000),
        current=st.integers(min_value=0, max_value=1000),
        delta=st.integers(min_value=0, max_value=100),
    )
    @settings(max_examples=100)
    def test_student_add_allowed_iff_within_limit(
        self,
        limit: int,
        current: int,
        delta: int,
    ) -> None:
        """**Feature: academy-billing, Property 6: Limit Enforcement**

        *For any* finite limit, adding students SHALL be allowed exactly when
        current plus requested stays within the limit.
        """
        subscription = make_subscription(student_limit=limit)
        usage = UsageSnapshot(students=current)

        decision = evaluate_limit(subscription, usage, ResourceKind.STUDENT_ADD, delta, today=TODAY)

        assert decision.allowed == (current + delta <= limit)
        assert decision.current == current
        assert decision.limit == limit
        if not decision.allowed:
            assert decision.code == "STUDENT_LIMIT_EXCEEDED"
            assert decision.reason == DecisionReason.LIMIT_EXCEEDED

    @given(
        kind=numeric_kind_strategy,
        usage=usage_strategy,
        status=st.sampled_from([SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.CANCELED.value]),
    )
    @settings(max_examples=100)
    def test_inactive_subscription_always_denied(
        self,
        kind: ResourceKind,
        usage: UsageSnapshot,
        status: str,
    ) -> None:
        """**Feature: academy-billing, Property 6: Limit Enforcement**

        *For any* usage, an inactive subscription SHALL be denied before any
        limit is compared.
        """
        subscription = make_subscription("enterprise", status=status)

        decision = evaluate_limit(subscription, usage, kind, 1, today=TODAY)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.SUBSCRIPTION_INACTIVE
        assert decision.code == "SUBSCRIPTION_INACTIVE"

    def test_lapsed_period_is_inactive(self) -> None:
        subscription = make_subscription(period_end=TODAY - timedelta(days=1))

        decision = evaluate_limit(subscription, UsageSnapshot(), ResourceKind.STUDENT_ADD, today=TODAY)

        assert decision.reason == DecisionReason.SUBSCRIPTION_INACTIVE

    def test_period_end_day_is_still_active(self) -> None:
        subscription = make_subscription(period_end=TODAY)

        decision = evaluate_limit(subscription, UsageSnapshot(), ResourceKind.STUDENT_ADD, today=TODAY)

        assert decision.allowed is True

    def test_trialing_counts_as_active(self) -> None:
        subscription = make_subscription(status=SubscriptionStatus.TRIALING.value)

        decision = evaluate_limit(subscription, UsageSnapshot(), ResourceKind.TEACHER_ADD, today=TODAY)

        assert decision.allowed is True

    def test_missing_subscription_denied(self) -> None:
        decision = evaluate_limit(None, UsageSnapshot(), ResourceKind.STUDENT_ADD, today=TODAY)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.SUBSCRIPTION_INACTIVE

    def test_storage_delta_is_bytes(self) -> None:
        subscription = make_subscription(storage_limit_gb=10)
        usage = UsageSnapshot(storage_bytes=9 * BYTES_PER_GB)

        fits = evaluate_limit(subscription, usage, ResourceKind.STORAGE_ADD, BYTES_PER_GB, today=TODAY)
        overflows = evaluate_limit(
            subscription, usage, ResourceKind.STORAGE_ADD, BYTES_PER_GB + 1, today=TODAY
        )

        assert fits.allowed is True
        assert overflows.allowed is False
        assert overflows.code == "STORAGE_LIMIT_EXCEEDED"
        assert overflows.current == 9.0
        assert overflows.limit == 10

    def test_feature_check_uses_plan_flags(self) -> None:
        subscription = make_subscription("basic")

        enabled = evaluate_limit(
            subscription, None, ResourceKind.FEATURE, feature="advanced_reports", today=TODAY
        )
        disabled = evaluate_limit(
            subscription, None, ResourceKind.FEATURE, feature="api_access", today=TODAY
        )

        assert enabled.allowed is True
        assert enabled.reason == DecisionReason.FEATURE_ENABLED
        assert disabled.allowed is False
        assert disabled.code == "FEATURE_NOT_AVAILABLE"
        assert "api_access" in disabled.message

    def test_denial_converts_to_limit_exceeded_error(self) -> None:
        subscription = make_subscription(student_limit=50)
        decision = evaluate_limit(
            subscription, UsageSnapshot(students=50), ResourceKind.STUDENT_ADD, today=TODAY
        )

        error = decision.to_error()

        assert isinstance(error, LimitExceededError)
        assert error.status_code == 402
        assert error.details == {"resource": "student_add", "current": 50, "limit": 50}

    def test_exceeded_limits_lists_every_overage(self) -> None:
        subscription = make_subscription("basic")
        usage = UsageSnapshot(students=120, teachers=5, classrooms=20, storage_bytes=0)

        exceeded = exceeded_limits(subscription, usage)

        assert exceeded == [
            {"resource": "students", "current": 120, "limit": 100},
            {"resource": "classrooms", "current": 20, "limit": 15},
        ]


class TestLimitGate:
    """Tests for the gate that loads state before deciding.

    **Feature: academy-billing, Property 6: Limit Enforcement**
    **Validates: Requirements 4.7, 5**
    """

    @staticmethod
    def _gate(subscription, usage, lock=None, strict=False) -> LimitGate:
        subscriptions = AsyncMock()
        subscriptions.get_by_academy.return_value = subscription
        aggregator = AsyncMock()
        aggregator.usage.return_value = usage
        return LimitGate(subscriptions, aggregator, lock=lock, strict=strict)

    @pytest.mark.asyncio
    async def test_check_limit_reads_fresh_usage(self) -> None:
        subscription = make_subscription(student_limit=10)
        gate = self._gate(subscription, UsageSnapshot(students=10))

        decision = await gate.check_limit(subscription.academy_id, ResourceKind.STUDENT_ADD, today=TODAY)

        assert decision.allowed is False
        gate.usage.usage.assert_awaited_once_with(subscription.academy_id)

    @pytest.mark.asyncio
    async def test_feature_check_skips_usage_query(self) -> None:
        subscription = make_subscription("pro")
        gate = self._gate(subscription, UsageSnapshot())

        decision = await gate.check_limit(
            subscription.academy_id, ResourceKind.FEATURE, feature="api_access", today=TODAY
        )

        assert decision.allowed is True
        gate.usage.usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enforce_raises_on_denial(self) -> None:
        subscription = make_subscription(teacher_limit=2)
        gate = self._gate(subscription, UsageSnapshot(teachers=2))

        with pytest.raises(LimitExceededError) as exc_info:
            await gate.enforce(subscription.academy_id, ResourceKind.TEACHER_ADD, today=TODAY)

        assert exc_info.value.code == "TEACHER_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_strict_guard_serializes_check_and_mutation(self) -> None:
        """Concurrent guarded adds SHALL see each other's committed mutation."""
        academy_id = uuid.uuid4()
        subscription = make_subscription(student_limit=1, period_end=date.today() + timedelta(days=15))
        subscription.academy_id = academy_id
        students = {"count": 0}

        subscriptions = AsyncMock()
        subscriptions.get_by_academy.return_value = subscription
        aggregator = AsyncMock()
        aggregator.usage.side_effect = lambda _: UsageSnapshot(students=students["count"])

        lock = TenantLock(InMemoryKeyValueStore(), ttl_seconds=5, wait_timeout=2.0, poll_interval=0.01)
        gate = LimitGate(subscriptions, aggregator, lock=lock, strict=True)

        async def add_student() -> bool:
            try:
                async with gate.guard(academy_id, ResourceKind.STUDENT_ADD):
                    await asyncio.sleep(0.02)
                    students["count"] += 1
                return True
            except LimitExceededError:
                return False

        results = await asyncio.gather(add_student(), add_student())

        assert sorted(results) == [False, True]
        assert students["count"] == 1

    @pytest.mark.asyncio
    async def test_soft_guard_does_not_take_lock(self) -> None:
        subscription = make_subscription(student_limit=5, period_end=date.today() + timedelta(days=15))
        lock = AsyncMock()
        gate = self._gate(subscription, UsageSnapshot(students=0), lock=lock, strict=False)

        async with gate.guard(subscription.academy_id, ResourceKind.STUDENT_ADD) as decision:
            assert decision.allowed is True

        lock.hold.assert_not_called()
