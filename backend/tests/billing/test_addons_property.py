"""Property-based tests for add-on validation and pricing.

**Feature: academy-billing, Property 3: Add-on Increment Validation**
**Validates: Requirements 4.5, 8**
"""

import pytest
from hypothesis import assume, given, settings, strategies as st

from academy_billing.core.exceptions import ValidationError
from academy_billing.modules.billing.addons import (
    ADDON_CONFIG,
    AddonQuantities,
    calculate_addon_cost,
    ensure_valid_addon_quantities,
    get_addon_pricing,
    validate_addon_quantities,
)
from academy_billing.modules.billing.plans import PlanTier


# Tiers that sell add-ons
paid_tier_strategy = st.sampled_from([
    PlanTier.INDIVIDUAL.value,
    PlanTier.BASIC.value,
    PlanTier.PRO.value,
    PlanTier.ENTERPRISE.value,
])

multiplier_strategy = st.integers(min_value=0, max_value=50)


class TestAddonIncrementValidation:
    """Property tests for add-on increment validation.

    **Feature: academy-billing, Property 3: Add-on Increment Validation**
    **Validates: Requirements 4.5, 8**
    """

    def test_seven_students_rejected_on_ten_seat_increment(self) -> None:
        """**Feature: academy-billing, Property 3: Add-on Increment Validation**

        With a user increment of 10, 7 students SHALL fail and 10 SHALL pass.
        """
        assert get_addon_pricing(PlanTier.BASIC.value).user_increment == 10

        rejected = validate_addon_quantities(PlanTier.BASIC.value, 7, 0, 0)
        accepted = validate_addon_quantities(PlanTier.BASIC.value, 10, 0, 0)

        assert rejected.valid is False
        assert rejected.field == "students"
        assert "10" in rejected.error
        assert accepted.valid is True
        assert accepted.error is None

    @given(
        tier=paid_tier_strategy,
        students=multiplier_strategy,
        teachers=multiplier_strategy,
        storage=multiplier_strategy,
    )
    @settings(max_examples=100)
    def test_multiples_of_increments_are_valid(
        self,
        tier: str,
        students: int,
        teachers: int,
        storage: int,
    ) -> None:
        """**Feature: academy-billing, Property 3: Add-on Increment Validation**

        *For any* quantities that are whole multiples of the tier's
        increments, validation SHALL succeed.
        """
        pricing = ADDON_CONFIG[tier]
        result = validate_addon_quantities(
            tier,
            students * pricing.user_increment,
            teachers * pricing.user_increment,
            storage * pricing.storage_increment_gb,
        )

        assert result.valid, f"Multiples rejected on {tier}: {result.error}"

    @given(
        tier=paid_tier_strategy,
        students=st.integers(min_value=1, max_value=1000),
    )
    @settings(max_examples=100)
    def test_non_multiples_name_the_offending_field(
        self,
        tier: str,
        students: int,
    ) -> None:
        """**Feature: academy-billing, Property 3: Add-on Increment Validation**

        *For any* student quantity that is not a multiple of the increment,
        validation SHALL fail naming the students field.
        """
        pricing = ADDON_CONFIG[tier]
        assume(students % pricing.user_increment != 0)

        result = validate_addon_quantities(tier, students, 0, 0)

        assert result.valid is False
        assert result.field == "students"

    @given(
        students=st.integers(min_value=0, max_value=100),
        teachers=st.integers(min_value=0, max_value=100),
        storage=st.integers(min_value=0, max_value=100),
    )
    @settings(max_examples=100)
    def test_free_tier_rejects_any_addon(
        self,
        students: int,
        teachers: int,
        storage: int,
    ) -> None:
        """**Feature: academy-billing, Property 3: Add-on Increment Validation**

        *For any* non-zero quantity on the free tier, validation SHALL fail.
        """
        assume(students or teachers or storage)

        result = validate_addon_quantities(PlanTier.FREE.value, students, teachers, storage)

        assert result.valid is False
        assert result.field == "tier"

    def test_free_tier_accepts_no_addons(self) -> None:
        assert validate_addon_quantities(PlanTier.FREE.value, 0, 0, 0).valid is True

    def test_negative_quantities_rejected(self) -> None:
        result = validate_addon_quantities(PlanTier.PRO.value, 0, -10, 0)

        assert result.valid is False
        assert result.field == "teachers"

    def test_storage_increment_enforced(self) -> None:
        result = validate_addon_quantities(PlanTier.BASIC.value, 0, 0, 3)

        assert result.valid is False
        assert result.field == "storage_gb"

    def test_ai_cards_only_on_enterprise(self) -> None:
        pro = validate_addon_quantities(PlanTier.PRO.value, 0, 0, 0, ai_cards=100)
        enterprise = validate_addon_quantities(PlanTier.ENTERPRISE.value, 0, 0, 0, ai_cards=100)
        partial = validate_addon_quantities(PlanTier.ENTERPRISE.value, 0, 0, 0, ai_cards=50)

        assert pro.valid is False and pro.field == "ai_cards"
        assert enterprise.valid is True
        assert partial.valid is False and partial.field == "ai_cards"

    def test_ensure_valid_raises_validation_error(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid_addon_quantities(PlanTier.BASIC.value, AddonQuantities(students=7))

        assert exc_info.value.field == "students"
        assert exc_info.value.status_code == 400

    def test_unknown_tier_raises(self) -> None:
        with pytest.raises(ValidationError):
            validate_addon_quantities("platinum", 10, 0, 0)


class TestAddonCost:
    """Property tests for add-on cost calculation.

    **Feature: academy-billing, Property 4: Add-on Cost**
    **Validates: Requirements 4.5, 8**
    """

    def test_twenty_students_on_basic_cost_fifty_thousand(self) -> None:
        """**Feature: academy-billing, Property 4: Add-on Cost**

        With user increment 10 at 25000, 20 extra students SHALL cost 50000.
        """
        assert calculate_addon_cost(PlanTier.BASIC.value, 20, 0, 0) == 50000

    @given(
        tier=paid_tier_strategy,
        students=multiplier_strategy,
        teachers=multiplier_strategy,
        storage=multiplier_strategy,
    )
    @settings(max_examples=100)
    def test_cost_is_linear_in_increments(
        self,
        tier: str,
        students: int,
        teachers: int,
        storage: int,
    ) -> None:
        """**Feature: academy-billing, Property 4: Add-on Cost**

        *For any* valid quantities, the cost SHALL be the number of increments
        bought times the increment price.
        """
        pricing = ADDON_CONFIG[tier]
        cost = calculate_addon_cost(
            tier,
            students * pricing.user_increment,
            teachers * pricing.user_increment,
            storage * pricing.storage_increment_gb,
        )

        expected = (
            (students + teachers) * pricing.user_increment_price
            + storage * pricing.storage_increment_price
        )
        assert cost == expected, f"{tier}: expected {expected}, got {cost}"

    @given(
        students=st.integers(min_value=0, max_value=1000),
        storage=st.integers(min_value=0, max_value=1000),
    )
    @settings(max_examples=100)
    def test_free_tier_costs_nothing(self, students: int, storage: int) -> None:
        """**Feature: academy-billing, Property 4: Add-on Cost**

        *For any* quantities, the free tier SHALL add no cost.
        """
        assert calculate_addon_cost(PlanTier.FREE.value, students, 0, storage) == 0

    def test_students_and_teachers_share_user_increment(self) -> None:
        assert calculate_addon_cost(PlanTier.PRO.value, 10, 10, 0) == 50000

    def test_ai_cards_priced_on_enterprise(self) -> None:
        assert calculate_addon_cost(PlanTier.ENTERPRISE.value, 0, 0, 20, 200) == 220000
