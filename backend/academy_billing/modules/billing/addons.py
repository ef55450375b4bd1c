"""Add-on pricing for extra seats, storage and AI report cards.

Add-ons are sold in fixed increments per tier. Extra students and teachers
share one "extra users" increment.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from academy_billing.core.exceptions import ValidationError
from academy_billing.core.messages import get_message
from academy_billing.modules.billing.plans import PlanTier, get_plan
from academy_billing.modules.billing.proration import round_currency


@dataclass(frozen=True)
class AddonPricing:
    """Increment sizes and prices for one tier."""
    user_increment: int
    user_increment_price: int
    storage_increment_gb: int
    storage_increment_price: int
    ai_card_increment: Optional[int] = None
    ai_card_increment_price: Optional[int] = None


ADDON_CONFIG: dict[str, Optional[AddonPricing]] = {
    PlanTier.FREE.value: None,
    PlanTier.INDIVIDUAL.value: AddonPricing(
        user_increment=5,
        user_increment_price=10000,
        storage_increment_gb=1,
        storage_increment_price=5000,
    ),
    PlanTier.BASIC.value: AddonPricing(
        user_increment=10,
        user_increment_price=25000,
        storage_increment_gb=5,
        storage_increment_price=12000,
    ),
    PlanTier.PRO.value: AddonPricing(
        user_increment=10,
        user_increment_price=25000,
        storage_increment_gb=10,
        storage_increment_price=15000,
    ),
    PlanTier.ENTERPRISE.value: AddonPricing(
        user_increment=10,
        user_increment_price=25000,
        storage_increment_gb=20,
        storage_increment_price=20000,
        ai_card_increment=100,
        ai_card_increment_price=100000,
    ),
}


@dataclass(frozen=True)
class AddonQuantities:
    students: int = 0
    teachers: int = 0
    storage_gb: int = 0
    ai_cards: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.students or self.teachers or self.storage_gb or self.ai_cards)


@dataclass(frozen=True)
class AddonValidation:
    """Validity sentinel; callers branch on ``valid`` immediately."""
    valid: bool
    error: Optional[str] = None
    field: Optional[str] = None


def get_addon_pricing(tier: str) -> Optional[AddonPricing]:
    get_plan(tier)
    return ADDON_CONFIG.get(tier)


def calculate_addon_cost(
    tier: str,
    additional_students: int,
    additional_teachers: int,
    additional_storage_gb: int,
    additional_ai_cards: int = 0,
) -> int:
    """Monthly cost of the given add-on quantities on a tier.

    Quantities are expected to be validated multiples of the tier's
    increments; tiers without add-ons cost nothing extra.
    """
    pricing = get_addon_pricing(tier)
    if pricing is None:
        return 0

    total_users = additional_students + additional_teachers
    cost = Decimal(total_users) * pricing.user_increment_price / pricing.user_increment
    cost += Decimal(additional_storage_gb) * pricing.storage_increment_price / pricing.storage_increment_gb

    if additional_ai_cards and pricing.ai_card_increment and pricing.ai_card_increment_price:
        cost += Decimal(additional_ai_cards) * pricing.ai_card_increment_price / pricing.ai_card_increment

    return round_currency(cost)


def validate_addon_quantities(
    tier: str,
    students: int,
    teachers: int,
    storage_gb: int,
    ai_cards: int = 0,
) -> AddonValidation:
    """Check that quantities are non-negative multiples of the tier's increments."""
    pricing = get_addon_pricing(tier)
    if pricing is None:
        if students or teachers or storage_gb or ai_cards:
            return AddonValidation(False, get_message("addons.unavailable"), "tier")
        return AddonValidation(True)

    for name, value in (
        ("students", students),
        ("teachers", teachers),
        ("storage_gb", storage_gb),
        ("ai_cards", ai_cards),
    ):
        if value < 0:
            return AddonValidation(False, get_message("addons.negative"), name)

    if students % pricing.user_increment != 0:
        return AddonValidation(
            False,
            get_message("addons.students_increment", increment=pricing.user_increment),
            "students",
        )
    if teachers % pricing.user_increment != 0:
        return AddonValidation(
            False,
            get_message("addons.teachers_increment", increment=pricing.user_increment),
            "teachers",
        )
    if storage_gb % pricing.storage_increment_gb != 0:
        return AddonValidation(
            False,
            get_message("addons.storage_increment", increment=pricing.storage_increment_gb),
            "storage_gb",
        )
    if ai_cards:
        if not pricing.ai_card_increment:
            return AddonValidation(False, get_message("addons.unavailable"), "ai_cards")
        if ai_cards % pricing.ai_card_increment != 0:
            return AddonValidation(
                False,
                get_message("addons.ai_cards_increment", increment=pricing.ai_card_increment),
                "ai_cards",
            )

    return AddonValidation(True)


def ensure_valid_addon_quantities(tier: str, quantities: AddonQuantities) -> None:
    """Raise ValidationError naming the offending field if quantities are invalid."""
    result = validate_addon_quantities(
        tier,
        quantities.students,
        quantities.teachers,
        quantities.storage_gb,
        quantities.ai_cards,
    )
    if not result.valid:
        raise ValidationError(result.error or "Invalid add-on quantities", field=result.field)


def _round_up(value: int, increment: int) -> int:
    return -(-value // increment) * increment


def round_up_to_increments(tier: str, quantities: AddonQuantities) -> AddonQuantities:
    """Smallest valid quantities on ``tier`` that cover ``quantities``.

    Used when add-ons bought on one tier move to another with larger
    increments. AI cards are dropped on tiers that do not sell them, and
    tiers without add-on pricing drop everything.
    """
    pricing = get_addon_pricing(tier)
    if pricing is None:
        return AddonQuantities()
    ai_cards = 0
    if pricing.ai_card_increment and quantities.ai_cards > 0:
        ai_cards = _round_up(quantities.ai_cards, pricing.ai_card_increment)
    return AddonQuantities(
        students=_round_up(max(quantities.students, 0), pricing.user_increment),
        teachers=_round_up(max(quantities.teachers, 0), pricing.user_increment),
        storage_gb=_round_up(max(quantities.storage_gb, 0), pricing.storage_increment_gb),
        ai_cards=ai_cards,
    )
