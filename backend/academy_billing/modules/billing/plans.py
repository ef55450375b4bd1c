"""Subscription plan catalogue.

Tiers are ordered free < individual < basic < pro < enterprise. A limit of
-1 means unlimited. Prices are in KRW, which has no minor unit.
"""

from dataclasses import dataclass, field
from enum import Enum

from academy_billing.core.exceptions import ValidationError
from academy_billing.core.messages import get_message

UNLIMITED = -1


class PlanTier(str, Enum):
    """Subscription plan tiers, in ascending order."""
    FREE = "free"
    INDIVIDUAL = "individual"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TierChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


TIER_ORDER: tuple[str, ...] = tuple(t.value for t in PlanTier)

FEATURE_KEYS = (
    "custom_branding",
    "advanced_reports",
    "api_access",
    "priority_support",
    "sms_notifications",
    "email_marketing",
    "data_export",
    "multiple_locations",
    "custom_integrations",
)


@dataclass(frozen=True)
class PlanLimits:
    """Per-resource limits of a plan. -1 is unlimited."""
    students: int
    teachers: int
    classrooms: int
    storage_gb: int

    def as_dict(self) -> dict[str, int]:
        return {
            "students": self.students,
            "teachers": self.teachers,
            "classrooms": self.classrooms,
            "storage_gb": self.storage_gb,
        }


@dataclass(frozen=True)
class PlanDefinition:
    tier: str
    name: str
    monthly_price: int
    yearly_price: int
    limits: PlanLimits
    features: dict[str, bool] = field(default_factory=dict)

    def price_for(self, billing_cycle: str) -> int:
        if billing_cycle == BillingCycle.YEARLY.value:
            return self.yearly_price
        if billing_cycle == BillingCycle.MONTHLY.value:
            return self.monthly_price
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}", field="billing_cycle")

    def has_feature(self, feature: str) -> bool:
        return self.features.get(feature, False)


def _features(*enabled: str) -> dict[str, bool]:
    return {key: key in enabled for key in FEATURE_KEYS}


PLANS: dict[str, PlanDefinition] = {
    PlanTier.FREE.value: PlanDefinition(
        tier=PlanTier.FREE.value,
        name="Free",
        monthly_price=0,
        yearly_price=0,
        limits=PlanLimits(students=20, teachers=2, classrooms=3, storage_gb=1),
        features=_features(),
    ),
    PlanTier.INDIVIDUAL.value: PlanDefinition(
        tier=PlanTier.INDIVIDUAL.value,
        name="Individual",
        monthly_price=29000,
        yearly_price=290000,
        limits=PlanLimits(students=50, teachers=5, classrooms=10, storage_gb=5),
        features=_features("data_export"),
    ),
    PlanTier.BASIC.value: PlanDefinition(
        tier=PlanTier.BASIC.value,
        name="Basic",
        monthly_price=50000,
        yearly_price=500000,
        limits=PlanLimits(students=100, teachers=10, classrooms=15, storage_gb=10),
        features=_features(
            "advanced_reports", "sms_notifications", "email_marketing", "data_export",
        ),
    ),
    PlanTier.PRO.value: PlanDefinition(
        tier=PlanTier.PRO.value,
        name="Pro",
        monthly_price=150000,
        yearly_price=1500000,
        limits=PlanLimits(students=500, teachers=50, classrooms=50, storage_gb=50),
        features=_features(
            "custom_branding", "advanced_reports", "api_access", "priority_support",
            "sms_notifications", "email_marketing", "data_export", "multiple_locations",
        ),
    ),
    PlanTier.ENTERPRISE.value: PlanDefinition(
        tier=PlanTier.ENTERPRISE.value,
        name="Enterprise",
        monthly_price=400000,
        yearly_price=4000000,
        limits=PlanLimits(
            students=UNLIMITED, teachers=UNLIMITED, classrooms=UNLIMITED, storage_gb=UNLIMITED,
        ),
        features=_features(*FEATURE_KEYS),
    ),
}


def get_plan(tier: str) -> PlanDefinition:
    """Look up a plan, failing on unknown tier strings."""
    plan = PLANS.get(tier)
    if plan is None:
        raise ValidationError(
            get_message("subscription.invalid_tier", tier=tier),
            field="tier",
            code="invalid_tier",
        )
    return plan


def tier_index(tier: str) -> int:
    """Position of a tier in the upgrade order."""
    get_plan(tier)
    return TIER_ORDER.index(tier)


def get_tier_change_type(current_tier: str, target_tier: str) -> TierChangeType:
    current = tier_index(current_tier)
    target = tier_index(target_tier)
    if target > current:
        return TierChangeType.UPGRADE
    if target < current:
        return TierChangeType.DOWNGRADE
    return TierChangeType.SAME


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED
