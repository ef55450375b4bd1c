"""Proration and billing period arithmetic.

Pure functions, no I/O. Days are counted on calendar dates so the result
does not depend on the hour a request is made.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from academy_billing.modules.billing.plans import BillingCycle

DateLike = Union[date, datetime]


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a proration calculation.

    ``amount`` is the immediate charge in whole currency units; it is 0 for
    downgrades, same-price changes and exhausted periods.
    """
    amount: int
    days_remaining: int
    total_days: int
    price_difference: int
    is_upgrade: bool


def _as_date(value: DateLike) -> date:
    # datetime is a subclass of date; strip the time-of-day explicitly
    if isinstance(value, datetime):
        return value.date()
    return value


def days_remaining(period_end: DateLike, today: Optional[DateLike] = None) -> int:
    """Whole days from today until the period end, never negative."""
    today = _as_date(today or date.today())
    return max(0, (_as_date(period_end) - today).days)


def total_days_in_period(period_start: DateLike, period_end: DateLike) -> int:
    """Length of the billing period in days, at least 1."""
    return max(1, (_as_date(period_end) - _as_date(period_start)).days)


def add_billing_period(start: date, billing_cycle: str, anchor_day: Optional[int] = None) -> date:
    """Same day one month or one year later, clamped to the month's last day.

    ``anchor_day`` is the day renewals are meant to fall on. It wins over
    ``start.day`` so that a period clamped in a short month returns to the
    anchor afterwards (Jan 31, Feb 28, Mar 31).
    """
    if billing_cycle == BillingCycle.YEARLY.value:
        year, month = start.year + 1, start.month
    else:
        year = start.year + (1 if start.month == 12 else 0)
        month = 1 if start.month == 12 else start.month + 1
    max_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day or start.day, max_day))


def round_currency(value: Decimal) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorate(
    current_price: int,
    new_price: int,
    period_start: DateLike,
    period_end: DateLike,
    today: Optional[DateLike] = None,
) -> ProrationResult:
    """Compute the immediate charge for switching price mid-period.

    Args:
        current_price: Price of the current plan for the period
        new_price: Price of the target plan for the period
        period_start: First day of the current billing period
        period_end: End of the current billing period (exclusive)
        today: Override of the current date

    Returns:
        ProrationResult with the charge and the day counts it was based on
    """
    total = total_days_in_period(period_start, period_end)
    # A change requested before the period starts is charged for the whole period
    remaining = min(days_remaining(period_end, today), total)
    difference = new_price - current_price
    is_upgrade = difference > 0

    if not is_upgrade or remaining <= 0:
        amount = 0
    else:
        amount = round_currency(Decimal(difference) * remaining / total)

    return ProrationResult(
        amount=amount,
        days_remaining=remaining,
        total_days=total,
        price_difference=difference,
        is_upgrade=is_upgrade,
    )
