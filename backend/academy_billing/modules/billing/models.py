"""Billing models for academy subscriptions and invoices.

A subscription row exists per academy and is never deleted; cancellation
is a status transition. Downgrades and add-on changes that take effect
later are held in the ``pending_*`` columns until the billing rollover.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from academy_billing.core.database import Base
from academy_billing.modules.billing.addons import AddonQuantities
from academy_billing.modules.billing.plans import BillingCycle, PlanTier


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class InvoiceStatus(str, Enum):
    """Invoice status values."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class InvoiceType(str, Enum):
    INITIAL = "initial"
    RECURRING = "recurring"
    UPGRADE_PRORATION = "upgrade_proration"
    ONE_TIME = "one_time"


class Subscription(Base):
    """Academy subscription."""

    __tablename__ = "academy_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    academy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, unique=True, index=True
    )

    # Plan details
    plan_tier: Mapped[str] = mapped_column(
        String(50), default=PlanTier.FREE.value, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(50), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )
    billing_cycle: Mapped[str] = mapped_column(
        String(20), default=BillingCycle.MONTHLY.value, nullable=False
    )
    monthly_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Billing period [start, end)
    current_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    current_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    next_billing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    # Day of month renewals fall on, kept so short months do not shift it
    billing_anchor_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    trial_ends_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Gateway billing key for recurring charges
    billing_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_key_issued_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Effective limits (plan base plus active add-ons, -1 unlimited)
    student_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    teacher_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    classroom_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    storage_limit_gb: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features_enabled: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Active add-ons, billed this cycle
    additional_students: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    additional_teachers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    additional_storage_gb: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    additional_ai_cards: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Add-ons recorded now, effective at the next billing date
    pending_additional_students: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_additional_teachers: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_additional_storage_gb: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_additional_ai_cards: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_addons_effective_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Deferred tier change (at most one)
    pending_tier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    pending_monthly_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_change_effective_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, academy={self.academy_id}, plan={self.plan_tier})>"

    def is_active(self, today: Optional[date] = None) -> bool:
        """Active or trialing, and the current period has not lapsed.

        The period end day itself still counts as active so the renewal job
        can run during that day.
        """
        today = today or date.today()
        return self.status in ACTIVE_STATUSES and self.current_period_end >= today

    def has_pending_tier_change(self) -> bool:
        return self.pending_tier is not None

    def has_pending_addons(self) -> bool:
        return self.pending_addons_effective_date is not None

    def current_addons(self) -> AddonQuantities:
        return AddonQuantities(
            students=self.additional_students or 0,
            teachers=self.additional_teachers or 0,
            storage_gb=self.additional_storage_gb or 0,
            ai_cards=self.additional_ai_cards or 0,
        )

    def pending_addons(self) -> Optional[AddonQuantities]:
        if not self.has_pending_addons():
            return None
        return AddonQuantities(
            students=self.pending_additional_students or 0,
            teachers=self.pending_additional_teachers or 0,
            storage_gb=self.pending_additional_storage_gb or 0,
            ai_cards=self.pending_additional_ai_cards or 0,
        )

    def get_limit(self, resource: str) -> int:
        """Effective limit for a resource kind (-1 unlimited)."""
        return {
            "students": self.student_limit,
            "teachers": self.teacher_limit,
            "classrooms": self.classroom_limit,
            "storage_gb": self.storage_limit_gb,
        }[resource]

    def has_feature(self, feature: str) -> bool:
        return bool((self.features_enabled or {}).get(feature, False))


class Invoice(Base):
    """One billing attempt for an academy."""

    __tablename__ = "subscription_invoices"
    __table_args__ = (
        Index("ix_subscription_invoices_academy_created", "academy_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    academy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("academy_subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    invoice_type: Mapped[str] = mapped_column(
        String(50), default=InvoiceType.RECURRING.value, nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="KRW", nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), default=InvoiceStatus.PENDING.value, nullable=False, index=True
    )

    # What was billed
    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    plan_tier: Mapped[str] = mapped_column(String(50), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # Gateway identifiers: payment_id is the current format, the transaction
    # id is kept for invoices paid through the previous gateway integration
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    legacy_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Refund and gateway details; see RefundProcessor for the refund keys
    invoice_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, amount={self.amount}, status={self.status})>"

    def resolve_payment_id(self) -> Optional[str]:
        """Gateway payment id to cancel, preferring the current-format id."""
        metadata = self.invoice_metadata or {}
        return (
            self.payment_id
            or metadata.get("portone_payment_id")
            or self.legacy_transaction_id
            or metadata.get("kg_transaction_id")
        )

    def is_marked_refunded(self) -> bool:
        return bool((self.invoice_metadata or {}).get("refunded"))
