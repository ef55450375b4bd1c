"""Pydantic schemas for subscription and refund endpoints.

Request bodies accept camelCase keys; responses are serialized in camelCase.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from academy_billing.modules.billing.refunds import RefundType


class CheckType(str, Enum):
    """Limit checks a client can request."""
    STUDENT_ADD = "student_add"
    TEACHER_ADD = "teacher_add"
    CLASSROOM_ADD = "classroom_add"
    STORAGE_ADD = "storage_add"
    FEATURE = "feature"
    GENERAL = "general"


# ==================== Requests ====================

class TierChangeRequest(BaseModel):
    """Upgrade or downgrade request."""
    target_tier: str = Field(..., alias="targetTier", min_length=1)

    model_config = {"populate_by_name": True}


class SubscribeRequest(BaseModel):
    """First paid signup, charged to a billing key issued by the client SDK."""
    billing_key: str = Field(..., alias="billingKey", min_length=1)
    plan_tier: str = Field(..., alias="planTier", min_length=1)
    billing_cycle: str = Field("monthly", alias="billingCycle")

    model_config = {"populate_by_name": True}


class CancelRequest(BaseModel):
    immediate: bool = Field(False, description="End now instead of at the period end")


class AddonPurchaseRequest(BaseModel):
    """Total add-on quantities to hold after the purchase."""
    additional_students: int = Field(0, alias="additionalStudents", ge=0)
    additional_teachers: int = Field(0, alias="additionalTeachers", ge=0)
    additional_storage_gb: int = Field(0, alias="additionalStorageGb", ge=0)
    additional_ai_cards: int = Field(0, alias="additionalAiCards", ge=0)
    immediate: bool = Field(True, description="Apply now instead of at the next billing date")

    model_config = {"populate_by_name": True}


class CheckLimitsRequest(BaseModel):
    check_type: CheckType = Field(..., alias="checkType")
    count: int = Field(1, ge=0, description="Seats or classrooms to be added")
    file_size: int = Field(0, alias="fileSize", ge=0, description="Bytes to be stored")
    feature: Optional[str] = None

    model_config = {"populate_by_name": True}


class RefundRequest(BaseModel):
    invoice_id: Optional[uuid.UUID] = Field(None, alias="invoiceId")
    reason: Optional[str] = None
    refund_type: RefundType = Field(RefundType.FULL, alias="refundType")
    amount: Optional[int] = None

    model_config = {"populate_by_name": True}


# ==================== Subscription ====================

class SubscriptionResponse(BaseModel):
    """Subscription fields as shown to the academy."""
    id: uuid.UUID
    academy_id: uuid.UUID = Field(..., serialization_alias="academyId")
    plan_tier: str = Field(..., serialization_alias="planTier")
    status: str
    billing_cycle: str = Field(..., serialization_alias="billingCycle")
    monthly_amount: int = Field(..., serialization_alias="monthlyAmount")
    auto_renew: bool = Field(..., serialization_alias="autoRenew")
    current_period_start: date = Field(..., serialization_alias="currentPeriodStart")
    current_period_end: date = Field(..., serialization_alias="currentPeriodEnd")
    next_billing_date: Optional[date] = Field(None, serialization_alias="nextBillingDate")
    trial_ends_at: Optional[date] = Field(None, serialization_alias="trialEndsAt")
    student_limit: int = Field(..., serialization_alias="studentLimit")
    teacher_limit: int = Field(..., serialization_alias="teacherLimit")
    classroom_limit: int = Field(..., serialization_alias="classroomLimit")
    storage_limit_gb: int = Field(..., serialization_alias="storageLimitGb")
    features_enabled: dict[str, bool] = Field(
        default_factory=dict, serialization_alias="featuresEnabled"
    )
    additional_students: int = Field(0, serialization_alias="additionalStudents")
    additional_teachers: int = Field(0, serialization_alias="additionalTeachers")
    additional_storage_gb: int = Field(0, serialization_alias="additionalStorageGb")
    additional_ai_cards: int = Field(0, serialization_alias="additionalAiCards")
    pending_tier: Optional[str] = Field(None, serialization_alias="pendingTier")
    pending_monthly_amount: Optional[int] = Field(None, serialization_alias="pendingMonthlyAmount")
    pending_change_effective_date: Optional[date] = Field(
        None, serialization_alias="pendingChangeEffectiveDate"
    )
    pending_additional_students: Optional[int] = Field(
        None, serialization_alias="pendingAdditionalStudents"
    )
    pending_additional_teachers: Optional[int] = Field(
        None, serialization_alias="pendingAdditionalTeachers"
    )
    pending_additional_storage_gb: Optional[int] = Field(
        None, serialization_alias="pendingAdditionalStorageGb"
    )
    pending_additional_ai_cards: Optional[int] = Field(
        None, serialization_alias="pendingAdditionalAiCards"
    )
    pending_addons_effective_date: Optional[date] = Field(
        None, serialization_alias="pendingAddonsEffectiveDate"
    )
    last_payment_date: Optional[datetime] = Field(None, serialization_alias="lastPaymentDate")

    class Config:
        from_attributes = True


class UsageResponse(BaseModel):
    """Live usage counts for an academy."""
    students: int
    teachers: int
    managers: int
    parents: int
    classrooms: int
    storage_bytes: int = Field(..., serialization_alias="storageBytes")
    storage_gb: float = Field(..., serialization_alias="storageGb")
    total_users: int = Field(..., serialization_alias="totalUsers")


class ExceededLimit(BaseModel):
    resource: str
    current: float
    limit: int


class SubscriptionStatusResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionResponse
    usage: UsageResponse
    limits: dict[str, int]
    exceeded: list[ExceededLimit]
    within_limits: bool = Field(..., serialization_alias="withinLimits")
    is_active: bool = Field(..., serialization_alias="isActive")
    days_remaining: int = Field(..., serialization_alias="daysRemaining")
    status_message: str = Field(..., serialization_alias="statusMessage")
    status_type: str = Field(..., serialization_alias="statusType")


class AcademyUsageResponse(BaseModel):
    success: bool = True
    academy_id: uuid.UUID = Field(..., serialization_alias="academyId")
    usage: UsageResponse
    limits: Optional[dict[str, int]] = None
    exceeded: list[ExceededLimit] = Field(default_factory=list)


# ==================== Tier changes ====================

class UpgradeData(BaseModel):
    previous_tier: str = Field(..., serialization_alias="previousTier")
    plan_tier: str = Field(..., serialization_alias="planTier")
    monthly_amount: int = Field(..., serialization_alias="monthlyAmount")
    proration_amount: int = Field(..., serialization_alias="prorationAmount")
    days_remaining: int = Field(..., serialization_alias="daysRemaining")
    total_days: int = Field(..., serialization_alias="totalDays")
    invoice_id: Optional[uuid.UUID] = Field(None, serialization_alias="invoiceId")
    invoice_status: Optional[str] = Field(None, serialization_alias="invoiceStatus")
    addons_adjusted: bool = Field(False, serialization_alias="addonsAdjusted")


class UpgradeResponse(BaseModel):
    success: bool = True
    message: str
    data: UpgradeData


class DowngradeData(BaseModel):
    current_tier: str = Field(..., serialization_alias="currentTier")
    target_tier: str = Field(..., serialization_alias="targetTier")
    effective_date: date = Field(..., serialization_alias="effectiveDate")
    new_monthly_amount: int = Field(..., serialization_alias="newMonthlyAmount")


class DowngradeResponse(BaseModel):
    success: bool = True
    message: str
    data: DowngradeData


class DowngradeBlockedResponse(BaseModel):
    """Returned with status 400 when usage does not fit the target tier."""
    success: bool = False
    message: str
    violations: list[str]
    can_downgrade: bool = Field(False, serialization_alias="canDowngrade")


class SubscriptionUpdateResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionResponse


# ==================== Add-ons ====================

class AddonPurchaseData(BaseModel):
    additional_students: int = Field(..., serialization_alias="additionalStudents")
    additional_teachers: int = Field(..., serialization_alias="additionalTeachers")
    additional_storage_gb: int = Field(..., serialization_alias="additionalStorageGb")
    additional_ai_cards: int = Field(..., serialization_alias="additionalAiCards")
    addon_cost: int = Field(..., serialization_alias="addonCost")
    new_monthly_amount: int = Field(..., serialization_alias="newMonthlyAmount")
    applied_immediately: bool = Field(..., serialization_alias="appliedImmediately")
    effective_date: Optional[date] = Field(None, serialization_alias="effectiveDate")


class AddonPurchaseResponse(BaseModel):
    success: bool = True
    data: AddonPurchaseData
    subscription: SubscriptionResponse


# ==================== Limit checks ====================

class LimitCheckResponse(BaseModel):
    """Outcome of a check-limits request.

    For ``general`` checks ``exceeded`` lists every limit already over,
    and ``allowed`` is true when that list is empty.
    """
    success: bool = True
    check_type: CheckType = Field(..., serialization_alias="checkType")
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    current: Optional[float] = None
    limit: Optional[int] = None
    feature: Optional[str] = None
    exceeded: list[ExceededLimit] = Field(default_factory=list)


# ==================== Invoices ====================

class InvoiceResponse(BaseModel):
    id: uuid.UUID
    invoice_type: str = Field(..., serialization_alias="invoiceType")
    amount: int
    currency: str
    status: str
    billing_period_start: date = Field(..., serialization_alias="billingPeriodStart")
    billing_period_end: date = Field(..., serialization_alias="billingPeriodEnd")
    plan_tier: str = Field(..., serialization_alias="planTier")
    billing_cycle: str = Field(..., serialization_alias="billingCycle")
    receipt_url: Optional[str] = Field(None, serialization_alias="receiptUrl")
    paid_at: Optional[datetime] = Field(None, serialization_alias="paidAt")
    failed_at: Optional[datetime] = Field(None, serialization_alias="failedAt")
    failure_reason: Optional[str] = Field(None, serialization_alias="failureReason")
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    success: bool = True
    invoices: list[InvoiceResponse]
    total: int
    page: int
    limit: int


# ==================== Subscribe & cancel ====================

class SubscribeResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionResponse
    invoice: InvoiceResponse
    payment_id: str = Field(..., serialization_alias="paymentId")


class CancelResponse(BaseModel):
    success: bool = True
    message: str
    effective_date: date = Field(..., serialization_alias="effectiveDate")
    immediate: bool
    subscription: SubscriptionResponse


# ==================== Plans ====================

class PlanLimitsResponse(BaseModel):
    students: int
    teachers: int
    classrooms: int
    storage_gb: int = Field(..., serialization_alias="storageGb")


class PlanResponse(BaseModel):
    tier: str
    name: str
    monthly_price: int = Field(..., serialization_alias="monthlyPrice")
    yearly_price: int = Field(..., serialization_alias="yearlyPrice")
    limits: PlanLimitsResponse
    features: dict[str, bool]
    is_current_plan: bool = Field(..., serialization_alias="isCurrentPlan")
    recommended: bool
    upgrade_proration: Optional[int] = Field(None, serialization_alias="upgradeProration")


class PlansResponse(BaseModel):
    success: bool = True
    plans: list[PlanResponse]
    current_tier: str = Field(..., serialization_alias="currentTier")


# ==================== Admin listings ====================

class SubscriptionMetricsResponse(BaseModel):
    """Revenue and churn over paid subscriptions."""
    mrr: int
    arr: int
    active_subscriptions: int = Field(..., serialization_alias="activeSubscriptions")
    new_last_30_days: int = Field(..., serialization_alias="newLast30Days")
    canceled_last_30_days: int = Field(..., serialization_alias="canceledLast30Days")
    churn_rate: float = Field(..., serialization_alias="churnRate")


class AdminSubscriptionListResponse(BaseModel):
    success: bool = True
    subscriptions: list[SubscriptionResponse]
    total: int
    page: int
    limit: int
    metrics: SubscriptionMetricsResponse


class AdminInvoiceResponse(InvoiceResponse):
    academy_id: uuid.UUID = Field(..., serialization_alias="academyId")
    subscription_id: Optional[uuid.UUID] = Field(None, serialization_alias="subscriptionId")
    payment_id: Optional[str] = Field(None, serialization_alias="paymentId")
    refunded: bool = False
    invoice_metadata: Optional[dict[str, Any]] = Field(None, serialization_alias="metadata")


class AdminInvoiceListResponse(BaseModel):
    success: bool = True
    invoices: list[AdminInvoiceResponse]
    total: int
    page: int
    limit: int


# ==================== Refunds ====================

class RefundData(BaseModel):
    invoice_id: uuid.UUID = Field(..., serialization_alias="invoiceId")
    refund_amount: int = Field(..., serialization_alias="refundAmount")
    refund_type: RefundType = Field(..., serialization_alias="refundType")
    cancellation_status: Optional[str] = Field(None, serialization_alias="cancellationStatus")


class RefundResponse(BaseModel):
    success: bool = True
    message: str
    data: RefundData
    warning: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: str
    details: dict[str, Any] = Field(default_factory=dict)
