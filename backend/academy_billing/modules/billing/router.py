"""API routers for subscription management and billing administration.

Academy managers act on their own academy. Admins act on any academy and
must name it with the ``academy_id`` query parameter.
"""

import logging
import uuid
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.config import settings
from academy_billing.core.database import get_db
from academy_billing.core.logging import set_tenant_id
from academy_billing.core.messages import get_message
from academy_billing.core.security import (
    ADMIN_ROLES,
    Principal,
    Role,
    get_optional_principal,
    require_roles,
    resolve_academy_id,
)
from academy_billing.core.store import TenantLock
from academy_billing.modules.billing.addons import AddonQuantities
from academy_billing.modules.billing.limits import LimitGate, ResourceKind, exceeded_limits
from academy_billing.modules.billing.plans import get_plan
from academy_billing.modules.billing.refunds import RefundProcessor
from academy_billing.modules.billing.repository import SubscriptionRepository
from academy_billing.modules.billing.schemas import (
    AcademyUsageResponse,
    AdminInvoiceListResponse,
    AdminInvoiceResponse,
    AdminSubscriptionListResponse,
    AddonPurchaseData,
    AddonPurchaseRequest,
    AddonPurchaseResponse,
    CancelRequest,
    CancelResponse,
    CheckLimitsRequest,
    CheckType,
    DowngradeBlockedResponse,
    DowngradeData,
    DowngradeResponse,
    InvoiceListResponse,
    InvoiceResponse,
    LimitCheckResponse,
    PlanLimitsResponse,
    PlanResponse,
    PlansResponse,
    RefundData,
    RefundRequest,
    RefundResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionMetricsResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
    SubscriptionUpdateResponse,
    TierChangeRequest,
    UpgradeData,
    UpgradeResponse,
    UsageResponse,
)
from academy_billing.modules.billing.service import DowngradeBlockedError, SubscriptionService
from academy_billing.modules.billing.usage import UsageAggregator
from academy_billing.modules.payment_gateway.client import PortOneClient, get_portone_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])

admin_router = APIRouter(prefix="/admin", tags=["billing-admin"])

_CHECK_TYPE_KINDS = {
    CheckType.STUDENT_ADD: ResourceKind.STUDENT_ADD,
    CheckType.TEACHER_ADD: ResourceKind.TEACHER_ADD,
    CheckType.CLASSROOM_ADD: ResourceKind.CLASSROOM_ADD,
    CheckType.STORAGE_ADD: ResourceKind.STORAGE_ADD,
    CheckType.FEATURE: ResourceKind.FEATURE,
}


async def get_academy_id(
    academy_id: Optional[uuid.UUID] = Query(None),
    principal: Principal = Depends(require_roles(Role.MANAGER, *ADMIN_ROLES)),
) -> uuid.UUID:
    """Resolve the academy a subscription request acts on."""
    resolved = resolve_academy_id(principal, academy_id)
    set_tenant_id(str(resolved))
    return resolved


def get_gateway() -> PortOneClient:
    return get_portone_client()


def get_limit_gate(
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> LimitGate:
    """Limit gate for the request; growth routes use ``gate.guard`` around writes."""
    return LimitGate(
        SubscriptionRepository(session),
        UsageAggregator(session),
        lock=TenantLock(
            request.app.state.kv_store,
            ttl_seconds=settings.TENANT_LOCK_TTL_SECONDS,
        ),
    )


def _usage_response(usage) -> UsageResponse:
    return UsageResponse(**usage.to_dict())


# ==================== Status ====================

@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    """Subscription with live usage, limit state and a status message."""
    service = SubscriptionService(session)
    result = await service.get_status(academy_id)
    return SubscriptionStatusResponse(
        subscription=SubscriptionResponse.model_validate(result["subscription"]),
        usage=_usage_response(result["usage"]),
        limits=result["limits"],
        exceeded=result["exceeded"],
        within_limits=result["within_limits"],
        is_active=result["is_active"],
        days_remaining=result["days_remaining"],
        status_message=result["status_message"],
        status_type=result["status_type"],
    )


# ==================== Plans ====================

@router.get("/plans", response_model=PlansResponse)
async def list_plans(
    session: AsyncSession = Depends(get_db),
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    """Every plan, marked against the caller's academy when signed in."""
    academy_id = principal.academy_id if principal else None
    offers = await SubscriptionService(session).offers(academy_id)
    current = next(o.tier for o in offers if o.is_current_plan)
    return PlansResponse(
        plans=[
            PlanResponse(
                tier=o.tier,
                name=o.name,
                monthly_price=o.monthly_price,
                yearly_price=o.yearly_price,
                limits=PlanLimitsResponse(**o.limits.as_dict()),
                features=o.features,
                is_current_plan=o.is_current_plan,
                recommended=o.recommended,
                upgrade_proration=o.upgrade_proration,
            )
            for o in offers
        ],
        current_tier=current,
    )


# ==================== Subscribe & cancel ====================

@router.post("/subscribe", response_model=SubscribeResponse, status_code=status.HTTP_201_CREATED)
async def subscribe(
    data: SubscribeRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
    gateway: PortOneClient = Depends(get_gateway),
):
    """Start a paid plan, charging the first period to the billing key."""
    service = SubscriptionService(session, gateway=gateway if gateway.api_secret else None)
    result = await service.subscribe(academy_id, data.plan_tier, data.billing_cycle, data.billing_key)
    return SubscribeResponse(
        message=get_message("subscription.subscribed", plan=get_plan(data.plan_tier).name),
        subscription=SubscriptionResponse.model_validate(result.subscription),
        invoice=InvoiceResponse.model_validate(result.invoice),
        payment_id=result.payment_id,
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    data: CancelRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    """Stop renewal, at the period end unless ``immediate`` is set."""
    result = await SubscriptionService(session).cancel(academy_id, immediate=data.immediate)
    if result.immediate:
        message = get_message("subscription.canceled")
    else:
        message = get_message(
            "subscription.cancel_scheduled", end_date=result.effective_date.isoformat()
        )
    return CancelResponse(
        message=message,
        effective_date=result.effective_date,
        immediate=result.immediate,
        subscription=SubscriptionResponse.model_validate(result.subscription),
    )


# ==================== Tier changes ====================

@router.post("/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    data: TierChangeRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
    gateway: PortOneClient = Depends(get_gateway),
):
    """Upgrade immediately and invoice the prorated difference."""
    service = SubscriptionService(session, gateway=gateway if gateway.api_secret else None)
    result = await service.upgrade(academy_id, data.target_tier)
    invoice = result.invoice
    return UpgradeResponse(
        message=get_message("subscription.upgraded", plan=get_plan(data.target_tier).name),
        data=UpgradeData(
            previous_tier=result.previous_tier,
            plan_tier=result.subscription.plan_tier,
            monthly_amount=result.subscription.monthly_amount,
            proration_amount=result.proration.amount,
            days_remaining=result.proration.days_remaining,
            total_days=result.proration.total_days,
            invoice_id=invoice.id if invoice else None,
            invoice_status=invoice.status if invoice else None,
            addons_adjusted=result.addons_adjusted,
        ),
    )


@router.post(
    "/downgrade",
    response_model=DowngradeResponse,
    responses={400: {"model": DowngradeBlockedResponse}},
)
async def downgrade_subscription(
    data: TierChangeRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    """Schedule a downgrade for the next billing date if usage fits."""
    service = SubscriptionService(session)
    try:
        result = await service.request_downgrade(academy_id, data.target_tier)
    except DowngradeBlockedError as e:
        blocked = DowngradeBlockedResponse(
            message=e.message,
            violations=[v.message for v in e.violations],
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=blocked.model_dump(by_alias=True),
        )

    return DowngradeResponse(
        message=get_message(
            "subscription.downgrade_scheduled",
            plan=get_plan(result.target_tier).name,
            effective_date=result.effective_date.isoformat(),
        ),
        data=DowngradeData(
            current_tier=result.current_tier,
            target_tier=result.target_tier,
            effective_date=result.effective_date,
            new_monthly_amount=result.new_monthly_amount,
        ),
    )


@router.delete("/pending-change", response_model=SubscriptionUpdateResponse)
async def cancel_pending_change(
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    """Cancel a scheduled downgrade."""
    service = SubscriptionService(session)
    subscription = await service.cancel_pending_change(academy_id)
    return SubscriptionUpdateResponse(
        subscription=SubscriptionResponse.model_validate(subscription)
    )


# ==================== Add-ons ====================

@router.post("/addons", response_model=AddonPurchaseResponse)
async def purchase_addons(
    data: AddonPurchaseRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    """Set add-on quantities, now or from the next billing date."""
    service = SubscriptionService(session)
    result = await service.purchase_addons(
        academy_id,
        AddonQuantities(
            students=data.additional_students,
            teachers=data.additional_teachers,
            storage_gb=data.additional_storage_gb,
            ai_cards=data.additional_ai_cards,
        ),
        immediate=data.immediate,
    )
    return AddonPurchaseResponse(
        data=AddonPurchaseData(
            additional_students=result.addons.students,
            additional_teachers=result.addons.teachers,
            additional_storage_gb=result.addons.storage_gb,
            additional_ai_cards=result.addons.ai_cards,
            addon_cost=result.addon_cost,
            new_monthly_amount=result.new_monthly_amount,
            applied_immediately=result.applied_immediately,
            effective_date=result.effective_date,
        ),
        subscription=SubscriptionResponse.model_validate(result.subscription),
    )


# ==================== Limit checks ====================

@router.post("/check-limits", response_model=LimitCheckResponse)
async def check_limits(
    data: CheckLimitsRequest,
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
    gate: LimitGate = Depends(get_limit_gate),
):
    """Ask whether a growth operation would fit the academy's plan."""
    if data.check_type == CheckType.GENERAL:
        service = SubscriptionService(session)
        subscription = await service.get_subscription(academy_id)
        usage = await service.usage.usage(academy_id)
        exceeded = exceeded_limits(subscription, usage)
        return LimitCheckResponse(
            check_type=data.check_type,
            allowed=not exceeded,
            exceeded=exceeded,
        )

    kind = _CHECK_TYPE_KINDS[data.check_type]
    delta = data.file_size if kind == ResourceKind.STORAGE_ADD else data.count
    decision = await gate.check_limit(academy_id, kind, delta, feature=data.feature)
    return LimitCheckResponse(
        check_type=data.check_type,
        allowed=decision.allowed,
        reason=decision.reason.value,
        message=decision.message,
        code=decision.code,
        current=decision.current,
        limit=decision.limit,
        feature=decision.feature,
    )


# ==================== Invoices ====================

@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    academy_id: uuid.UUID = Depends(get_academy_id),
    session: AsyncSession = Depends(get_db),
):
    service = SubscriptionService(session)
    invoices, total = await service.list_invoices(
        academy_id, limit=limit, offset=(page - 1) * limit
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(i) for i in invoices],
        total=total,
        page=page,
        limit=limit,
    )


# ==================== Admin ====================

@admin_router.get("/subscriptions", response_model=AdminSubscriptionListResponse)
async def list_all_subscriptions(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_roles(*ADMIN_ROLES)),
):
    """Subscriptions across academies with revenue and churn metrics."""
    service = SubscriptionService(session)
    subscriptions, total = await service.list_subscriptions(
        status=status_filter, limit=limit, offset=(page - 1) * limit
    )
    metrics = await service.metrics()
    return AdminSubscriptionListResponse(
        subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
        total=total,
        page=page,
        limit=limit,
        metrics=SubscriptionMetricsResponse(**asdict(metrics)),
    )


@admin_router.get("/subscriptions/invoices", response_model=AdminInvoiceListResponse)
async def list_subscription_invoices(
    subscription_id: Optional[uuid.UUID] = Query(None, alias="subscriptionId"),
    academy_id: Optional[uuid.UUID] = Query(None, alias="academyId"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_roles(*ADMIN_ROLES)),
):
    """Invoices of one subscription or academy, including refund details."""
    invoices, total = await SubscriptionService(session).list_all_invoices(
        subscription_id=subscription_id,
        academy_id=academy_id,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return AdminInvoiceListResponse(
        invoices=[
            AdminInvoiceResponse.model_validate(i).model_copy(
                update={"refunded": i.is_marked_refunded()}
            )
            for i in invoices
        ],
        total=total,
        page=page,
        limit=limit,
    )


@admin_router.post("/subscriptions/refund", response_model=RefundResponse)
async def refund_invoice(
    data: RefundRequest,
    session: AsyncSession = Depends(get_db),
    gateway: PortOneClient = Depends(get_gateway),
    principal: Principal = Depends(require_roles(*ADMIN_ROLES)),
):
    """Refund a paid subscription invoice in full or in part.

    Gateway rejections come back with the gateway's own status and body.
    """
    processor = RefundProcessor(session, gateway)
    result = await processor.refund(
        data.invoice_id,
        data.reason,
        refund_type=data.refund_type,
        amount=data.amount,
        actor_id=principal.user_id,
    )
    return RefundResponse(
        message=get_message("refund.succeeded"),
        data=RefundData(
            invoice_id=result.invoice_id,
            refund_amount=result.refund_amount,
            refund_type=result.refund_type,
            cancellation_status=result.cancellation_status,
        ),
        warning=result.warning,
    )


@admin_router.get("/academies/{academy_id}/usage", response_model=AcademyUsageResponse)
async def get_academy_usage(
    academy_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_roles(*ADMIN_ROLES)),
):
    """Live usage for any academy, with its limits when subscribed."""
    usage = await UsageAggregator(session).usage(academy_id)
    subscription = await SubscriptionRepository(session).get_by_academy(academy_id)
    if subscription is None:
        return AcademyUsageResponse(academy_id=academy_id, usage=_usage_response(usage))

    return AcademyUsageResponse(
        academy_id=academy_id,
        usage=_usage_response(usage),
        limits={
            "students": subscription.student_limit,
            "teachers": subscription.teacher_limit,
            "classrooms": subscription.classroom_limit,
            "storage_gb": subscription.storage_limit_gb,
        },
        exceeded=exceeded_limits(subscription, usage),
    )
