"""Limit enforcement gate.

Compares live usage with the academy's effective limits and returns a
structured decision. Checks and the mutation they guard are not atomic
by default: two concurrent adds can both pass and overshoot a limit by a
small amount. With ``STRICT_LIMIT_ENFORCEMENT`` enabled, :meth:`LimitGate.guard`
holds a per-tenant lock across the caller's check-then-mutate block.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import AsyncIterator, Optional

from academy_billing.core.config import settings
from academy_billing.core.exceptions import LimitExceededError
from academy_billing.core.messages import get_message
from academy_billing.core.metrics import LIMIT_CHECKS_TOTAL
from academy_billing.core.store import TenantLock
from academy_billing.modules.billing.models import Subscription
from academy_billing.modules.billing.plans import is_unlimited
from academy_billing.modules.billing.repository import SubscriptionRepository
from academy_billing.modules.billing.usage import BYTES_PER_GB, UsageAggregator, UsageSnapshot

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Operations the gate can be asked about."""
    STUDENT_ADD = "student_add"
    TEACHER_ADD = "teacher_add"
    CLASSROOM_ADD = "classroom_add"
    STORAGE_ADD = "storage_add"
    FEATURE = "feature"


class DecisionReason(str, Enum):
    WITHIN_LIMIT = "within_limit"
    UNLIMITED = "unlimited"
    LIMIT_EXCEEDED = "limit_exceeded"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    FEATURE_ENABLED = "feature_enabled"
    FEATURE_DISABLED = "feature_disabled"


# resource kind -> (limit column key, message key, error code)
_NUMERIC_RESOURCES = {
    ResourceKind.STUDENT_ADD: ("students", "limit.student", "STUDENT_LIMIT_EXCEEDED"),
    ResourceKind.TEACHER_ADD: ("teachers", "limit.teacher", "TEACHER_LIMIT_EXCEEDED"),
    ResourceKind.CLASSROOM_ADD: ("classrooms", "limit.classroom", "CLASSROOM_LIMIT_EXCEEDED"),
    ResourceKind.STORAGE_ADD: ("storage_gb", "limit.storage", "STORAGE_LIMIT_EXCEEDED"),
}


@dataclass(frozen=True)
class LimitDecision:
    """Allowed or denied, with enough data to render an upgrade prompt."""
    allowed: bool
    resource: str
    reason: DecisionReason
    message: str
    current: Optional[float] = None
    limit: Optional[int] = None
    requested: int = 0
    feature: Optional[str] = None
    code: Optional[str] = None

    def to_error(self) -> LimitExceededError:
        return LimitExceededError(
            self.message,
            resource=self.resource,
            current=self.current,
            limit=self.limit,
            code=self.code,
        )

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "resource": self.resource,
            "reason": self.reason.value,
            "message": self.message,
            "current": self.current,
            "limit": self.limit,
            "requested": self.requested,
            "feature": self.feature,
            "code": self.code,
        }


def evaluate_limit(
    subscription: Optional[Subscription],
    usage: Optional[UsageSnapshot],
    resource_kind: ResourceKind,
    requested_delta: int = 1,
    feature: Optional[str] = None,
    today: Optional[date] = None,
) -> LimitDecision:
    """Decide one limit check from an already-loaded subscription and usage.

    For ``STORAGE_ADD`` the requested delta is in bytes; for the seat and
    classroom kinds it is a count.
    """
    resource_kind = ResourceKind(resource_kind)

    if subscription is None or not subscription.is_active(today):
        return LimitDecision(
            allowed=False,
            resource=resource_kind.value,
            reason=DecisionReason.SUBSCRIPTION_INACTIVE,
            message=get_message("limit.inactive"),
            requested=requested_delta,
            feature=feature,
            code="SUBSCRIPTION_INACTIVE",
        )

    if resource_kind == ResourceKind.FEATURE:
        enabled = bool(feature) and subscription.has_feature(feature)
        return LimitDecision(
            allowed=enabled,
            resource=resource_kind.value,
            reason=DecisionReason.FEATURE_ENABLED if enabled else DecisionReason.FEATURE_DISABLED,
            message=(
                get_message("limit.allowed") if enabled
                else get_message("limit.feature", feature=feature)
            ),
            feature=feature,
            code=None if enabled else "FEATURE_NOT_AVAILABLE",
        )

    limit_key, message_key, error_code = _NUMERIC_RESOURCES[resource_kind]
    limit = subscription.get_limit(limit_key)
    usage = usage or UsageSnapshot()

    if resource_kind == ResourceKind.STORAGE_ADD:
        current = round(usage.storage_gb, 2)
        projected_exceeds = (
            not is_unlimited(limit)
            and usage.storage_bytes + requested_delta > limit * BYTES_PER_GB
        )
    else:
        current = usage.get(limit_key)
        projected_exceeds = not is_unlimited(limit) and current + requested_delta > limit

    if is_unlimited(limit):
        return LimitDecision(
            allowed=True,
            resource=resource_kind.value,
            reason=DecisionReason.UNLIMITED,
            message=get_message("limit.unlimited"),
            current=current,
            limit=limit,
            requested=requested_delta,
        )

    if projected_exceeds:
        return LimitDecision(
            allowed=False,
            resource=resource_kind.value,
            reason=DecisionReason.LIMIT_EXCEEDED,
            message=get_message(message_key, current=current, limit=limit),
            current=current,
            limit=limit,
            requested=requested_delta,
            code=error_code,
        )

    return LimitDecision(
        allowed=True,
        resource=resource_kind.value,
        reason=DecisionReason.WITHIN_LIMIT,
        message=get_message("limit.allowed"),
        current=current,
        limit=limit,
        requested=requested_delta,
    )


def exceeded_limits(subscription: Subscription, usage: UsageSnapshot) -> list[dict]:
    """Every resource where current usage is already above the effective limit."""
    exceeded = []
    for limit_key in ("students", "teachers", "classrooms", "storage_gb"):
        limit = subscription.get_limit(limit_key)
        current = usage.get(limit_key)
        if not is_unlimited(limit) and current > limit:
            exceeded.append({
                "resource": limit_key,
                "current": round(current, 2) if limit_key == "storage_gb" else current,
                "limit": limit,
            })
    return exceeded


class LimitGate:
    """Loads subscription and fresh usage, then decides."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        usage: UsageAggregator,
        lock: Optional[TenantLock] = None,
        strict: Optional[bool] = None,
    ):
        self.subscriptions = subscriptions
        self.usage = usage
        self.lock = lock
        self.strict = settings.STRICT_LIMIT_ENFORCEMENT if strict is None else strict

    async def check_limit(
        self,
        academy_id: uuid.UUID,
        resource_kind: ResourceKind,
        requested_delta: int = 1,
        feature: Optional[str] = None,
        today: Optional[date] = None,
    ) -> LimitDecision:
        subscription = await self.subscriptions.get_by_academy(academy_id)

        snapshot = None
        if (
            subscription is not None
            and subscription.is_active(today)
            and resource_kind != ResourceKind.FEATURE
        ):
            snapshot = await self.usage.usage(academy_id)

        decision = evaluate_limit(
            subscription, snapshot, resource_kind, requested_delta, feature, today
        )

        LIMIT_CHECKS_TOTAL.labels(
            resource=decision.resource,
            decision="allowed" if decision.allowed else "denied",
        ).inc()
        if not decision.allowed:
            logger.info(
                "Limit check denied",
                extra={
                    "academy_id": str(academy_id),
                    "resource": decision.resource,
                    "reason": decision.reason.value,
                    "current": decision.current,
                    "limit": decision.limit,
                },
            )
        return decision

    async def enforce(
        self,
        academy_id: uuid.UUID,
        resource_kind: ResourceKind,
        requested_delta: int = 1,
        feature: Optional[str] = None,
        today: Optional[date] = None,
    ) -> LimitDecision:
        """Like :meth:`check_limit` but raises LimitExceededError on denial."""
        decision = await self.check_limit(academy_id, resource_kind, requested_delta, feature, today)
        if not decision.allowed:
            raise decision.to_error()
        return decision

    @asynccontextmanager
    async def guard(
        self,
        academy_id: uuid.UUID,
        resource_kind: ResourceKind,
        requested_delta: int = 1,
        feature: Optional[str] = None,
    ) -> AsyncIterator[LimitDecision]:
        """Enforce a limit and run the caller's mutation inside the block.

        In strict mode the tenant lock is held until the block exits, so a
        concurrent guard for the same academy sees the committed mutation.
        """
        if self.strict and self.lock is not None:
            async with self.lock.hold(str(academy_id)):
                yield await self.enforce(academy_id, resource_kind, requested_delta, feature)
        else:
            yield await self.enforce(academy_id, resource_kind, requested_delta, feature)
