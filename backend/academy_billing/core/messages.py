"""User-visible messages keyed by error kind, one table per locale.

Call sites never hardcode user-facing text; they pass a message key and
format parameters to :func:`get_message`.
"""

from contextvars import ContextVar
from typing import Optional

from academy_billing.core.config import settings

SUPPORTED_LOCALES = ("en", "ko")

# Set per request from Accept-Language
locale_var: ContextVar[Optional[str]] = ContextVar("locale", default=None)

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        # Webhooks
        "webhook.not_configured": "Webhook not configured",
        "webhook.invalid_signature": "Invalid webhook signature",
        "webhook.processed": "Webhook processed successfully",
        "webhook.ignored": "Webhook event type not handled",
        "webhook.failed": "Webhook processing failed",
        "webhook.event_not_found": "Webhook event not found",
        "webhook.wrong_endpoint": "{event_type} events are not accepted by the {source} endpoint",
        # Refunds
        "refund.missing_fields": "Invoice ID and reason are required",
        "refund.amount_required": "Refund amount must be greater than 0 for partial refunds",
        "refund.invoice_not_found": "Invoice not found",
        "refund.invalid_status": "Cannot refund invoice with status: {status}",
        "refund.already_refunded": "Invoice has already been refunded",
        "refund.amount_exceeds": "Refund amount ({amount}) cannot exceed invoice amount ({invoice_amount})",
        "refund.no_payment_id": "No payment ID found for this invoice",
        "refund.gateway_failed": "Payment gateway rejected the refund",
        "refund.not_configured": "Payment system not configured",
        "refund.succeeded": "Refund processed successfully",
        "refund.reconcile": "Refund processed at the gateway but the invoice could not be updated. Manual reconciliation required.",
        # Subscriptions
        "subscription.not_found": "Subscription not found",
        "subscription.inactive": "Subscription is not active",
        "subscription.invalid_tier": "Invalid subscription tier: {tier}",
        "subscription.not_downgrade": "This is not a downgrade",
        "subscription.not_upgrade": "This is not an upgrade",
        "subscription.downgrade_blocked": "Current usage exceeds the limits of the {plan} plan",
        "subscription.downgrade_scheduled": "Downgrade to {plan} scheduled for {effective_date}",
        "subscription.upgraded": "Upgraded to {plan}",
        "subscription.no_pending_change": "No pending plan change to cancel",
        "subscription.amount_undefined": "Monthly amount could not be determined for tier: {tier}",
        "subscription.free_not_purchasable": "The free plan does not need a subscription",
        "subscription.already_subscribed": "Academy already has an active paid subscription. Use upgrade or downgrade to change plans.",
        "subscription.subscribed": "Subscribed to the {plan} plan",
        "subscription.billing_key_required": "A billing key is required to subscribe",
        "subscription.gateway_not_configured": "Payment system not configured",
        "subscription.charged_not_recorded": "Payment succeeded but the subscription could not be saved. Please contact support.",
        "subscription.already_canceled": "Subscription is already canceled",
        "subscription.canceled": "Subscription canceled",
        "subscription.cancel_scheduled": "Subscription will end on {end_date}",
        # Add-ons
        "addons.unavailable": "Add-ons not available for this tier",
        "addons.negative": "Add-on quantities cannot be negative",
        "addons.students_increment": "Students must be in multiples of {increment}",
        "addons.teachers_increment": "Teachers must be in multiples of {increment}",
        "addons.storage_increment": "Storage must be in multiples of {increment}GB",
        "addons.ai_cards_increment": "AI report cards must be in multiples of {increment}",
        "addons.below_usage": "New {resource} limit ({limit}) would be below current usage ({current})",
        # Limits
        "limit.inactive": "Subscription is not active. Renew your plan to continue.",
        "limit.student": "Student limit reached ({current}/{limit}). Upgrade your plan to add more students.",
        "limit.teacher": "Teacher limit reached ({current}/{limit}). Upgrade your plan to add more teachers.",
        "limit.storage": "Storage limit reached ({current}/{limit} GB). Upgrade your plan or buy extra storage.",
        "limit.classroom": "Classroom limit reached ({current}/{limit}).",
        "limit.feature": "The {feature} feature is not available on your plan.",
        "limit.unlimited": "Unlimited",
        "limit.allowed": "Within plan limits",
        # Downgrade violations
        "violation.students": "Students: currently {current}, {plan} allows at most {limit}",
        "violation.teachers": "Teachers: currently {current}, {plan} allows at most {limit}",
        "violation.classrooms": "Classrooms: currently {current}, {plan} allows at most {limit}",
        "violation.storage_gb": "Storage: currently {current}GB, {plan} allows at most {limit}GB",
        # Status
        "status.active": "Subscription is active",
        "status.trialing": "Free trial in progress",
        "status.past_due": "Payment is past due",
        "status.canceled": "Subscription has been canceled",
        "status.unknown": "Unable to determine subscription status",
        # Auth
        "auth.missing_token": "Authentication required",
        "auth.invalid_token": "Invalid or expired token",
        "auth.forbidden": "You do not have permission to perform this action",
        "auth.academy_required": "An academy must be specified",
        # Admin
        "admin.invoice_filter_required": "subscriptionId or academyId is required",
    },
    "ko": {
        "webhook.not_configured": "웹훅이 설정되지 않았습니다",
        "webhook.invalid_signature": "웹훅 서명이 유효하지 않습니다",
        "webhook.processed": "웹훅이 처리되었습니다",
        "webhook.ignored": "처리하지 않는 웹훅 유형입니다",
        "webhook.failed": "웹훅 처리에 실패했습니다",
        "webhook.event_not_found": "웹훅 이벤트를 찾을 수 없습니다",
        "webhook.wrong_endpoint": "{source} 엔드포인트는 {event_type} 이벤트를 받지 않습니다",
        "refund.missing_fields": "청구서 ID와 환불 사유가 필요합니다",
        "refund.amount_required": "부분 환불 금액은 0보다 커야 합니다",
        "refund.invoice_not_found": "청구서를 찾을 수 없습니다",
        "refund.invalid_status": "{status} 상태의 청구서는 환불할 수 없습니다",
        "refund.already_refunded": "이미 환불된 청구서입니다",
        "refund.amount_exceeds": "환불 금액({amount})이 청구 금액({invoice_amount})을 초과할 수 없습니다",
        "refund.no_payment_id": "이 청구서의 결제 ID를 찾을 수 없습니다",
        "refund.gateway_failed": "결제사가 환불을 거부했습니다",
        "refund.not_configured": "결제 시스템이 설정되지 않았습니다",
        "refund.succeeded": "환불이 처리되었습니다",
        "refund.reconcile": "결제사 환불은 완료되었으나 청구서 갱신에 실패했습니다. 수동 확인이 필요합니다.",
        "subscription.not_found": "구독 정보를 찾을 수 없습니다",
        "subscription.inactive": "구독이 활성 상태가 아닙니다",
        "subscription.invalid_tier": "유효하지 않은 요금제입니다: {tier}",
        "subscription.not_downgrade": "다운그레이드가 아닙니다",
        "subscription.not_upgrade": "업그레이드가 아닙니다",
        "subscription.downgrade_blocked": "현재 사용량이 {plan} 요금제 한도를 초과합니다",
        "subscription.downgrade_scheduled": "{effective_date}에 {plan} 요금제로 변경됩니다",
        "subscription.upgraded": "{plan} 요금제로 업그레이드되었습니다",
        "subscription.no_pending_change": "취소할 예정된 요금제 변경이 없습니다",
        "subscription.amount_undefined": "{tier} 요금제의 월 금액을 계산할 수 없습니다",
        "subscription.free_not_purchasable": "무료 요금제는 구독이 필요하지 않습니다",
        "subscription.already_subscribed": "이미 유료 구독 중입니다. 요금제 변경은 업그레이드 또는 다운그레이드를 이용하세요.",
        "subscription.subscribed": "{plan} 요금제 구독이 시작되었습니다",
        "subscription.billing_key_required": "구독하려면 빌링키가 필요합니다",
        "subscription.gateway_not_configured": "결제 시스템이 설정되지 않았습니다",
        "subscription.charged_not_recorded": "결제는 완료되었으나 구독 저장에 실패했습니다. 고객센터로 문의해 주세요.",
        "subscription.already_canceled": "이미 취소된 구독입니다",
        "subscription.canceled": "구독이 취소되었습니다",
        "subscription.cancel_scheduled": "구독이 {end_date}에 종료됩니다",
        "addons.unavailable": "이 요금제에서는 추가 옵션을 사용할 수 없습니다",
        "addons.negative": "추가 수량은 음수일 수 없습니다",
        "addons.students_increment": "학생 수는 {increment}명 단위로만 추가할 수 있습니다",
        "addons.teachers_increment": "강사 수는 {increment}명 단위로만 추가할 수 있습니다",
        "addons.storage_increment": "저장 공간은 {increment}GB 단위로만 추가할 수 있습니다",
        "addons.ai_cards_increment": "AI 리포트 카드는 {increment}개 단위로만 추가할 수 있습니다",
        "addons.below_usage": "새 {resource} 한도({limit})가 현재 사용량({current})보다 작습니다",
        "limit.inactive": "구독이 활성 상태가 아닙니다. 요금제를 갱신해 주세요.",
        "limit.student": "학생 수 한도에 도달했습니다 ({current}/{limit}). 요금제를 업그레이드하세요.",
        "limit.teacher": "강사 수 한도에 도달했습니다 ({current}/{limit}). 요금제를 업그레이드하세요.",
        "limit.storage": "저장 공간 한도에 도달했습니다 ({current}/{limit} GB).",
        "limit.classroom": "교실 수 한도에 도달했습니다 ({current}/{limit}).",
        "limit.feature": "현재 요금제에서는 {feature} 기능을 사용할 수 없습니다.",
        "limit.unlimited": "무제한",
        "limit.allowed": "요금제 한도 이내입니다",
        "violation.students": "학생 수: 현재 {current}명, {plan}은 최대 {limit}명",
        "violation.teachers": "강사 수: 현재 {current}명, {plan}은 최대 {limit}명",
        "violation.classrooms": "교실 수: 현재 {current}개, {plan}은 최대 {limit}개",
        "violation.storage_gb": "저장 공간: 현재 {current}GB, {plan}은 최대 {limit}GB",
        "status.active": "구독이 활성화되어 있습니다",
        "status.trialing": "무료 체험 중입니다",
        "status.past_due": "결제가 연체되었습니다",
        "status.canceled": "구독이 취소되었습니다",
        "status.unknown": "구독 상태를 확인할 수 없습니다",
        "auth.missing_token": "인증이 필요합니다",
        "auth.invalid_token": "토큰이 유효하지 않거나 만료되었습니다",
        "auth.forbidden": "이 작업을 수행할 권한이 없습니다",
        "auth.academy_required": "학원을 지정해야 합니다",
        "admin.invoice_filter_required": "subscriptionId 또는 academyId가 필요합니다",
    },
}


def resolve_locale(accept_language: Optional[str] = None) -> str:
    """Pick a supported locale from an Accept-Language header value."""
    if accept_language:
        for part in accept_language.split(","):
            tag = part.split(";")[0].strip().lower()
            primary = tag.split("-")[0]
            if primary in SUPPORTED_LOCALES:
                return primary
    if settings.DEFAULT_LOCALE in SUPPORTED_LOCALES:
        return settings.DEFAULT_LOCALE
    return "en"


def get_message(key: str, locale: Optional[str] = None, **params) -> str:
    """Look up and format a message, falling back to English then the key."""
    table = MESSAGES.get(locale or locale_var.get() or resolve_locale(), MESSAGES["en"])
    template = table.get(key) or MESSAGES["en"].get(key)
    if template is None:
        return key
    return template.format(**params) if params else template
