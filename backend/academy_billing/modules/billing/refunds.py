"""Refund processor for subscription invoices.

Financial truth lives at the gateway: once the gateway has cancelled a
payment the refund is reported as successful even if the local invoice
cannot be updated, and an operator is alerted to reconcile by hand.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.core.alerting import AlertManager, AlertName, alert_manager
from academy_billing.core.exceptions import BillingEngineError, NotFoundError, ValidationError
from academy_billing.core.messages import get_message
from academy_billing.core.metrics import REFUNDS_TOTAL
from academy_billing.modules.billing.models import Invoice, InvoiceStatus
from academy_billing.modules.billing.repository import InvoiceRepository
from academy_billing.modules.payment_gateway.client import PortOneClient

logger = logging.getLogger(__name__)


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass
class RefundResult:
    invoice_id: uuid.UUID
    refund_amount: int
    refund_type: RefundType
    cancellation_status: Optional[str]
    warning: Optional[str] = None


class RefundProcessor:
    """Validates refund eligibility, cancels at the gateway, updates the invoice."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PortOneClient,
        alerts: AlertManager = alert_manager,
    ):
        self.session = session
        self.gateway = gateway
        self.alerts = alerts
        self.invoice_repo = InvoiceRepository(session)

    async def _check_eligibility(
        self,
        invoice_id: Optional[uuid.UUID],
        reason: Optional[str],
        refund_type: RefundType,
        amount: Optional[int],
    ) -> tuple[Invoice, int, str]:
        """Run the preconditions in order; each failure is its own error."""
        if not invoice_id or not reason or not reason.strip():
            raise ValidationError(
                get_message("refund.missing_fields"),
                field="reason" if invoice_id else "invoiceId",
                code="missing_fields",
            )
        if refund_type == RefundType.PARTIAL and (amount is None or amount <= 0):
            raise ValidationError(
                get_message("refund.amount_required"), field="amount", code="amount_required"
            )

        invoice = await self.invoice_repo.get_by_id(invoice_id)
        if invoice is None:
            raise NotFoundError(get_message("refund.invoice_not_found"), resource="invoice")

        if invoice.status in (
            InvoiceStatus.REFUNDED.value,
            InvoiceStatus.PARTIALLY_REFUNDED.value,
        ):
            raise ValidationError(
                get_message("refund.already_refunded"), field="invoiceId", code="already_refunded"
            )
        if invoice.status != InvoiceStatus.PAID.value:
            raise ValidationError(
                get_message("refund.invalid_status", status=invoice.status),
                field="invoiceId",
                code="invalid_status",
            )
        if invoice.is_marked_refunded():
            raise ValidationError(
                get_message("refund.already_refunded"), field="invoiceId", code="already_refunded"
            )

        refund_amount = invoice.amount if refund_type == RefundType.FULL else amount
        if refund_amount > invoice.amount:
            raise ValidationError(
                get_message(
                    "refund.amount_exceeds", amount=refund_amount, invoice_amount=invoice.amount
                ),
                field="amount",
                code="amount_exceeds",
            )

        payment_id = invoice.resolve_payment_id()
        if not payment_id:
            raise ValidationError(
                get_message("refund.no_payment_id"), field="invoiceId", code="no_payment_id"
            )
        return invoice, refund_amount, payment_id

    async def refund(
        self,
        invoice_id: Optional[uuid.UUID],
        reason: Optional[str],
        refund_type: RefundType = RefundType.FULL,
        amount: Optional[int] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> RefundResult:
        """Refund a paid invoice once, in full or in part.

        Raises:
            ValidationError: A precondition failed (message names which)
            NotFoundError: The invoice does not exist
            GatewayError: The gateway rejected the cancellation; carries the
                gateway's status and body verbatim
        """
        refund_type = RefundType(refund_type)
        invoice, refund_amount, payment_id = await self._check_eligibility(
            invoice_id, reason, refund_type, amount
        )

        if not self.gateway.api_secret:
            raise BillingEngineError(
                get_message("refund.not_configured"), code="gateway_not_configured"
            )

        logger.info(
            f"Requesting {refund_type.value} refund of invoice {invoice.id}",
            extra={"payment_id": payment_id, "refund_amount": refund_amount},
        )
        try:
            if refund_type == RefundType.PARTIAL:
                cancellation = await self.gateway.cancel_payment(
                    payment_id,
                    reason,
                    amount=refund_amount,
                    current_cancellable_amount=invoice.amount,
                )
            else:
                cancellation = await self.gateway.cancel_payment(payment_id, reason)
        except BillingEngineError:
            REFUNDS_TOTAL.labels(refund_type=refund_type.value, outcome="gateway_rejected").inc()
            raise

        invoice_id = invoice.id
        result = RefundResult(
            invoice_id=invoice_id,
            refund_amount=refund_amount,
            refund_type=refund_type,
            cancellation_status=cancellation.status,
        )

        invoice.invoice_metadata = {
            **(invoice.invoice_metadata or {}),
            "refunded": True,
            "refund_type": refund_type.value,
            "refund_amount": refund_amount,
            "refund_reason": reason,
            "refunded_at": datetime.utcnow().isoformat(),
            "refunded_by": str(actor_id) if actor_id else None,
            "portone_cancellation": (cancellation.gateway_response or {}).get("cancellation"),
        }
        invoice.status = (
            InvoiceStatus.REFUNDED.value
            if refund_type == RefundType.FULL
            else InvoiceStatus.PARTIALLY_REFUNDED.value
        )

        try:
            await self.invoice_repo.save(invoice)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                f"Refund of invoice {invoice_id} succeeded at the gateway but the invoice "
                f"update failed: {e}",
                exc_info=True,
            )
            await self.alerts.fire(
                AlertName.REFUND_RECONCILIATION_REQUIRED,
                f"Invoice {invoice_id} refunded at gateway ({refund_amount}) but not updated locally",
                key=str(invoice_id),
                payment_id=payment_id,
                refund_amount=refund_amount,
                refund_type=refund_type.value,
            )
            REFUNDS_TOTAL.labels(refund_type=refund_type.value, outcome="reconcile").inc()
            result.warning = get_message("refund.reconcile")
            return result

        REFUNDS_TOTAL.labels(refund_type=refund_type.value, outcome="succeeded").inc()
        logger.info(f"Refund of invoice {invoice_id} completed: {cancellation.status}")
        return result
