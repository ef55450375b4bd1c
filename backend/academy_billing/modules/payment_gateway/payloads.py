"""Typed webhook payloads.

A verified body is parsed into exactly one of :class:`SettlementEvent`,
:class:`PayoutEvent` or :class:`UnknownEvent`, chosen by its ``type``
field. Unknown types are not errors; bodies that are not JSON objects, lack
a string ``type``, or do not match the schema of a known type are.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from academy_billing.core.exceptions import MalformedPayloadError


class SettlementEventType(str, Enum):
    SCHEDULED = "Settlement.Scheduled"
    IN_PROCESS = "Settlement.InProcess"
    SETTLED = "Settlement.Settled"
    PAYOUT_SCHEDULED = "Settlement.PayoutScheduled"
    PAID_OUT = "Settlement.PaidOut"
    CANCELED = "Settlement.Canceled"


class PayoutEventType(str, Enum):
    SCHEDULED = "Payout.Scheduled"
    PROCESSING = "Payout.Processing"
    SUCCEEDED = "Payout.Succeeded"
    FAILED = "Payout.Failed"
    CANCELED = "Payout.Canceled"


class EventSource(str, Enum):
    SETTLEMENT = "settlement"
    PAYOUT = "payout"
    UNKNOWN = "unknown"


# Mirror status recorded for each event type
EVENT_STATUS: dict[str, str] = {
    SettlementEventType.SCHEDULED.value: "SCHEDULED",
    SettlementEventType.IN_PROCESS.value: "IN_PROCESS",
    SettlementEventType.SETTLED.value: "SETTLED",
    SettlementEventType.PAYOUT_SCHEDULED.value: "PAYOUT_SCHEDULED",
    SettlementEventType.PAID_OUT.value: "PAID_OUT",
    SettlementEventType.CANCELED.value: "CANCELED",
    PayoutEventType.SCHEDULED.value: "SCHEDULED",
    PayoutEventType.PROCESSING.value: "PROCESSING",
    PayoutEventType.SUCCEEDED.value: "SUCCEEDED",
    PayoutEventType.FAILED.value: "FAILED",
    PayoutEventType.CANCELED.value: "CANCELED",
}


class SettlementAmount(BaseModel):
    order: Optional[int] = None
    settlement: Optional[int] = None


class SettlementData(BaseModel):
    settlement_id: str = Field(..., alias="settlementId", min_length=1)
    partner_id: Optional[str] = Field(None, alias="partnerId")
    payment_id: Optional[str] = Field(None, alias="paymentId")
    status: Optional[str] = None
    amount: Optional[SettlementAmount] = None
    currency: Optional[str] = None
    settlement_date: Optional[datetime] = Field(None, alias="settlementDate")

    model_config = {"populate_by_name": True}


class PayoutData(BaseModel):
    payout_id: str = Field(..., alias="payoutId", min_length=1)
    partner_id: Optional[str] = Field(None, alias="partnerId")
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    scheduled_at: Optional[datetime] = Field(None, alias="scheduledAt")
    payout_at: Optional[datetime] = Field(None, alias="payoutAt")
    failure_reason: Optional[str] = Field(None, alias="failureReason")

    model_config = {"populate_by_name": True}


class SettlementEvent(BaseModel):
    """Gateway report of a settlement status change."""

    type: SettlementEventType
    timestamp: datetime
    data: SettlementData

    source: EventSource = EventSource.SETTLEMENT

    @property
    def event_type(self) -> str:
        return self.type.value

    @property
    def entity_id(self) -> str:
        return self.data.settlement_id

    @property
    def partner_id(self) -> Optional[str]:
        return self.data.partner_id

    @property
    def payment_id(self) -> Optional[str]:
        return self.data.payment_id

    @property
    def status(self) -> str:
        return EVENT_STATUS[self.type.value]

    @property
    def amount(self) -> Optional[int]:
        """Settlement amount, falling back to the order amount."""
        if self.data.amount is None:
            return None
        if self.data.amount.settlement is not None:
            return self.data.amount.settlement
        return self.data.amount.order

    @property
    def currency(self) -> Optional[str]:
        return self.data.currency


class PayoutEvent(BaseModel):
    """Gateway report of a payout status change."""

    type: PayoutEventType
    timestamp: datetime
    data: PayoutData

    source: EventSource = EventSource.PAYOUT

    @property
    def event_type(self) -> str:
        return self.type.value

    @property
    def entity_id(self) -> str:
        return self.data.payout_id

    @property
    def partner_id(self) -> Optional[str]:
        return self.data.partner_id

    @property
    def payment_id(self) -> Optional[str]:
        return None

    @property
    def status(self) -> str:
        return EVENT_STATUS[self.type.value]

    @property
    def amount(self) -> Optional[int]:
        return self.data.amount

    @property
    def currency(self) -> Optional[str]:
        return self.data.currency

    @property
    def is_failure(self) -> bool:
        return self.type == PayoutEventType.FAILED


class UnknownEvent(BaseModel):
    """Any event type this engine does not model; logged and ignored."""

    type: str
    timestamp: Optional[datetime] = None
    data: dict[str, Any] = Field(default_factory=dict)

    source: EventSource = EventSource.UNKNOWN

    @property
    def event_type(self) -> str:
        return self.type


WebhookPayload = Union[SettlementEvent, PayoutEvent, UnknownEvent]

_SETTLEMENT_TYPES = {t.value for t in SettlementEventType}
_PAYOUT_TYPES = {t.value for t in PayoutEventType}


def parse_webhook_payload(body: Union[bytes, str]) -> WebhookPayload:
    """Decode a verified webhook body into its typed event.

    Raises:
        MalformedPayloadError: Body is not a JSON object, has no string
            ``type``, or does not match the schema of its known type
    """
    try:
        envelope = json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError("Webhook body is not valid JSON") from e

    if not isinstance(envelope, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")

    event_type = envelope.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayloadError("Webhook body has no event type")

    envelope = {k: v for k, v in envelope.items() if k != "source"}
    try:
        if event_type in _SETTLEMENT_TYPES:
            return SettlementEvent.model_validate(envelope)
        if event_type in _PAYOUT_TYPES:
            return PayoutEvent.model_validate(envelope)
        if not isinstance(envelope.get("data", {}), dict):
            raise MalformedPayloadError("Webhook data must be a JSON object")
        return UnknownEvent.model_validate(envelope)
    except PydanticValidationError as e:
        raise MalformedPayloadError(
            f"Webhook payload does not match {event_type}",
            details={
                "errors": e.errors(include_url=False, include_context=False, include_input=False)
            },
        ) from e
