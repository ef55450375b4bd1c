"""Webhook event log and settlement/payout mirror models.

The mirrors only ever record what the gateway reports; the engine never
originates a settlement or payout transition.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from academy_billing.core.database import Base


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class WebhookEvent(Base):
    """Audit and idempotency record for one webhook delivery."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("entity_id", "event_type", name="uq_webhook_events_entity_event"),
        Index("ix_webhook_events_source_received", "source", "received_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    webhook_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    event_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(entity={self.entity_id}, type={self.event_type})>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "webhook_id": self.webhook_id,
            "source": self.source,
            "event_type": self.event_type,
            "entity_id": self.entity_id,
            "partner_id": self.partner_id,
            "payment_id": self.payment_id,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "event_timestamp": _iso(self.event_timestamp),
            "processed": self.processed,
            "processed_at": _iso(self.processed_at),
            "error_message": self.error_message,
            "raw_data": self.raw_data,
            "received_at": _iso(self.received_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WebhookEvent":
        return cls(
            id=uuid.UUID(data["id"]) if data.get("id") else uuid.uuid4(),
            webhook_id=data.get("webhook_id"),
            source=data["source"],
            event_type=data["event_type"],
            entity_id=data["entity_id"],
            partner_id=data.get("partner_id"),
            payment_id=data.get("payment_id"),
            status=data.get("status"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            event_timestamp=_parse_iso(data.get("event_timestamp")),
            processed=bool(data.get("processed", False)),
            processed_at=_parse_iso(data.get("processed_at")),
            error_message=data.get("error_message"),
            raw_data=data.get("raw_data"),
            received_at=_parse_iso(data.get("received_at")),
        )


class Settlement(Base):
    """Last-known state of a gateway settlement."""

    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    settlement_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    order_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    settlement_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    settlement_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Settlement(id={self.settlement_id}, status={self.status})>"


class Payout(Base):
    """Last-known state of a gateway payout."""

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    payout_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Payout(id={self.payout_id}, status={self.status})>"
