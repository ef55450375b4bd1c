"""Pydantic schemas for webhook endpoints and webhook event administration."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    """Response to the gateway for an accepted delivery."""
    success: bool = True
    message: str
    outcome: str


class WebhookEventResponse(BaseModel):
    """One webhook event log entry."""
    id: uuid.UUID
    webhook_id: Optional[str] = Field(None, serialization_alias="webhookId")
    source: str
    event_type: str = Field(..., serialization_alias="eventType")
    entity_id: str = Field(..., serialization_alias="entityId")
    partner_id: Optional[str] = Field(None, serialization_alias="partnerId")
    payment_id: Optional[str] = Field(None, serialization_alias="paymentId")
    status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    event_timestamp: Optional[datetime] = Field(None, serialization_alias="eventTimestamp")
    processed: bool
    processed_at: Optional[datetime] = Field(None, serialization_alias="processedAt")
    error_message: Optional[str] = Field(None, serialization_alias="errorMessage")
    raw_data: Optional[dict[str, Any]] = Field(None, serialization_alias="rawData")
    received_at: Optional[datetime] = Field(None, serialization_alias="receivedAt")

    class Config:
        from_attributes = True


class WebhookEventStats(BaseModel):
    total: int
    processed: int
    unprocessed: int
    failed: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(..., serialization_alias="totalPages")


class WebhookEventListResponse(BaseModel):
    success: bool = True
    events: list[WebhookEventResponse]
    pagination: Pagination
    stats: WebhookEventStats


class WebhookEventUpdateResponse(BaseModel):
    success: bool = True
    event: WebhookEventResponse
