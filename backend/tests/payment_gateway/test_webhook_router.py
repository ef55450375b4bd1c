"""Tests for the webhook receiver endpoints.

**Feature: academy-billing, Property 11: Signature Rejection**
**Validates: Requirements 4.1, 4.3, 7**
"""

import json
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from academy_billing.core.alerting import AlertManager
from academy_billing.core.config import settings
from academy_billing.core.exceptions import PersistenceError
from academy_billing.main import app
from academy_billing.modules.payment_gateway.router import get_webhook_service
from academy_billing.modules.payment_gateway.service import WebhookService
from academy_billing.modules.payment_gateway.signature import WebhookVerifier, compute_signature


SECRET = "router_test_secret"
SETTLEMENT_URL = "/api/v1/webhooks/settlements"
PAYOUT_URL = "/api/v1/webhooks/payouts"


def signed(body: bytes, secret: str = SECRET, webhook_id: str = "msg_router") -> dict[str, str]:
    timestamp = str(int(time.time()))
    return {
        "content-type": "application/json",
        "webhook-id": webhook_id,
        "webhook-timestamp": timestamp,
        "webhook-signature": f"v1,{compute_signature(secret, webhook_id, timestamp, body)}",
    }


def settlement_body(settlement_id: str = "stl_router") -> bytes:
    return json.dumps({
        "type": "Settlement.Settled",
        "timestamp": "2025-06-15T09:30:00+00:00",
        "data": {"settlementId": settlement_id, "amount": {"order": 10000}},
    }).encode()


@pytest.fixture
def service(monkeypatch):
    monkeypatch.setattr(settings, "PORTONE_WEBHOOK_SECRET", SECRET)
    alerts = AlertManager()
    processed: set[tuple[str, str]] = set()

    event_log = AsyncMock()

    async def is_processed(entity_id, event_type):
        return (entity_id, event_type) in processed

    async def record(event):
        if event.processed:
            processed.add((event.entity_id, event.event_type))

    event_log.is_processed.side_effect = is_processed
    event_log.record.side_effect = record

    mirror = AsyncMock()
    mirror.apply.return_value = True

    webhook_service = WebhookService(
        verifier=WebhookVerifier(SECRET, alerts=alerts),
        event_log=event_log,
        mirror=mirror,
        alerts=alerts,
    )
    app.dependency_overrides[get_webhook_service] = lambda: webhook_service
    yield webhook_service
    app.dependency_overrides.pop(get_webhook_service, None)


@pytest.fixture
def client():
    return TestClient(app)


class TestWebhookEndpoints:
    """Tests for webhook endpoint status codes."""

    def test_processed_delivery_returns_200(self, service, client) -> None:
        body = settlement_body()

        response = client.post(SETTLEMENT_URL, content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Webhook processed successfully",
            "outcome": "processed",
        }
        service.mirror.apply.assert_awaited_once()

    def test_duplicate_delivery_returns_same_success(self, service, client) -> None:
        body = settlement_body()

        first = client.post(SETTLEMENT_URL, content=body, headers=signed(body))
        second = client.post(SETTLEMENT_URL, content=body, headers=signed(body))

        assert first.status_code == second.status_code == 200
        assert first.json()["message"] == second.json()["message"]
        assert second.json()["outcome"] == "duplicate"
        service.mirror.apply.assert_awaited_once()

    def test_unknown_event_returns_200_ignored(self, service, client) -> None:
        body = json.dumps({"type": "Billing.Renewed", "data": {}}).encode()

        response = client.post(PAYOUT_URL, content=body, headers=signed(body))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_bad_signature_returns_401(self, service, client) -> None:
        body = settlement_body()
        headers = signed(body, secret="someone_else")

        response = client.post(SETTLEMENT_URL, content=body, headers=headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid webhook signature"}
        service.mirror.apply.assert_not_awaited()

    def test_missing_headers_returns_401(self, service, client) -> None:
        response = client.post(SETTLEMENT_URL, content=settlement_body())

        assert response.status_code == 401

    def test_malformed_body_returns_500_for_retry(self, service, client) -> None:
        body = json.dumps({"type": "Payout.Failed", "data": {}}).encode()

        response = client.post(PAYOUT_URL, content=body, headers=signed(body))

        assert response.status_code == 500
        assert response.json() == {
            "error": "Webhook processing failed",
            "code": "malformed_payload",
        }

    def test_mirror_failure_returns_500(self, service, client) -> None:
        service.mirror.apply.side_effect = PersistenceError("Failed to update settlement")
        body = settlement_body()

        response = client.post(SETTLEMENT_URL, content=body, headers=signed(body))

        assert response.status_code == 500
        assert response.json()["code"] == "persistence_error"

    def test_unconfigured_secret_returns_500(self, service, client, monkeypatch) -> None:
        monkeypatch.setattr(settings, "PORTONE_WEBHOOK_SECRET", "")
        body = settlement_body()

        response = client.post(SETTLEMENT_URL, content=body, headers=signed(body))

        assert response.status_code == 500
        assert response.json() == {"error": "Webhook not configured"}
        service.mirror.apply.assert_not_awaited()

    def test_settlement_event_at_payout_endpoint_is_400(self, service, client) -> None:
        body = settlement_body()

        response = client.post(PAYOUT_URL, content=body, headers=signed(body))

        assert response.status_code == 400
        assert response.json()["code"] == "wrong_endpoint"
        service.mirror.apply.assert_not_awaited()
        service.event_log.record.assert_not_awaited()

    def test_payout_event_at_settlement_endpoint_is_400(self, service, client) -> None:
        body = json.dumps({
            "type": "Payout.Succeeded",
            "timestamp": "2025-06-15T09:30:00+00:00",
            "data": {"payoutId": "po_router", "amount": 5000},
        }).encode()

        response = client.post(SETTLEMENT_URL, content=body, headers=signed(body))

        assert response.status_code == 400
        assert "Payout.Succeeded" in response.json()["error"]
        service.mirror.apply.assert_not_awaited()
