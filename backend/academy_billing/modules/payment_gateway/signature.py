"""Inbound webhook signature verification.

Follows the Standard Webhooks scheme used by PortOne: the sender signs
``{webhook-id}.{webhook-timestamp}.{raw body}`` with HMAC-SHA256 and sends
one or more space-separated ``v1,<base64 signature>`` values.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from academy_billing.core.alerting import AlertManager, AlertName, alert_manager
from academy_billing.core.exceptions import VerificationError
from academy_billing.core.metrics import WEBHOOK_VERIFICATION_FAILURES_TOTAL

logger = logging.getLogger(__name__)

WEBHOOK_ID_HEADER = "webhook-id"
WEBHOOK_SIGNATURE_HEADER = "webhook-signature"
WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"

SECRET_PREFIX = "whsec_"
SIGNATURE_VERSION = "v1"


@dataclass(frozen=True)
class WebhookHeaders:
    webhook_id: str
    signature: str
    timestamp: int


def _secret_bytes(secret: str) -> bytes:
    # Standard Webhooks secrets are base64 after the prefix; plain secrets are used as-is
    if secret.startswith(SECRET_PREFIX):
        try:
            return base64.b64decode(secret[len(SECRET_PREFIX):])
        except (binascii.Error, ValueError):
            return secret.encode()
    return secret.encode()


def compute_signature(secret: str, webhook_id: str, timestamp: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 over ``{id}.{timestamp}.{body}``."""
    signed_content = f"{webhook_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = {k.lower(): v for k, v in headers.items()}.get(name)
    return value


def verify_webhook_signature(
    secret: str,
    body: bytes,
    headers: Mapping[str, str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> WebhookHeaders:
    """Verify a webhook against the shared secret.

    Args:
        secret: Shared webhook secret
        body: Raw request body, byte-exact as received
        headers: Request headers
        tolerance_seconds: Allowed clock skew in either direction
        now: Override of the current unix time

    Returns:
        The parsed webhook headers

    Raises:
        VerificationError: With ``reason`` one of missing_headers,
            invalid_timestamp, timestamp_out_of_range, invalid_signature
    """
    webhook_id = _header(headers, WEBHOOK_ID_HEADER)
    signature_header = _header(headers, WEBHOOK_SIGNATURE_HEADER)
    timestamp_header = _header(headers, WEBHOOK_TIMESTAMP_HEADER)

    if not webhook_id or not signature_header or not timestamp_header:
        raise VerificationError("Missing required webhook headers", reason="missing_headers")

    try:
        timestamp = int(timestamp_header)
    except ValueError:
        raise VerificationError("Invalid webhook timestamp", reason="invalid_timestamp")

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance_seconds:
        raise VerificationError(
            "Webhook timestamp outside tolerance window", reason="timestamp_out_of_range"
        )

    expected = compute_signature(secret, webhook_id, timestamp_header, body).encode()
    for candidate in signature_header.split(" "):
        version, _, value = candidate.partition(",")
        if version != SIGNATURE_VERSION or not value:
            continue
        if hmac.compare_digest(value.encode(), expected):
            return WebhookHeaders(webhook_id=webhook_id, signature=value, timestamp=timestamp)

    raise VerificationError("Invalid webhook signature", reason="invalid_signature")


class WebhookVerifier:
    """Verifies webhooks and raises the security alert on failure."""

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        alerts: AlertManager = alert_manager,
        source: str = "portone",
    ):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.alerts = alerts
        self.source = source

    async def verify(
        self,
        body: bytes,
        headers: Mapping[str, str],
        now: Optional[float] = None,
    ) -> WebhookHeaders:
        try:
            return verify_webhook_signature(
                self.secret, body, headers, self.tolerance_seconds, now
            )
        except VerificationError as e:
            WEBHOOK_VERIFICATION_FAILURES_TOTAL.labels(source=self.source, reason=e.reason).inc()
            webhook_id = _header(headers, WEBHOOK_ID_HEADER) or ""
            logger.warning(
                f"Webhook verification failed: {e.message}",
                extra={"reason": e.reason, "webhook_id": webhook_id, "source": self.source},
            )
            await self.alerts.fire(
                AlertName.WEBHOOK_VERIFICATION_FAILED,
                f"Rejected {self.source} webhook: {e.message}",
                key=e.reason,
                webhook_id=webhook_id,
                source=self.source,
            )
            raise
