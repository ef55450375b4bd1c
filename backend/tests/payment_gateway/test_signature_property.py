"""Property-based tests for webhook signature verification.

**Feature: academy-billing, Property 11: Signature Rejection**
**Validates: Requirements 4.1, 8**
"""

import base64
import hashlib
import hmac

import pytest
from hypothesis import assume, given, settings, strategies as st

from academy_billing.core.alerting import AlertManager, AlertName
from academy_billing.core.exceptions import VerificationError
from academy_billing.modules.payment_gateway.signature import (
    WebhookVerifier,
    compute_signature,
    verify_webhook_signature,
)


SECRET = "test_webhook_secret"
NOW = 1_750_000_000


def signed_headers(
    body: bytes,
    secret: str = SECRET,
    webhook_id: str = "msg_2abc",
    timestamp: int = NOW,
) -> dict[str, str]:
    signature = compute_signature(secret, webhook_id, str(timestamp), body)
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": f"v1,{signature}",
    }


body_strategy = st.binary(min_size=1, max_size=2048)


class TestSignatureRejection:
    """Property tests for signature rejection.

    **Feature: academy-billing, Property 11: Signature Rejection**
    **Validates: Requirements 4.1, 8**
    """

    @given(body=body_strategy)
    @settings(max_examples=100)
    def test_valid_signature_verifies(self, body: bytes) -> None:
        """**Feature: academy-billing, Property 11: Signature Rejection**

        *For any* body signed with the shared secret, verification SHALL
        succeed and return the delivery id.
        """
        result = verify_webhook_signature(SECRET, body, signed_headers(body), now=NOW)

        assert result.webhook_id == "msg_2abc"
        assert result.timestamp == NOW

    @given(
        body=body_strategy,
        position=st.integers(min_value=0, max_value=2047),
        flip=st.integers(min_value=1, max_value=255),
    )
    @settings(max_examples=100)
    def test_one_byte_change_fails(self, body: bytes, position: int, flip: int) -> None:
        """**Feature: academy-billing, Property 11: Signature Rejection**

        *For any* body, altering one byte after signing SHALL cause
        verification to fail.
        """
        headers = signed_headers(body)
        index = position % len(body)
        tampered = bytearray(body)
        tampered[index] ^= flip

        with pytest.raises(VerificationError) as exc_info:
            verify_webhook_signature(SECRET, bytes(tampered), headers, now=NOW)

        assert exc_info.value.reason == "invalid_signature"
        assert exc_info.value.status_code == 401

    @given(body=body_strategy, other_secret=st.text(min_size=1, max_size=40))
    @settings(max_examples=100)
    def test_wrong_secret_fails(self, body: bytes, other_secret: str) -> None:
        """**Feature: academy-billing, Property 11: Signature Rejection**

        *For any* other secret, the signature SHALL not verify.
        """
        assume(other_secret != SECRET)
        headers = signed_headers(body, secret=other_secret)

        with pytest.raises(VerificationError):
            verify_webhook_signature(SECRET, body, headers, now=NOW)

    @given(skew=st.integers(min_value=-300, max_value=300))
    @settings(max_examples=100)
    def test_skew_within_tolerance_accepted(self, skew: int) -> None:
        """**Feature: academy-billing, Property 11: Signature Rejection**

        *For any* clock skew within the tolerance, in either direction, the
        delivery SHALL be accepted.
        """
        body = b'{"type":"Settlement.Settled"}'

        verify_webhook_signature(SECRET, body, signed_headers(body), now=NOW + skew)

    @given(skew=st.integers(min_value=301, max_value=10**6), sign=st.sampled_from([-1, 1]))
    @settings(max_examples=100)
    def test_skew_beyond_tolerance_rejected(self, skew: int, sign: int) -> None:
        """**Feature: academy-billing, Property 11: Signature Rejection**

        *For any* timestamp further than the tolerance from now, a correctly
        signed delivery SHALL be rejected as a replay.
        """
        body = b'{"type":"Settlement.Settled"}'

        with pytest.raises(VerificationError) as exc_info:
            verify_webhook_signature(SECRET, body, signed_headers(body), now=NOW + sign * skew)

        assert exc_info.value.reason == "timestamp_out_of_range"

    @pytest.mark.parametrize(
        "missing", ["webhook-id", "webhook-timestamp", "webhook-signature"]
    )
    def test_missing_header_rejected(self, missing: str) -> None:
        body = b"{}"
        headers = signed_headers(body)
        del headers[missing]

        with pytest.raises(VerificationError) as exc_info:
            verify_webhook_signature(SECRET, body, headers, now=NOW)

        assert exc_info.value.reason == "missing_headers"

    def test_non_numeric_timestamp_rejected(self) -> None:
        body = b"{}"
        headers = signed_headers(body)
        headers["webhook-timestamp"] = "yesterday"

        with pytest.raises(VerificationError) as exc_info:
            verify_webhook_signature(SECRET, body, headers, now=NOW)

        assert exc_info.value.reason == "invalid_timestamp"

    def test_any_of_several_signatures_may_match(self) -> None:
        body = b'{"type":"Payout.Succeeded"}'
        headers = signed_headers(body)
        headers["webhook-signature"] = f"v1,bm90LXRoZS1zaWduYXR1cmU= {headers['webhook-signature']}"

        verify_webhook_signature(SECRET, body, headers, now=NOW)

    def test_unknown_signature_version_ignored(self) -> None:
        body = b"{}"
        headers = signed_headers(body)
        headers["webhook-signature"] = headers["webhook-signature"].replace("v1,", "v2,")

        with pytest.raises(VerificationError):
            verify_webhook_signature(SECRET, body, headers, now=NOW)

    def test_header_names_are_case_insensitive(self) -> None:
        body = b"{}"
        headers = {k.title(): v for k, v in signed_headers(body).items()}

        verify_webhook_signature(SECRET, body, headers, now=NOW)

    def test_whsec_secret_is_base64_decoded(self) -> None:
        raw_key = b"\x01\x02\x03 raw key bytes"
        secret = "whsec_" + base64.b64encode(raw_key).decode()
        body = b'{"type":"Settlement.Settled"}'

        verify_webhook_signature(secret, body, signed_headers(body, secret=secret), now=NOW)

        expected = base64.b64encode(
            hmac.new(raw_key, b"id.1." + body, hashlib.sha256).digest()
        ).decode()
        assert compute_signature(secret, "id", "1", body) == expected


class TestWebhookVerifier:
    """Tests for the verifier's alerting on rejection.

    **Feature: academy-billing, Property 11: Signature Rejection**
    **Validates: Requirements 4.1, 10.5**
    """

    @pytest.mark.asyncio
    async def test_rejection_fires_security_alert(self) -> None:
        alerts = AlertManager()
        verifier = WebhookVerifier(SECRET, alerts=alerts)
        body = b'{"type":"Settlement.Settled"}'
        headers = signed_headers(body)

        with pytest.raises(VerificationError):
            await verifier.verify(body + b" ", headers, now=NOW)

        history = alerts.get_alert_history(name=AlertName.WEBHOOK_VERIFICATION_FAILED.value)
        assert len(history) == 1
        assert history[0].key == "invalid_signature"
        assert history[0].context["webhook_id"] == "msg_2abc"

    @pytest.mark.asyncio
    async def test_valid_delivery_fires_nothing(self) -> None:
        alerts = AlertManager()
        verifier = WebhookVerifier(SECRET, alerts=alerts)
        body = b'{"type":"Settlement.Settled"}'

        await verifier.verify(body, signed_headers(body), now=NOW)

        assert alerts.get_alert_history() == []
