"""PortOne REST API client.

Only the two calls the billing engine makes are implemented: cancelling
(refunding) a payment and charging a stored billing key. Every request is
bounded by ``GATEWAY_TIMEOUT_SECONDS``; a timeout surfaces as a retryable
GatewayError.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from academy_billing.core.config import settings
from academy_billing.core.exceptions import GatewayError
from academy_billing.core.metrics import GATEWAY_REQUEST_DURATION_SECONDS

logger = logging.getLogger(__name__)

# Error type PortOne returns when a payment id has already been paid
ALREADY_PAID = "ALREADY_PAID"


@dataclass
class CancellationResult:
    """Result from a payment cancellation."""
    payment_id: str
    status: Optional[str]
    cancelled_amount: Optional[int] = None
    gateway_response: Optional[dict] = None


@dataclass
class ChargeResult:
    """Result from a billing key charge."""
    payment_id: str
    paid_at: Optional[str] = None
    pg_tx_id: Optional[str] = None
    receipt_url: Optional[str] = None
    gateway_response: Optional[dict] = None


class PortOneClient:
    """Authenticated client for the PortOne v2 API."""

    def __init__(
        self,
        api_secret: str,
        base_url: str = "https://api.portone.io",
        store_id: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.store_id = store_id
        self.timeout = timeout
        self._transport = transport

    def _get_auth_header(self) -> str:
        return f"PortOne {self.api_secret}"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        operation: str = "request",
    ) -> dict:
        """Make authenticated request to the PortOne API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            data: Request body data
            operation: Label for the latency histogram

        Returns:
            Response JSON

        Raises:
            GatewayError: On timeout, connection failure or a non-2xx response
        """
        start = time.perf_counter()
        status_label = "error"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method=method,
                    url=f"{self.base_url}{endpoint}",
                    headers={
                        "Authorization": self._get_auth_header(),
                        "Content-Type": "application/json",
                    },
                    json=data,
                )
        except httpx.TimeoutException as e:
            status_label = "timeout"
            logger.error(f"PortOne {operation} timed out after {self.timeout}s")
            raise GatewayError(
                "Payment gateway request timed out",
                status_code=504,
                details={"operation": operation},
                timed_out=True,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"PortOne {operation} request error: {e}")
            raise GatewayError(
                "Payment gateway unreachable",
                status_code=502,
                details={"operation": operation},
            ) from e
        else:
            status_label = str(response.status_code)
        finally:
            GATEWAY_REQUEST_DURATION_SECONDS.labels(
                operation=operation, status_code=status_label
            ).observe(time.perf_counter() - start)

        body = self._decode(response)
        if response.status_code >= 400:
            message = body.get("message") or body.get("type") or f"HTTP {response.status_code}"
            logger.warning(
                f"PortOne {operation} rejected: {response.status_code} {message}",
                extra={"gateway_status": response.status_code},
            )
            raise GatewayError(message, status_code=response.status_code, details=body)
        return body

    @staticmethod
    def _decode(response: httpx.Response) -> dict:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"data": body}

    async def cancel_payment(
        self,
        payment_id: str,
        reason: str,
        amount: Optional[int] = None,
        current_cancellable_amount: Optional[int] = None,
    ) -> CancellationResult:
        """Cancel a payment in full, or partially when ``amount`` is given.

        Args:
            payment_id: Gateway payment id
            reason: Cancellation reason shown to the payer
            amount: Amount to cancel for a partial refund
            current_cancellable_amount: Amount the caller believes is still
                cancellable; the gateway rejects the call if it disagrees

        Returns:
            CancellationResult with the gateway's cancellation status
        """
        request_body: dict = {"reason": reason}
        if self.store_id:
            request_body["storeId"] = self.store_id
        if amount is not None:
            request_body["amount"] = amount
        if current_cancellable_amount is not None:
            request_body["currentCancellableAmount"] = current_cancellable_amount

        response = await self._make_request(
            "POST",
            f"/payments/{quote(payment_id, safe='')}/cancel",
            request_body,
            operation="cancel_payment",
        )
        cancellation = response.get("cancellation") or {}
        return CancellationResult(
            payment_id=payment_id,
            status=cancellation.get("status"),
            cancelled_amount=cancellation.get("totalAmount"),
            gateway_response=response,
        )

    async def charge_billing_key(
        self,
        payment_id: str,
        billing_key: str,
        order_name: str,
        amount: int,
        currency: str = "KRW",
        customer_name: Optional[str] = None,
    ) -> ChargeResult:
        """Charge a stored billing key once.

        Args:
            payment_id: Merchant-chosen payment id, unique per attempt
            billing_key: Billing key issued when the card was registered
            order_name: Description shown on the receipt
            amount: Total amount in whole currency units
            currency: ISO currency code
            customer_name: Payer display name

        Returns:
            ChargeResult with gateway identifiers
        """
        request_body: dict = {
            "billingKey": billing_key,
            "orderName": order_name,
            "amount": {"total": amount},
            "currency": currency,
        }
        if self.store_id:
            request_body["storeId"] = self.store_id
        if customer_name:
            request_body["customer"] = {"name": {"full": customer_name}}

        response = await self._make_request(
            "POST",
            f"/payments/{quote(payment_id, safe='')}/billing-key",
            request_body,
            operation="charge_billing_key",
        )
        payment = response.get("payment") or {}
        return ChargeResult(
            payment_id=payment_id,
            paid_at=payment.get("paidAt"),
            pg_tx_id=payment.get("pgTxId"),
            receipt_url=payment.get("receiptUrl"),
            gateway_response=response,
        )


def get_portone_client() -> PortOneClient:
    """Build a client from settings (FastAPI dependency)."""
    return PortOneClient(
        api_secret=settings.PORTONE_API_SECRET,
        base_url=settings.PORTONE_API_BASE_URL,
        store_id=settings.PORTONE_STORE_ID,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
