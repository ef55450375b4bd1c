"""Billing engine error taxonomy.

Each error kind carries the HTTP status it maps to and whether the caller
(usually the payment gateway re-delivering a webhook) may retry it.
"""

from typing import Any, Optional


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

    code = "internal_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class VerificationError(BillingEngineError):
    """Raised when an inbound webhook fails authenticity or freshness checks."""

    code = "verification_failed"
    status_code = 401

    def __init__(self, message: str, reason: str = "invalid_signature"):
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class MalformedPayloadError(BillingEngineError):
    """Raised when a verified webhook body does not match any known schema.

    Answered with 500 so the gateway re-delivers; the cause may be a parser
    bug fixed by the next deploy.
    """

    code = "malformed_payload"
    status_code = 500
    retryable = True


class ValidationError(BillingEngineError):
    """Raised when caller input is invalid."""

    code = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, code=code, details=details)
        self.field = field


class LimitExceededError(BillingEngineError):
    """Raised when an operation would take a tenant beyond its plan limits."""

    code = "limit_exceeded"
    status_code = 402

    def __init__(
        self,
        message: str,
        resource: str,
        current: Optional[int] = None,
        limit: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(
            message,
            code=code,
            details={"resource": resource, "current": current, "limit": limit},
        )
        self.resource = resource
        self.current = current
        self.limit = limit


class NotFoundError(BillingEngineError):
    """Raised when a requested record does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message, details={"resource": resource} if resource else None)
        self.resource = resource


class GatewayError(BillingEngineError):
    """Raised when the payment gateway rejects a call or cannot be reached.

    The gateway's status code and body are kept verbatim so they can be
    propagated to the caller unchanged.
    """

    code = "gateway_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        timed_out: bool = False,
    ):
        status = status_code or 502
        super().__init__(
            message,
            status_code=status,
            details=details,
            retryable=timed_out or status >= 500,
        )
        self.timed_out = timed_out


class PersistenceError(BillingEngineError):
    """Raised when the local store fails to read or write billing state."""

    code = "persistence_error"
    status_code = 500
    retryable = True
