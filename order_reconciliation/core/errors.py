"""
Error taxonomy for order and payment reconciliation.

Every error carries:
- a stable error code (what clients branch on)
- a user message (safe to show; never contains internal details)
- an HTTP status (used by the API layer)
- whether retrying the same call may succeed
"""
from typing import Any, Dict, List, Optional


class OrderError(Exception):
    """Base exception for all reconciliation errors."""

    error_code = "internal_error"
    http_status = 500
    retryable = False
    default_user_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        errors: Optional[List[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.errors = errors or [self.user_message]
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API error envelope."""
        return {
            "success": False,
            "message": self.user_message,
            "error_code": self.error_code,
            "errors": self.errors,
        }


# ============================================================================
# INPUT ERRORS
# ============================================================================

class ValidationError(OrderError):
    """Bad input. Never retried; the caller must fix the request."""

    error_code = "validation_error"
    http_status = 400
    default_user_message = "The request is invalid."

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("user_message", message)
        super().__init__(message, **kwargs)


class InvalidPricingInput(ValidationError):
    """Cart, discount or credits cannot produce a valid total."""

    error_code = "invalid_pricing_input"


class NotFound(OrderError):
    """Resource does not exist or belongs to another user."""

    error_code = "not_found"
    http_status = 404
    default_user_message = "Order does not exist or access denied."


class Unauthorized(OrderError):
    """No authenticated user on the request."""

    error_code = "unauthorized"
    http_status = 401
    default_user_message = "Authentication required."


class Forbidden(OrderError):
    """Caller lacks the role required for the operation."""

    error_code = "forbidden"
    http_status = 403
    default_user_message = "Admin access required."


# ============================================================================
# GATEWAY ERRORS
# ============================================================================

class GatewayError(OrderError):
    """Base class for payment gateway failures."""

    error_code = "gateway_error"
    http_status = 502
    default_user_message = "Payment service error. Please try again."


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or 5xx from the gateway. Transient."""

    error_code = "gateway_unavailable"
    retryable = True
    default_user_message = "Payment service is temporarily unavailable. Please try again."


class GatewayRejected(GatewayError):
    """The gateway refused the request (4xx). Terminal for this attempt."""

    error_code = "gateway_rejected"
    http_status = 400

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("user_message", message)
        super().__init__(message, **kwargs)


class ReferenceNotFound(GatewayError):
    """The gateway has no record of the reference yet."""

    error_code = "reference_not_found"
    http_status = 404
    default_user_message = "Payment not found at the payment provider."


# ============================================================================
# PAYMENT OUTCOME ERRORS
# ============================================================================

class PaymentFailed(OrderError):
    """The gateway did not report a successful charge."""

    error_code = "payment_failed"
    http_status = 402
    default_user_message = "Payment was not successful."


class PaymentMismatch(OrderError):
    """Amount paid differs from the frozen pending order amount."""

    error_code = "payment_mismatch"
    http_status = 402
    default_user_message = "Payment amount does not match the order total."


class UnknownReference(OrderError):
    """No pending order and no order exist for the reference."""

    error_code = "unknown_reference"
    http_status = 404
    default_user_message = "Unknown payment reference."


# ============================================================================
# STATE ERRORS
# ============================================================================

class IllegalTransition(OrderError):
    """Requested status change is not allowed. Nothing was mutated."""

    error_code = "illegal_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, **kwargs: Any):
        message = f"Cannot change order from {from_status} to {to_status}"
        kwargs.setdefault("user_message", message)
        super().__init__(message, from_status=from_status, to_status=to_status, **kwargs)
        self.from_status = from_status
        self.to_status = to_status


class AlreadyConfirmed(OrderError):
    """A payment confirmation won the race; re-fetch the resulting order."""

    error_code = "already_confirmed"
    http_status = 409
    default_user_message = "Payment for this order has already been confirmed."


class IdentifierExhausted(OrderError):
    """Could not find a free order/invoice number after bounded retries."""

    error_code = "identifier_exhausted"
    http_status = 500
    default_user_message = "Could not create the order. Please contact support."
