"""
Exception classes for the marketplace core.

Every error carries a machine-readable code and the HTTP status the API
layer answers with. Checkout errors raised before any durable write leave
no side effects behind; batch jobs log and count them per item.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """
    Base exception for all marketplace errors.

    Every exception includes:
    - Error code (for client handling)
    - User message (safe to show to users)
    - HTTP status code (for API responses)
    - Context (ids and details for the logs)
    """

    error_code = "marketplace_error"
    http_status = 500
    user_message = "An error occurred. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if user_message is not None:
            self.user_message = user_message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class ConfigurationError(MarketplaceError):
    """
    Partner payment credentials are missing or invalid.

    Always raised before any order row is written.
    """

    error_code = "partner_not_configured"
    http_status = 422
    user_message = "This partner cannot accept payments right now."


class ValidationError(MarketplaceError):
    """Malformed checkout input."""

    error_code = "invalid_checkout"
    http_status = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message, user_message=message, **context)


class PaymentSessionCreationFailed(MarketplaceError):
    """The gateway rejected or failed the checkout session request."""

    error_code = "payment_session_failed"
    http_status = 502
    user_message = "The payment provider could not start the checkout. Please try again."

    def __init__(self, message: str, status_code: Optional[int] = None, **context: Any):
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class GatewayResponseError(MarketplaceError):
    """A successful gateway response was missing required fields or malformed."""

    error_code = "gateway_response_invalid"
    http_status = 502
    user_message = "The payment provider returned an unexpected response."


class InvalidStateTransition(MarketplaceError):
    """An order was asked to move along an edge the lifecycle does not allow."""

    error_code = "invalid_state_transition"
    http_status = 409
    user_message = "The order cannot be changed in its current state."

    def __init__(
        self,
        message: str,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, from_status=from_status, to_status=to_status, **context)
        self.from_status = from_status
        self.to_status = to_status


class DeliveryFailure(MarketplaceError):
    """A push channel failed to deliver a single notification."""

    error_code = "delivery_failed"
    http_status = 502

    def __init__(
        self,
        message: str,
        channel: str,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, channel=channel, status_code=status_code, **context)
        self.channel = channel
        self.status_code = status_code


class ReconciliationFailure(MarketplaceError):
    """A sweep or webhook step could not bring local state in line with the gateway."""

    error_code = "reconciliation_failed"
    http_status = 502

    def __init__(self, message: str, step: str, **context: Any):
        super().__init__(message, step=step, **context)
        self.step = step


class WebhookSignatureInvalid(MarketplaceError):
    """A payment notification did not carry a valid gateway signature."""

    error_code = "invalid_webhook_signature"
    http_status = 401
    user_message = "Invalid webhook signature."
