"""Core marketplace logic: pricing, order lifecycle, expiration and notifications."""
from .exceptions import (
    ConfigurationError,
    DeliveryFailure,
    GatewayResponseError,
    InvalidStateTransition,
    MarketplaceError,
    PaymentSessionCreationFailed,
    ReconciliationFailure,
    ValidationError,
    WebhookSignatureInvalid,
)

__all__ = [
    "ConfigurationError",
    "DeliveryFailure",
    "GatewayResponseError",
    "InvalidStateTransition",
    "MarketplaceError",
    "PaymentSessionCreationFailed",
    "ReconciliationFailure",
    "ValidationError",
    "WebhookSignatureInvalid",
]
