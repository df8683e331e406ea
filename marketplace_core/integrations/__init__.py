"""External integrations: payment gateway and push providers."""
from .gateway_client import CircuitBreaker, GatewayClient, GatewayError, GatewayErrorType
from .push_channels import ExpoChannel, FcmChannel, PushChannel

__all__ = [
    "CircuitBreaker",
    "ExpoChannel",
    "FcmChannel",
    "GatewayClient",
    "GatewayError",
    "GatewayErrorType",
    "PushChannel",
]
