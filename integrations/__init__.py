"""External integrations for checkout processing."""
from .gateway import (
    ChargeOutcome,
    Declined,
    GatewayError,
    GatewayStatus,
    Indeterminate,
    PaymentGateway,
    Succeeded,
)
from .stripe_client import StripeGateway

__all__ = [
    "ChargeOutcome",
    "Declined",
    "GatewayError",
    "GatewayStatus",
    "Indeterminate",
    "PaymentGateway",
    "StripeGateway",
    "Succeeded",
]
