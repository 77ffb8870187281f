"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutItem,
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    ReconciliationResponse,
)

__all__ = [
    "app",
    "CheckoutItem",
    "CheckoutRequest",
    "CheckoutResponse",
    "OrderResponse",
    "ReconciliationResponse",
]
