"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.order_store import LineItem

# Per-line bounds; with the cart size limit, totals fit a 64-bit cents column.
MAX_QUANTITY = 10_000
MAX_UNIT_PRICE = Decimal("999999.99")
MAX_CART_LINES = 500


class CheckoutItem(BaseModel):
    """A cart line as sent by the client."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(
        ..., alias="productId", min_length=1, max_length=255, description="Product identifier"
    )
    quantity: int = Field(
        ..., gt=0, le=MAX_QUANTITY, description="Quantity (positive integer)"
    )
    price: Decimal = Field(
        ...,
        ge=0,
        le=MAX_UNIT_PRICE,
        decimal_places=2,
        description="Unit price in major currency units",
    )

    def to_line_item(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price_cents=int(self.price * 100),
        )


class CheckoutRequest(BaseModel):
    """Request schema for checking out a cart."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "items": [
                        {"productId": "sku-123", "quantity": 2, "price": "19.99"},
                        {"productId": "sku-456", "quantity": 1, "price": "5.00"},
                    ],
                    "idempotencyKey": "cart-7f3a9c",
                }
            ]
        },
    )

    items: List[CheckoutItem] = Field(
        ..., min_length=1, max_length=MAX_CART_LINES, description="Cart line items"
    )
    idempotency_key: Optional[str] = Field(
        default=None,
        alias="idempotencyKey",
        min_length=1,
        max_length=255,
        description="Client idempotency key; derived from the cart when omitted",
    )


class CheckoutResponse(BaseModel):
    """Response schema for checkout, cancel and single-order reconcile."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"orderId": "123e4567-e89b-12d3-a456-426614174000", "status": "paid"}
            ]
        },
    )

    order_id: str = Field(..., alias="orderId", description="Order ID")
    status: str = Field(..., description="Order status")


class OrderItemResponse(BaseModel):
    """Order line item."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    quantity: int
    unit_price_cents: int = Field(..., alias="unitPriceCents")


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId", description="Order ID")
    user_id: str = Field(..., alias="userId", description="Owning user")
    status: str = Field(..., description="Order status")
    total_cents: int = Field(..., alias="totalCents", description="Order total in cents")
    currency: str = Field(..., description="Currency code")
    items: List[OrderItemResponse] = Field(..., description="Line items")
    created_at: str = Field(..., alias="createdAt", description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., alias="updatedAt", description="Last update timestamp (ISO 8601)")


class CancelRequest(BaseModel):
    """Optional body for cancelling an order."""

    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation sweep."""

    run_id: int = Field(..., description="Reconciliation run ID")
    examined: int = Field(..., description="Orders examined")
    resolved_paid: int = Field(..., description="Orders settled as paid")
    resolved_failed: int = Field(..., description="Orders settled as payment_failed")
    cancelled: int = Field(..., description="Orders cancelled")
    unresolved: int = Field(..., description="Orders still awaiting payment")
    errors: int = Field(..., description="Orders that failed to reconcile")
    purged_idempotency_records: int = Field(..., description="Expired idempotency records deleted")
    unresolved_order_ids: List[str] = Field(default_factory=list)


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
