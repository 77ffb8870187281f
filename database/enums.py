"""Status enums shared by the persistence layer and the checkout core."""
from enum import Enum


class OrderStatus(str, Enum):
    """
    Order lifecycle status.

    Valid transitions are defined in core.state_machine:
    - PENDING -> AWAITING_PAYMENT, CANCELLED
    - AWAITING_PAYMENT -> PAID, PAYMENT_FAILED, CANCELLED
    - PAYMENT_FAILED -> AWAITING_PAYMENT (retry with the same idempotency key)
    - PAID, CANCELLED -> (terminal)
    """

    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class AttemptOutcome(str, Enum):
    """Outcome of a single payment attempt against the gateway."""

    PENDING = "pending"  # recorded, gateway call in flight
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    INDETERMINATE = "indeterminate"


class IdempotencyState(str, Enum):
    """Lifecycle of an idempotency record."""

    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
