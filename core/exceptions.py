"""Error taxonomy for the checkout core."""
from typing import Any, Optional


class CheckoutError(Exception):
    """Base exception for checkout processing errors."""

    pass


class InvalidRequest(CheckoutError):
    """Raised when checkout input validation fails. Nothing has been written."""

    pass


class NotFound(CheckoutError):
    """Raised when an order does not exist."""

    def __init__(self, message: str, order_id: Optional[Any] = None):
        super().__init__(message)
        self.order_id = order_id


class ConflictError(CheckoutError):
    """
    Raised when a concurrent mutation is detected.

    The order's current status did not match the expected one, so the
    compare-and-swap did not apply. Retryable by the client.
    """

    def __init__(
        self,
        message: str,
        order_id: Optional[Any] = None,
        current_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.order_id = order_id
        self.current_status = current_status


class StateTransitionError(CheckoutError):
    """Raised when a transition is not an edge of the order state machine."""

    def __init__(self, message: str, current_state: Any, target_state: Any, **context: Any):
        super().__init__(message)
        self.current_state = current_state
        self.target_state = target_state
        self.context = context


class DuplicateIdempotencyKey(CheckoutError):
    """Raised when another request already created an order for this key."""

    def __init__(self, idempotency_key: str):
        super().__init__(f"Idempotency key already in use: {idempotency_key}")
        self.idempotency_key = idempotency_key


class PersistenceError(CheckoutError):
    """Raised when the order store is unavailable."""

    pass

