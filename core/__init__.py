"""Core checkout processing logic."""
from .checkout import CheckoutOrchestrator, CheckoutResult
from .exceptions import (
    CheckoutError,
    ConflictError,
    DuplicateIdempotencyKey,
    InvalidRequest,
    NotFound,
    PersistenceError,
    StateTransitionError,
)
from .idempotency import IdempotencyEntry, IdempotencyManager
from .order_store import LineItem, OrderStore
from .outbox import OutboxPublisher
from .reconciliation import ReconciliationEngine, ReconciliationError

__all__ = [
    "CheckoutError",
    "CheckoutOrchestrator",
    "CheckoutResult",
    "ConflictError",
    "DuplicateIdempotencyKey",
    "IdempotencyEntry",
    "IdempotencyManager",
    "InvalidRequest",
    "LineItem",
    "NotFound",
    "OrderStore",
    "OutboxPublisher",
    "PersistenceError",
    "ReconciliationEngine",
    "ReconciliationError",
    "StateTransitionError",
]
