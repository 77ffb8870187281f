"""Database package for checkout systems."""
from .connection import build_session_factory, close_db, get_session_factory, init_db
from .enums import AttemptOutcome, IdempotencyState, OrderStatus
from .models import (
    Base,
    IdempotencyRecord,
    Order,
    OrderEvent,
    OrderItem,
    OutboxEvent,
    PaymentAttempt,
    ReconciliationRun,
)

__all__ = [
    "AttemptOutcome",
    "Base",
    "IdempotencyRecord",
    "IdempotencyState",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderStatus",
    "OutboxEvent",
    "PaymentAttempt",
    "ReconciliationRun",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
