"""Order state machine: the legal status edges and their validation.

Every status change in the service goes through OrderStore.transition, which
calls validate_transition before attempting its compare-and-swap.
"""
from typing import Dict, FrozenSet

from core.exceptions import StateTransitionError
from database.enums import OrderStatus

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.AWAITING_PAYMENT: frozenset(
        {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
    ),
    # Retry with the same idempotency key re-enters at awaiting_payment.
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.AWAITING_PAYMENT}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses a checkout can settle in. PAYMENT_FAILED settles an attempt but
# the order can still be retried.
SETTLED_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED}
)
TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PAID, OrderStatus.CANCELLED}
)


def get_allowed_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return ORDER_TRANSITIONS.get(current, frozenset())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in get_allowed_transitions(current)


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    """
    Validate a transition against the state machine.

    Args:
        current: Status the caller expects the order to be in
        target: Desired target status

    Raises:
        StateTransitionError: If the edge does not exist
    """
    if not can_transition(current, target):
        allowed = sorted(s.value for s in get_allowed_transitions(current))
        raise StateTransitionError(
            f"Invalid transition from {current.value} to {target.value}",
            current_state=current,
            target_state=target,
            allowed_transitions=allowed,
        )


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_settled(status: OrderStatus) -> bool:
    return status in SETTLED_STATUSES
