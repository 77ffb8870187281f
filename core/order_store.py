"""
Order store: durable orders, line items and payment attempts.

The store is the only code that writes the order status column. Every status
change is a compare-and-swap on the current value, so two workers racing on
the same order cannot both advance it.
"""
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.exceptions import (
    ConflictError,
    DuplicateIdempotencyKey,
    InvalidRequest,
    NotFound,
    PersistenceError,
)
from core.state_machine import SETTLED_STATUSES, validate_transition
from database.connection import get_session_factory
from database.enums import AttemptOutcome, IdempotencyState, OrderStatus
from database.models import (
    IdempotencyRecord,
    Order,
    OrderEvent,
    OrderItem,
    OutboxEvent,
    PaymentAttempt,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Attempts that may still turn into a charge on the gateway side.
IN_FLIGHT_OUTCOMES = (
    AttemptOutcome.PENDING.value,
    AttemptOutcome.INDETERMINATE.value,
    AttemptOutcome.SUCCEEDED.value,
)


@dataclass(frozen=True)
class LineItem:
    """A requested line item with the unit price captured at checkout."""

    product_id: str
    quantity: int
    unit_price_cents: int

    @property
    def total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


def validate_items(items: Sequence[LineItem]) -> List[LineItem]:
    """
    Validate checkout line items.

    Args:
        items: Requested line items

    Returns:
        List[LineItem]: The items as a list

    Raises:
        InvalidRequest: If the list is empty or any item is malformed
    """
    if not items:
        raise InvalidRequest("Order must contain at least one item")

    validated = list(items)
    for index, item in enumerate(validated):
        if not isinstance(item, LineItem):
            raise InvalidRequest(f"Item {index} is not a line item")
        if not item.product_id or not str(item.product_id).strip():
            raise InvalidRequest(f"Item {index}: product id is required")
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
            raise InvalidRequest(f"Item {index}: quantity must be an integer")
        if item.quantity <= 0:
            raise InvalidRequest(f"Item {index}: quantity must be positive")
        if isinstance(item.unit_price_cents, bool) or not isinstance(item.unit_price_cents, int):
            raise InvalidRequest(f"Item {index}: price must be integer cents")
        if item.unit_price_cents < 0:
            raise InvalidRequest(f"Item {index}: price must not be negative")
    return validated


def calculate_total(items: Sequence[LineItem]) -> int:
    return sum(item.total_cents for item in items)


def gateway_key(order_id: uuid.UUID, attempt_number: int) -> str:
    """
    Gateway idempotency key for one attempt of one order.

    Client keys can be reused once their record expires, so the gateway key
    is built from the order instead.
    """
    return f"{order_id}:{attempt_number}"


@asynccontextmanager
async def transaction_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Run a block in one database transaction.

    Integrity violations propagate unchanged for the caller to interpret.
    Any other SQLAlchemy failure is raised as PersistenceError.
    """
    try:
        async with session_factory() as db:
            async with db.begin():
                yield db
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        logger.error("order_store_unavailable", error=str(e), error_type=type(e).__name__)
        raise PersistenceError(f"Order store unavailable: {str(e)}") from e


class OrderStore:
    """
    Persistence for orders and their payment attempts.

    Each public method runs in its own transaction and returns detached
    ORM instances (sessions are created with expire_on_commit=False).
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Initialize order store.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
        """
        self.session_factory = session_factory or get_session_factory()

    @staticmethod
    def _order_payload(order: Order, reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "order_id": str(order.id),
            "user_id": order.user_id,
            "status": order.status,
            "total_cents": order.total_cents,
            "currency": order.currency,
            "version": order.version,
            "reason": reason,
        }

    @staticmethod
    async def _load(db: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_order(
        self,
        user_id: str,
        items: Sequence[LineItem],
        idempotency_key: str,
        expires_at: datetime,
        currency: str = "USD",
        correlation_id: Optional[uuid.UUID] = None,
    ) -> Order:
        """
        Create an order with its items and idempotency record, atomically.

        Args:
            user_id: Owning user
            items: Line items, prices already captured
            idempotency_key: Key the order is created under
            expires_at: When the idempotency record stops being honoured
            currency: Order currency
            correlation_id: Optional correlation ID for the audit trail

        Returns:
            Order: The new order in 'pending'

        Raises:
            InvalidRequest: If user or items are invalid (nothing is written)
            DuplicateIdempotencyKey: If another request already holds the key
        """
        if not user_id:
            raise InvalidRequest("User ID is required")
        line_items = validate_items(items)

        now = utc_now()
        order = Order(
            id=uuid.uuid4(),
            user_id=str(user_id),
            idempotency_key=idempotency_key,
            status=OrderStatus.PENDING.value,
            currency=currency,
            total_cents=calculate_total(line_items),
            version=1,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    position=position,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price_cents=item.unit_price_cents,
                )
                for position, item in enumerate(line_items)
            ],
        )

        try:
            async with transaction_scope(self.session_factory) as db:
                db.add(order)
                db.add(
                    IdempotencyRecord(
                        key=idempotency_key,
                        user_id=str(user_id),
                        order_id=order.id,
                        state=IdempotencyState.IN_FLIGHT.value,
                        created_at=now,
                        updated_at=now,
                        expires_at=expires_at,
                    )
                )
                db.add(
                    OrderEvent(
                        order_id=order.id,
                        event_type="order.created",
                        event_data={
                            "status": order.status,
                            "total_cents": order.total_cents,
                            "item_count": len(line_items),
                        },
                        correlation_id=correlation_id,
                        created_at=now,
                    )
                )
                await db.flush()
        except IntegrityError as e:
            logger.info(
                "order_create_duplicate_key",
                idempotency_key=idempotency_key,
                user_id=str(user_id),
            )
            raise DuplicateIdempotencyKey(idempotency_key) from e

        logger.info(
            "order_created",
            order_id=str(order.id),
            user_id=str(user_id),
            total_cents=order.total_cents,
            item_count=len(line_items),
        )
        return order

    @staticmethod
    async def _lock_order(db: AsyncSession, order_id: uuid.UUID, status: OrderStatus) -> bool:
        """
        Lock the order row until commit, if it is in the given status.

        SQLite ignores FOR UPDATE, so the lock is taken with a no-op write.
        """
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == status.value)
            .values(version=Order.version)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _has_attempt_in_flight(db: AsyncSession, order_id: uuid.UUID) -> bool:
        stmt = select(
            exists().where(
                PaymentAttempt.order_id == order_id,
                PaymentAttempt.outcome.in_(IN_FLIGHT_OUTCOMES),
            )
        )
        return bool(await db.scalar(stmt))

    async def transition(
        self,
        order_id: uuid.UUID,
        from_status: OrderStatus,
        to_status: OrderStatus,
        reason: Optional[str] = None,
        correlation_id: Optional[uuid.UUID] = None,
        require_nothing_in_flight: bool = False,
    ) -> Order:
        """
        Move an order from one status to another with a compare-and-swap.

        Args:
            order_id: Order ID
            from_status: Status the order must currently be in
            to_status: Target status
            reason: Optional reason, stored in the audit trail and outbox
            correlation_id: Optional correlation ID for the audit trail
            require_nothing_in_flight: Also require that no attempt is pending,
                indeterminate or succeeded (used by cancellation)

        Returns:
            Order: The order after the transition

        Raises:
            StateTransitionError: If the edge is not part of the state machine
            ConflictError: If the current status is not from_status
            NotFound: If the order does not exist
        """
        validate_transition(from_status, to_status)
        now = utc_now()

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == from_status.value)
            .values(status=to_status.value, updated_at=now, version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )

        async with transaction_scope(self.session_factory) as db:
            in_flight = False
            if require_nothing_in_flight and await self._lock_order(db, order_id, from_status):
                # Checked after the lock, in its own statement, so an attempt
                # committed by the previous lock holder is visible.
                in_flight = await self._has_attempt_in_flight(db, order_id)
            result = None if in_flight else await db.execute(stmt)
            if result is None or result.rowcount != 1:
                current = await db.scalar(select(Order.status).where(Order.id == order_id))
                if current is None:
                    raise NotFound(f"Order {order_id} not found", order_id=order_id)
                logger.warning(
                    "order_transition_conflict",
                    order_id=str(order_id),
                    expected_status=from_status.value,
                    current_status=current,
                    target_status=to_status.value,
                )
                if current == from_status.value:
                    message = f"Order {order_id} has a payment in flight"
                else:
                    message = (
                        f"Order {order_id} is {current}, expected {from_status.value}"
                    )
                raise ConflictError(message, order_id=order_id, current_status=current)

            order = await self._load(db, order_id)
            db.add(
                OrderEvent(
                    order_id=order_id,
                    event_type=f"order.{to_status.value}",
                    event_data={
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                        "reason": reason,
                        "version": order.version,
                    },
                    correlation_id=correlation_id,
                    created_at=now,
                )
            )
            if to_status in SETTLED_STATUSES:
                db.add(
                    OutboxEvent(
                        aggregate_id=order_id,
                        aggregate_type="order",
                        event_type=f"order.{to_status.value}",
                        payload=self._order_payload(order, reason),
                        published=False,
                        created_at=now,
                    )
                )

        logger.info(
            "order_transitioned",
            order_id=str(order_id),
            from_status=from_status.value,
            to_status=to_status.value,
            version=order.version,
        )
        return order

    async def get(self, order_id: uuid.UUID) -> Order:
        """
        Get an order with its items.

        Raises:
            NotFound: If the order does not exist
        """
        async with transaction_scope(self.session_factory) as db:
            order = await self._load(db, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    async def list_stale(
        self, status: OrderStatus, older_than: datetime, limit: int = 100
    ) -> List[Order]:
        """Orders in a status whose last update is older than the cutoff, oldest first."""
        stmt = (
            select(Order)
            .where(Order.status == status.value, Order.updated_at < older_than)
            .order_by(Order.updated_at)
            .limit(limit)
        )
        async with transaction_scope(self.session_factory) as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def start_attempt(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> PaymentAttempt:
        """
        Record a pending payment attempt before the gateway is called.

        This is a claim: the order row is locked while the attempt is added,
        a new attempt is refused while an earlier one may still charge, and
        the (order_id, attempt_number) unique constraint backs both up. Of two
        workers trying to dispatch the same order, one gets a ConflictError.

        Args:
            order_id: Order ID (must be awaiting_payment)
            amount_cents: Amount to charge
            correlation_id: Optional correlation ID for the audit trail

        Returns:
            PaymentAttempt: The committed pending attempt

        Raises:
            ConflictError: If the order is not awaiting payment or an attempt
                is already in flight or succeeded
            NotFound: If the order does not exist
        """
        now = utc_now()
        try:
            async with transaction_scope(self.session_factory) as db:
                status = OrderStatus.AWAITING_PAYMENT.value
                if not await self._lock_order(db, order_id, OrderStatus.AWAITING_PAYMENT):
                    status = await db.scalar(select(Order.status).where(Order.id == order_id))
                    if status is None:
                        raise NotFound(f"Order {order_id} not found", order_id=order_id)
                    raise ConflictError(
                        f"Order {order_id} is {status}, not awaiting payment",
                        order_id=order_id,
                        current_status=status,
                    )

                result = await db.execute(
                    select(PaymentAttempt.outcome).where(PaymentAttempt.order_id == order_id)
                )
                outcomes = list(result.scalars().all())
                if any(outcome in IN_FLIGHT_OUTCOMES for outcome in outcomes):
                    raise ConflictError(
                        f"Order {order_id} already has a payment in flight",
                        order_id=order_id,
                        current_status=status,
                    )

                attempt_number = len(outcomes) + 1
                attempt = PaymentAttempt(
                    id=uuid.uuid4(),
                    order_id=order_id,
                    attempt_number=attempt_number,
                    gateway_idempotency_key=gateway_key(order_id, attempt_number),
                    outcome=AttemptOutcome.PENDING.value,
                    amount_cents=amount_cents,
                    created_at=now,
                    updated_at=now,
                )
                db.add(attempt)
                db.add(
                    OrderEvent(
                        order_id=order_id,
                        event_type="payment.attempt_started",
                        event_data={
                            "attempt_number": attempt_number,
                            "amount_cents": amount_cents,
                        },
                        correlation_id=correlation_id,
                        created_at=now,
                    )
                )
                await db.flush()
        except IntegrityError as e:
            logger.warning("payment_attempt_claim_lost", order_id=str(order_id))
            raise ConflictError(
                f"Another worker is dispatching payment for order {order_id}",
                order_id=order_id,
                current_status=OrderStatus.AWAITING_PAYMENT.value,
            ) from e

        logger.info(
            "payment_attempt_started",
            order_id=str(order_id),
            attempt_number=attempt.attempt_number,
            amount_cents=amount_cents,
        )
        return attempt

    async def record_attempt_outcome(
        self,
        attempt_id: uuid.UUID,
        outcome: AttemptOutcome,
        reference: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> PaymentAttempt:
        """Store what the gateway said about an attempt. A known reference is never cleared."""
        async with transaction_scope(self.session_factory) as db:
            attempt = await db.get(PaymentAttempt, attempt_id, populate_existing=True)
            if attempt is None:
                raise NotFound(f"Payment attempt {attempt_id} not found")
            attempt.outcome = outcome.value
            if reference:
                attempt.reference = reference
            attempt.detail = detail
            attempt.updated_at = utc_now()
            db.add(
                OrderEvent(
                    order_id=attempt.order_id,
                    event_type=f"payment.{outcome.value}",
                    event_data={
                        "attempt_number": attempt.attempt_number,
                        "reference": attempt.reference,
                        "detail": detail,
                    },
                    created_at=attempt.updated_at,
                )
            )
        return attempt

    async def latest_attempt(self, order_id: uuid.UUID) -> Optional[PaymentAttempt]:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id)
            .order_by(PaymentAttempt.attempt_number.desc())
            .limit(1)
        )
        async with transaction_scope(self.session_factory) as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def count_attempts(self, order_id: uuid.UUID) -> int:
        stmt = select(func.count(PaymentAttempt.id)).where(PaymentAttempt.order_id == order_id)
        async with transaction_scope(self.session_factory) as db:
            return int(await db.scalar(stmt) or 0)
