"""SQLAlchemy database models for the checkout system."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from database.enums import AttemptOutcome, IdempotencyState, OrderStatus

# SQLite only autoincrements an INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_clause(enum_cls: Any) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    The status column is only ever changed through OrderStore.transition,
    which guards it with a compare-and-swap on the current value.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="non_negative_total"),
        CheckConstraint(f"status IN ({_in_clause(OrderStatus)})", name="valid_order_status"),
        Index("idx_orders_status_updated", "status", "updated_at"),
    )

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total_cents}, status={self.status})>"
        )


class OrderItem(Base):
    """
    Order line items.

    The unit price is captured when the order is created and never updated.
    """

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderItem(order_id={self.order_id}, product_id={self.product_id}, "
            f"quantity={self.quantity})>"
        )


class IdempotencyRecord(Base):
    """
    Idempotency records table.

    Inserted in the same transaction as the order it points at. The primary
    key doubles as the uniqueness guard for concurrent first requests.
    """

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            f"state IN ({_in_clause(IdempotencyState)})", name="valid_idempotency_state"
        ),
        Index("idx_idempotency_expires_at", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Only completed records expire. An in-flight record still guards its order."""
        if self.state != IdempotencyState.COMPLETED.value:
            return False
        return as_utc(self.expires_at) <= (now or utc_now())

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord(key={self.key}, order_id={self.order_id}, "
            f"state={self.state}, outcome={self.outcome})>"
        )


class PaymentAttempt(Base):
    """
    Payment attempts table.

    One row per charge dispatched to the gateway, committed as 'pending'
    before the call so a crash mid-call leaves something to reconcile.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    gateway_idempotency_key: Mapped[str] = mapped_column(
        String(300), nullable=False, unique=True
    )
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("order_id", "attempt_number", name="uq_attempt_number"),
        CheckConstraint(
            f"outcome IN ({_in_clause(AttemptOutcome)})", name="valid_attempt_outcome"
        ),
    )

    @property
    def attempt_outcome(self) -> AttemptOutcome:
        return AttemptOutcome(self.outcome)

    def __repr__(self) -> str:
        return (
            f"<PaymentAttempt(order_id={self.order_id}, n={self.attempt_number}, "
            f"outcome={self.outcome}, reference={self.reference})>"
        )


class OrderEvent(Base):
    """
    Order events audit trail table.

    One row per creation and per status transition. Immutable once written.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    __table_args__ = (Index("idx_order_events_type", "event_type"),)

    def __repr__(self) -> str:
        return f"<OrderEvent(id={self.id}, order_id={self.order_id}, type={self.event_type})>"


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the status change that
    produced them, then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class ReconciliationRun(Base):
    """
    Reconciliation sweep tracking table.

    One row per sweep over orders stuck in awaiting_payment.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    examined: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unresolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purged_idempotency_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun(id={self.id}, status={self.status})>"
