"""
Checkout orchestration.

A checkout creates an order under an idempotency key, moves it to
awaiting_payment, records a pending payment attempt, charges the gateway and
settles the order from the gateway's answer. Every step is committed before
the next one starts, so a crash at any point leaves a record that a later
request with the same key, or the reconciliation sweep, can pick up.

Exactly one worker dispatches a charge for a given attempt: the
pending -> awaiting_payment compare-and-swap and the unique attempt number
decide who.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Dict, Optional, Sequence, Set

import structlog

from config import Settings, get_settings
from core.exceptions import ConflictError, DuplicateIdempotencyKey, InvalidRequest
from core.idempotency import IdempotencyEntry, IdempotencyManager
from core.order_store import LineItem, OrderStore, validate_items
from core.state_machine import TERMINAL_STATUSES, is_settled
from database.enums import AttemptOutcome, OrderStatus
from database.models import Order, PaymentAttempt, as_utc, utc_now
from integrations.gateway import (
    ChargeOutcome,
    Declined,
    GatewayError,
    GatewayStatus,
    Indeterminate,
    PaymentGateway,
    Succeeded,
    outcome_label,
)
from integrations.stripe_client import StripeGateway
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 255
IN_PROGRESS_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT})

# A pending attempt older than this many gateway timeouts has lost its dispatcher.
STALE_ATTEMPT_FACTOR = 2


@dataclass
class CheckoutResult:
    """Outcome of a checkout, cancel or reconcile call."""

    order_id: uuid.UUID
    status: OrderStatus
    total_cents: int
    replayed: bool = False
    detail: Optional[str] = None

    @classmethod
    def from_order(
        cls, order: Order, replayed: bool = False, detail: Optional[str] = None
    ) -> "CheckoutResult":
        return cls(
            order_id=order.id,
            status=order.order_status,
            total_cents=order.total_cents,
            replayed=replayed,
            detail=detail,
        )

    @classmethod
    def from_entry(cls, entry: IdempotencyEntry) -> "CheckoutResult":
        response = entry.response or {}
        return cls(
            order_id=entry.order_id,
            status=entry.outcome or OrderStatus(response["status"]),
            total_cents=int(response.get("total_cents", 0)),
            replayed=True,
            detail=response.get("detail"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "status": self.status.value,
            "total_cents": self.total_cents,
            "detail": self.detail,
        }

    @property
    def is_settled(self) -> bool:
        return is_settled(self.status)


class CheckoutOrchestrator:
    """
    Runs the checkout saga against the order store and payment gateway.

    Flow:
    1. Validate input and resolve the idempotency key
    2. Create order + idempotency record atomically (or resume the existing one)
    3. Compare-and-swap pending -> awaiting_payment
    4. Commit a pending payment attempt
    5. Charge the gateway with the attempt's key, bounded by a timeout
    6. Settle paid / payment_failed, or leave awaiting_payment when indeterminate
    7. Record the settled outcome on the idempotency record
    """

    def __init__(
        self,
        order_store: Optional[OrderStore] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize checkout orchestrator.

        Args:
            order_store: Optional order store
            idempotency_manager: Optional idempotency manager
            gateway: Optional payment gateway (Stripe if not provided)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.order_store = order_store or OrderStore()
        self.idempotency_manager = idempotency_manager or IdempotencyManager(
            session_factory=self.order_store.session_factory,
            settings=self.settings,
        )
        self.gateway = gateway or StripeGateway(settings=self.settings)
        self._dispatches: Set["asyncio.Task[CheckoutResult]"] = set()

    async def checkout(
        self,
        user_id: str,
        items: Sequence[LineItem],
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Check out a cart.

        Args:
            user_id: Authenticated user
            items: Line items with captured unit prices
            idempotency_key: Optional client key; derived from user and items if absent

        Returns:
            CheckoutResult: paid, payment_failed, or awaiting_payment when the
                gateway outcome is not yet known

        Raises:
            InvalidRequest: If input is invalid (nothing is written)
            ConflictError: If the key belongs to another user or is being recycled
            PersistenceError: If the order store is unavailable
        """
        start_time = time.time()
        if not user_id or not str(user_id).strip():
            raise InvalidRequest("User ID is required")
        line_items = validate_items(items)
        if idempotency_key is not None and not idempotency_key.strip():
            raise InvalidRequest("Idempotency key must not be blank")

        key = idempotency_key or IdempotencyManager.generate_key(user_id, line_items)
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidRequest(
                f"Idempotency key longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )

        correlation_id = uuid.uuid4()
        with structlog.contextvars.bound_contextvars(
            correlation_id=str(correlation_id), idempotency_key=key
        ):
            logger.info(
                "checkout_started",
                user_id=str(user_id),
                item_count=len(line_items),
                key_source="client" if idempotency_key else "derived",
            )

            result = await self._checkout(str(user_id), line_items, key, correlation_id)

            duration = time.time() - start_time
            metrics.record_checkout(result.status.value, self.settings.currency, result.total_cents)
            metrics.record_checkout_duration(duration)
            logger.info(
                "checkout_completed",
                order_id=str(result.order_id),
                status=result.status.value,
                replayed=result.replayed,
                duration_seconds=duration,
            )
            return result

    async def _checkout(
        self,
        user_id: str,
        items: Sequence[LineItem],
        key: str,
        correlation_id: uuid.UUID,
    ) -> CheckoutResult:
        entry = await self.idempotency_manager.check(key)
        if entry is None:
            try:
                order = await self.order_store.create_order(
                    user_id,
                    items,
                    key,
                    expires_at=self.idempotency_manager.expires_at(),
                    currency=self.settings.currency,
                    correlation_id=correlation_id,
                )
            except DuplicateIdempotencyKey:
                # Lost the race for the key; follow the winner's order
                entry = await self.idempotency_manager.check(key)
                if entry is None:
                    raise ConflictError("Idempotency key is being recycled, retry the request")
            else:
                return await self._begin_payment(order, correlation_id)

        return await self._resume(entry, user_id, correlation_id)

    async def _resume(
        self, entry: IdempotencyEntry, user_id: str, correlation_id: uuid.UUID
    ) -> CheckoutResult:
        """Continue from wherever an earlier request with the same key got to."""
        if entry.user_id != user_id:
            raise ConflictError(
                "Idempotency key belongs to another user", order_id=entry.order_id
            )

        if entry.is_completed and entry.outcome in TERMINAL_STATUSES:
            metrics.record_idempotent_replay(entry.source)
            logger.info(
                "checkout_replayed",
                order_id=str(entry.order_id),
                status=entry.outcome.value,
                source=entry.source,
            )
            return CheckoutResult.from_entry(entry)

        order = await self.order_store.get(entry.order_id)
        status = order.order_status
        if status == OrderStatus.PENDING:
            return await self._begin_payment(order, correlation_id)
        if status == OrderStatus.PAYMENT_FAILED:
            return await self._retry_payment(order, correlation_id)
        if status == OrderStatus.AWAITING_PAYMENT:
            return await self.reconcile_order(order.id, correlation_id=correlation_id)

        # Settled, but the earlier request stopped before recording it on the key
        result = CheckoutResult.from_order(order, replayed=True)
        await self.idempotency_manager.finalize(order.idempotency_key, status, result.to_dict())
        metrics.record_idempotent_replay("database")
        return result

    async def _begin_payment(self, order: Order, correlation_id: uuid.UUID) -> CheckoutResult:
        try:
            order = await self.order_store.transition(
                order.id,
                OrderStatus.PENDING,
                OrderStatus.AWAITING_PAYMENT,
                correlation_id=correlation_id,
            )
        except ConflictError:
            metrics.record_transition_conflict(OrderStatus.AWAITING_PAYMENT.value)
            return await self._await_outcome(order.id)
        return await self._dispatch(order, correlation_id)

    async def _retry_payment(self, order: Order, correlation_id: uuid.UUID) -> CheckoutResult:
        try:
            order = await self.order_store.transition(
                order.id,
                OrderStatus.PAYMENT_FAILED,
                OrderStatus.AWAITING_PAYMENT,
                reason="payment retry",
                correlation_id=correlation_id,
            )
        except ConflictError:
            metrics.record_transition_conflict(OrderStatus.AWAITING_PAYMENT.value)
            return await self._await_outcome(order.id)

        await self.idempotency_manager.reopen(order.idempotency_key)
        logger.info("payment_retry_started", order_id=str(order.id))
        return await self._dispatch(order, correlation_id)

    async def _dispatch(self, order: Order, correlation_id: uuid.UUID) -> CheckoutResult:
        """Claim the next attempt number and charge it."""
        try:
            attempt = await self.order_store.start_attempt(
                order.id,
                order.total_cents,
                correlation_id=correlation_id,
            )
        except ConflictError:
            return await self._await_outcome(order.id)
        return await self._shielded(self._charge_and_settle(order, attempt, correlation_id))

    async def _shielded(self, work: Awaitable[CheckoutResult]) -> CheckoutResult:
        """
        Run work in its own task.

        If the caller is cancelled (client disconnect), the charge and the
        status update still complete.
        """
        task = asyncio.ensure_future(work)
        self._dispatches.add(task)
        task.add_done_callback(self._on_dispatch_done)
        return await asyncio.shield(task)

    def _on_dispatch_done(self, task: "asyncio.Task[CheckoutResult]") -> None:
        self._dispatches.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "payment_dispatch_failed",
                error=str(task.exception()),
                error_type=type(task.exception()).__name__,
            )

    async def wait_for_dispatches(self) -> None:
        """Wait for in-flight charges to settle (used on shutdown)."""
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def _charge_and_settle(
        self, order: Order, attempt: PaymentAttempt, correlation_id: uuid.UUID
    ) -> CheckoutResult:
        outcome = await self._charge(order, attempt)
        return await self._apply_outcome(order, attempt, outcome, correlation_id)

    async def _charge(self, order: Order, attempt: PaymentAttempt) -> ChargeOutcome:
        """Call the gateway. Never raises for gateway trouble: that is Indeterminate."""
        timeout = self.settings.gateway_timeout_seconds
        start_time = time.time()
        try:
            outcome = await asyncio.wait_for(
                self.gateway.charge(
                    order_id=order.id,
                    amount_cents=attempt.amount_cents,
                    currency=order.currency,
                    idempotency_key=attempt.gateway_idempotency_key,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "gateway_charge_timeout",
                order_id=str(order.id),
                attempt_number=attempt.attempt_number,
                timeout_seconds=timeout,
            )
            outcome = Indeterminate(reason=f"gateway did not answer within {timeout}s")
        except GatewayError as e:
            outcome = Indeterminate(reason=str(e))
        except Exception as e:
            logger.exception(
                "gateway_charge_unexpected_error",
                order_id=str(order.id),
                attempt_number=attempt.attempt_number,
            )
            outcome = Indeterminate(reason=f"unexpected gateway error: {e}")

        logger.info(
            "gateway_charge_completed",
            order_id=str(order.id),
            attempt_number=attempt.attempt_number,
            outcome=outcome_label(outcome),
            reference=outcome.reference,
            duration_seconds=time.time() - start_time,
        )
        return outcome

    async def _apply_outcome(
        self,
        order: Order,
        attempt: PaymentAttempt,
        outcome: ChargeOutcome,
        correlation_id: uuid.UUID,
    ) -> CheckoutResult:
        if isinstance(outcome, Succeeded):
            await self.order_store.record_attempt_outcome(
                attempt.id, AttemptOutcome.SUCCEEDED, reference=outcome.reference
            )
            return await self._settle(order.id, OrderStatus.PAID, correlation_id)

        if isinstance(outcome, Declined):
            await self.order_store.record_attempt_outcome(
                attempt.id,
                AttemptOutcome.DECLINED,
                reference=outcome.reference,
                detail=outcome.reason,
            )
            return await self._settle(
                order.id, OrderStatus.PAYMENT_FAILED, correlation_id, reason=outcome.reason
            )

        await self.order_store.record_attempt_outcome(
            attempt.id,
            AttemptOutcome.INDETERMINATE,
            reference=outcome.reference,
            detail=outcome.reason,
        )
        logger.warning(
            "payment_outcome_indeterminate",
            order_id=str(order.id),
            attempt_number=attempt.attempt_number,
            reason=outcome.reason,
        )
        current = await self.order_store.get(order.id)
        return CheckoutResult.from_order(current, detail=outcome.reason)

    async def _settle(
        self,
        order_id: uuid.UUID,
        target: OrderStatus,
        correlation_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> CheckoutResult:
        try:
            order = await self.order_store.transition(
                order_id,
                OrderStatus.AWAITING_PAYMENT,
                target,
                reason=reason,
                correlation_id=correlation_id,
            )
        except ConflictError as e:
            # Another worker settled it first
            metrics.record_transition_conflict(target.value)
            logger.warning(
                "order_settled_concurrently",
                order_id=str(order_id),
                target_status=target.value,
                current_status=e.current_status,
            )
            order = await self.order_store.get(order_id)

        result = CheckoutResult.from_order(order, detail=reason)
        if result.is_settled:
            await self.idempotency_manager.finalize(
                order.idempotency_key, result.status, result.to_dict()
            )
        return result

    async def _await_outcome(self, order_id: uuid.UUID) -> CheckoutResult:
        """Wait, bounded, for another worker's in-flight checkout to settle."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.idempotency_wait_seconds
        while True:
            order = await self.order_store.get(order_id)
            if order.order_status not in IN_PROGRESS_STATUSES:
                metrics.record_idempotent_replay("wait")
                return CheckoutResult.from_order(order, replayed=True)
            if loop.time() >= deadline:
                logger.info(
                    "checkout_still_in_flight",
                    order_id=str(order_id),
                    status=order.status,
                )
                return CheckoutResult.from_order(
                    order, replayed=True, detail="payment in progress"
                )
            await asyncio.sleep(self.settings.idempotency_poll_interval_seconds)

    def _attempt_is_stale(self, attempt: PaymentAttempt) -> bool:
        limit = timedelta(seconds=self.settings.gateway_timeout_seconds * STALE_ATTEMPT_FACTOR)
        return utc_now() - as_utc(attempt.updated_at) > limit

    async def _query_status(self, reference: str) -> GatewayStatus:
        try:
            return await asyncio.wait_for(
                self.gateway.query_status(reference),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except (asyncio.TimeoutError, GatewayError) as e:
            logger.warning("gateway_status_unavailable", reference=reference, error=str(e))
            return GatewayStatus.UNKNOWN

    async def reconcile_order(
        self, order_id: uuid.UUID, correlation_id: Optional[uuid.UUID] = None
    ) -> CheckoutResult:
        """
        Drive an awaiting_payment order towards a settled status.

        - No attempt, or only declined ones: dispatch the next attempt
        - Latest attempt succeeded but the order was not updated: settle paid
        - Pending attempt whose dispatcher may still be running: wait for it
        - Indeterminate (or abandoned pending) with a reference: ask the gateway
        - Indeterminate without a reference: replay the charge with the same key

        Orders in any other status are returned as they are.

        Args:
            order_id: Order ID
            correlation_id: Optional correlation ID for the audit trail

        Returns:
            CheckoutResult: Current outcome; still awaiting_payment if unresolved

        Raises:
            NotFound: If the order does not exist
        """
        correlation_id = correlation_id or uuid.uuid4()
        order = await self.order_store.get(order_id)
        if order.order_status != OrderStatus.AWAITING_PAYMENT:
            return CheckoutResult.from_order(order)

        attempt = await self.order_store.latest_attempt(order_id)
        if attempt is None or attempt.attempt_outcome == AttemptOutcome.DECLINED:
            logger.info("reconcile_dispatching_attempt", order_id=str(order_id))
            return await self._dispatch(order, correlation_id)

        if attempt.attempt_outcome == AttemptOutcome.SUCCEEDED:
            return await self._settle(order.id, OrderStatus.PAID, correlation_id)

        if attempt.attempt_outcome == AttemptOutcome.PENDING and not self._attempt_is_stale(attempt):
            return await self._await_outcome(order.id)

        if attempt.reference:
            status = await self._query_status(attempt.reference)
            logger.info(
                "reconcile_gateway_status",
                order_id=str(order_id),
                reference=attempt.reference,
                gateway_status=status.value,
            )
            if status == GatewayStatus.SUCCEEDED:
                outcome: ChargeOutcome = Succeeded(reference=attempt.reference)
            elif status == GatewayStatus.DECLINED:
                outcome = Declined(reason="declined per gateway status", reference=attempt.reference)
            else:
                return CheckoutResult.from_order(order, detail="gateway status unknown")
            return await self._shielded(
                self._apply_outcome(order, attempt, outcome, correlation_id)
            )

        # Safe to replay: the gateway answers a repeated key with its first result
        logger.info(
            "reconcile_replaying_charge",
            order_id=str(order_id),
            attempt_number=attempt.attempt_number,
        )
        return await self._shielded(self._charge_and_settle(order, attempt, correlation_id))

    async def cancel(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        correlation_id: Optional[uuid.UUID] = None,
    ) -> CheckoutResult:
        """
        Cancel an order that has no payment in flight.

        Raises:
            NotFound: If the order does not exist
            ConflictError: If the order is settled or a charge may be in flight
        """
        order = await self.order_store.get(order_id)
        status = order.order_status
        if status not in IN_PROGRESS_STATUSES:
            raise ConflictError(
                f"Order {order_id} is {status.value} and cannot be cancelled",
                order_id=order_id,
                current_status=status.value,
            )

        order = await self.order_store.transition(
            order_id,
            status,
            OrderStatus.CANCELLED,
            reason=reason or "cancelled",
            correlation_id=correlation_id,
            require_nothing_in_flight=True,
        )
        result = CheckoutResult.from_order(order, detail=reason)
        await self.idempotency_manager.finalize(
            order.idempotency_key, OrderStatus.CANCELLED, result.to_dict()
        )
        logger.info("order_cancelled", order_id=str(order_id), reason=reason)
        return result

    async def get_order(self, order_id: uuid.UUID) -> Order:
        return await self.order_store.get(order_id)
