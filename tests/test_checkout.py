"""
Tests for the checkout orchestrator.
"""
import uuid
from datetime import timedelta
from typing import Any, List

import pytest
from sqlalchemy import func, select, update

from core.checkout import CheckoutOrchestrator
from core.exceptions import ConflictError, InvalidRequest, NotFound
from core.idempotency import IdempotencyManager
from core.order_store import LineItem, gateway_key
from database.enums import AttemptOutcome, IdempotencyState, OrderStatus
from database.models import IdempotencyRecord, Order, PaymentAttempt, utc_now
from integrations.gateway import Declined, GatewayError, GatewayStatus, Indeterminate


class TestCheckoutHappyPath:
    """Test suite for checkouts that settle on the first attempt."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_checkout_is_paid(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.status == OrderStatus.PAID
        assert result.total_cents == 4498
        assert not result.replayed

        order = await orchestrator.get_order(result.order_id)
        assert order.order_status == OrderStatus.PAID
        assert order.user_id == user_id

        assert len(gateway.charge_calls) == 1
        call = gateway.charge_calls[0]
        assert call["amount_cents"] == 4498
        assert call["currency"] == "USD"
        assert call["idempotency_key"] == gateway_key(result.order_id, 1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_checkout_finalizes_idempotency_record(
        self,
        orchestrator: CheckoutOrchestrator,
        idempotency_manager: IdempotencyManager,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        entry = await idempotency_manager.check("key-1")
        assert entry.state == IdempotencyState.COMPLETED
        assert entry.outcome == OrderStatus.PAID
        assert entry.response["order_id"] == str(result.order_id)
        assert entry.response["total_cents"] == 4498

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_key_is_derived_from_cart(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        first = await orchestrator.checkout(user_id, sample_items)
        second = await orchestrator.checkout(user_id, list(reversed(sample_items)))

        assert first.order_id == second.order_id
        assert second.replayed
        assert len(gateway.charge_calls) == 1

        order = await orchestrator.get_order(first.order_id)
        assert order.idempotency_key == IdempotencyManager.generate_key(user_id, sample_items)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_distinct_keys_create_distinct_orders(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        first = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        second = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-2")

        assert first.order_id != second.order_id
        assert first.status == second.status == OrderStatus.PAID
        assert len(gateway.charge_calls) == 2


class TestCheckoutValidation:
    """Test suite for input validation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "items",
        [
            [],
            [LineItem(product_id="sku-1", quantity=0, unit_price_cents=100)],
            [LineItem(product_id="sku-1", quantity=1, unit_price_cents=-1)],
        ],
    )
    async def test_invalid_items_write_nothing_and_charge_nothing(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        session_factory: Any,
        items: List[LineItem],
        user_id: str,
    ) -> None:
        with pytest.raises(InvalidRequest):
            await orchestrator.checkout(user_id, items, idempotency_key="key-1")

        async with session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(Order)) == 0
        assert gateway.charge_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_user_is_rejected(
        self, orchestrator: CheckoutOrchestrator, sample_items: List[LineItem]
    ) -> None:
        with pytest.raises(InvalidRequest):
            await orchestrator.checkout("", sample_items)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["   ", "k" * 256])
    async def test_malformed_key_is_rejected(
        self,
        orchestrator: CheckoutOrchestrator,
        sample_items: List[LineItem],
        user_id: str,
        key: str,
    ) -> None:
        with pytest.raises(InvalidRequest):
            await orchestrator.checkout(user_id, sample_items, idempotency_key=key)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_key_owned_by_another_user_conflicts(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
    ) -> None:
        await orchestrator.checkout("user-a", sample_items, idempotency_key="shared")

        with pytest.raises(ConflictError):
            await orchestrator.checkout("user-b", sample_items, idempotency_key="shared")
        assert len(gateway.charge_calls) == 1


class TestPaymentOutcomes:
    """Test suite for declined and indeterminate payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_payment_fails_order(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Declined(reason="card_declined", reference="pi_declined"))

        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.status == OrderStatus.PAYMENT_FAILED
        assert result.detail == "card_declined"
        attempt = await orchestrator.order_store.latest_attempt(result.order_id)
        assert attempt.attempt_outcome == AttemptOutcome.DECLINED
        assert attempt.reference == "pi_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_decline_uses_new_attempt(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Declined(reason="insufficient_funds"))
        failed = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        assert failed.status == OrderStatus.PAYMENT_FAILED

        retried = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert retried.order_id == failed.order_id
        assert retried.status == OrderStatus.PAID
        assert [c["idempotency_key"] for c in gateway.charge_calls] == [
            gateway_key(failed.order_id, 1),
            gateway_key(failed.order_id, 2),
        ]
        assert await orchestrator.order_store.count_attempts(failed.order_id) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_order_awaiting_payment(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.delay = 1.0  # longer than gateway_timeout_seconds

        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.status == OrderStatus.AWAITING_PAYMENT
        assert "did not answer" in result.detail
        attempt = await orchestrator.order_store.latest_attempt(result.order_id)
        assert attempt.attempt_outcome == AttemptOutcome.INDETERMINATE

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "scripted",
        [GatewayError("connection reset"), RuntimeError("boom"), Indeterminate(reason="5xx")],
    )
    async def test_gateway_trouble_is_indeterminate(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
        scripted: Any,
    ) -> None:
        gateway.outcomes.append(scripted)

        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.status == OrderStatus.AWAITING_PAYMENT
        attempt = await orchestrator.order_store.latest_attempt(result.order_id)
        assert attempt.attempt_outcome == AttemptOutcome.INDETERMINATE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_indeterminate_replays_same_gateway_key(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(GatewayError("connection reset"))
        first = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        assert first.status == OrderStatus.AWAITING_PAYMENT

        second = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert second.order_id == first.order_id
        assert second.status == OrderStatus.PAID
        expected = gateway_key(first.order_id, 1)
        assert [c["idempotency_key"] for c in gateway.charge_calls] == [expected, expected]
        assert await orchestrator.order_store.count_attempts(first.order_id) == 1
        assert gateway.captured_count(first.order_id) == 1


class TestIdempotentReplay:
    """Test suite for repeated requests with the same key."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_after_paid_replays_without_charging(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        first = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        second = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert second.replayed
        assert second.order_id == first.order_id
        assert second.status == OrderStatus.PAID
        assert second.total_cents == first.total_cents
        assert len(gateway.charge_calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settled_order_with_unfinalized_key_is_finalized_on_replay(
        self,
        orchestrator: CheckoutOrchestrator,
        idempotency_manager: IdempotencyManager,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        # Simulate a crash between settling the order and recording it on the key
        order = await orchestrator.order_store.create_order(
            user_id, sample_items, "key-1", idempotency_manager.expires_at()
        )
        await orchestrator.order_store.transition(
            order.id, OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT
        )
        await orchestrator.order_store.transition(
            order.id, OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID
        )

        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.status == OrderStatus.PAID
        assert result.replayed
        assert gateway.charge_calls == []
        entry = await idempotency_manager.check("key-1")
        assert entry.outcome == OrderStatus.PAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_order_is_resumed(
        self,
        orchestrator: CheckoutOrchestrator,
        idempotency_manager: IdempotencyManager,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        # Simulate a crash right after the order was created
        order = await orchestrator.order_store.create_order(
            user_id, sample_items, "key-1", idempotency_manager.expires_at()
        )

        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert result.order_id == order.id
        assert result.status == OrderStatus.PAID
        assert len(gateway.charge_calls) == 1


class TestCancel:
    """Test suite for order cancellation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_pending_order(
        self,
        orchestrator: CheckoutOrchestrator,
        idempotency_manager: IdempotencyManager,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        order = await orchestrator.order_store.create_order(
            user_id, sample_items, "key-1", idempotency_manager.expires_at()
        )

        result = await orchestrator.cancel(order.id, reason="customer request")

        assert result.status == OrderStatus.CANCELLED
        entry = await idempotency_manager.check("key-1")
        assert entry.outcome == OrderStatus.CANCELLED

        # The key now replays the cancellation instead of charging
        replay = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        assert replay.status == OrderStatus.CANCELLED
        assert gateway.charge_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_cancel_paid_order(
        self,
        orchestrator: CheckoutOrchestrator,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        paid = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.cancel(paid.order_id)
        assert exc_info.value.current_status == OrderStatus.PAID.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_cancel_with_charge_in_flight(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(GatewayError("connection reset"))
        result = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        assert result.status == OrderStatus.AWAITING_PAYMENT

        with pytest.raises(ConflictError):
            await orchestrator.cancel(result.order_id)
        order = await orchestrator.get_order(result.order_id)
        assert order.order_status == OrderStatus.AWAITING_PAYMENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, orchestrator: CheckoutOrchestrator) -> None:
        with pytest.raises(NotFound):
            await orchestrator.cancel(uuid.uuid4())


class TestAmounts:
    """Test suite for totals passed to the gateway."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charged_amount_matches_line_items(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        session_factory: Any,
        user_id: str,
    ) -> None:
        items = [
            LineItem(product_id="sku-a", quantity=3, unit_price_cents=333),
            LineItem(product_id="sku-b", quantity=1, unit_price_cents=1),
        ]

        result = await orchestrator.checkout(user_id, items, idempotency_key="key-1")

        assert result.total_cents == 1000
        assert gateway.charge_calls[0]["amount_cents"] == 1000
        async with session_factory() as db:
            amount = await db.scalar(
                select(PaymentAttempt.amount_cents).where(
                    PaymentAttempt.order_id == result.order_id
                )
            )
        assert amount == 1000


async def _expire_key(session_factory: Any, key: str) -> None:
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(IdempotencyRecord)
                .where(IdempotencyRecord.key == key)
                .values(expires_at=utc_now() - timedelta(seconds=1))
            )


class TestKeyExpiry:
    """Test suite for keys used again after their retention window."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_cart_bought_again_after_expiry(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        session_factory: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        first = await orchestrator.checkout(user_id, sample_items)
        key = IdempotencyManager.generate_key(user_id, sample_items)
        await _expire_key(session_factory, key)

        second = await orchestrator.checkout(user_id, sample_items)

        assert second.order_id != first.order_id
        assert second.status == OrderStatus.PAID
        assert not second.replayed
        assert [c["idempotency_key"] for c in gateway.charge_calls] == [
            gateway_key(first.order_id, 1),
            gateway_key(second.order_id, 1),
        ]
        assert gateway.captured_count(second.order_id) == 1

        third = await orchestrator.checkout(user_id, sample_items)
        assert third.order_id == second.order_id
        assert third.replayed
        assert len(gateway.charge_calls) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_client_key_reused_after_expiry_starts_new_order(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        session_factory: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        first = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        await _expire_key(session_factory, "key-1")

        second = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert second.order_id != first.order_id
        assert second.status == OrderStatus.PAID
        assert (await orchestrator.get_order(first.order_id)).order_status == OrderStatus.PAID
        assert len(gateway.charge_calls) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unresolved_charge_survives_purge(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        session_factory: Any,
        sample_items: List[LineItem],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Indeterminate(reason="read timeout", reference="pi_unknown"))
        first = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")
        assert first.status == OrderStatus.AWAITING_PAYMENT
        await _expire_key(session_factory, "key-1")

        purged = await orchestrator.idempotency_manager.purge_expired(
            utc_now() + timedelta(days=2)
        )
        assert purged == 0

        gateway.query_results["pi_unknown"] = GatewayStatus.SUCCEEDED
        second = await orchestrator.checkout(user_id, sample_items, idempotency_key="key-1")

        assert second.order_id == first.order_id
        assert second.status == OrderStatus.PAID
        assert len(gateway.charge_calls) == 1
        async with session_factory() as db:
            orders = await db.scalar(select(func.count()).select_from(Order))
        assert orders == 1
