"""
Integration tests for the checkout HTTP API.
"""
import uuid
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from api.dependencies import get_orchestrator
from api.main import app
from core.checkout import CheckoutOrchestrator
from core.exceptions import PersistenceError
from integrations.gateway import Declined, GatewayError, GatewayStatus, Indeterminate


def _headers(user_id: str, **extra: str) -> Dict[str, str]:
    return {"X-User-ID": user_id, **extra}


class TestCheckoutEndpoint:
    """Integration tests for POST /checkout."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_checkout_returns_201(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        response = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "paid"
        uuid.UUID(data["orderId"])
        assert gateway.charge_calls[0]["amount_cents"] == 4498

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_single_line_cart_charges_price_times_quantity(
        self, client: AsyncClient, gateway: Any, user_id: str
    ) -> None:
        body = {"items": [{"productId": "sku-1", "quantity": 2, "price": "10.00"}]}

        response = await client.post("/checkout", json=body, headers=_headers(user_id))

        assert response.status_code == 201
        assert response.json()["status"] == "paid"
        assert [c["amount_cents"] for c in gateway.charge_calls] == [2000]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_largest_allowed_line_is_stored_exactly(
        self, client: AsyncClient, gateway: Any, user_id: str
    ) -> None:
        body = {"items": [{"productId": "sku-1", "quantity": 10000, "price": "999999.99"}]}

        response = await client.post("/checkout", json=body, headers=_headers(user_id))

        assert response.status_code == 201
        assert gateway.charge_calls[0]["amount_cents"] == 999_999_990_000
        order = await client.get(
            f"/orders/{response.json()['orderId']}", headers=_headers(user_id)
        )
        assert order.json()["totalCents"] == 999_999_990_000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_checkout_returns_400(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Declined(reason="card_declined"))

        response = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )

        assert response.status_code == 400
        assert response.json()["status"] == "payment_failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_outcome_returns_202(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(GatewayError("connection reset"))

        response = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )

        assert response.status_code == 202
        assert response.json()["status"] == "awaiting_payment"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_user_header_returns_401(
        self, client: AsyncClient, gateway: Any, sample_checkout_data: Dict[str, Any]
    ) -> None:
        response = await client.post("/checkout", json=sample_checkout_data)

        assert response.status_code == 401
        assert gateway.charge_calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"items": []},
            {"items": [{"productId": "sku-1", "quantity": 0, "price": "1.00"}]},
            {"items": [{"productId": "sku-1", "quantity": 1, "price": "-1.00"}]},
            {"items": [{"productId": "sku-1", "quantity": 1, "price": "1.999"}]},
            {"items": [{"productId": "", "quantity": 1, "price": "1.00"}]},
            {"items": [{"productId": "sku-1", "quantity": 1, "price": "1000000.00"}]},
            {"items": [{"productId": "sku-1", "quantity": 10001, "price": "1.00"}]},
            {"items": [{"productId": "sku-1", "quantity": 1, "price": "1.00"}], "idempotencyKey": ""},
        ],
    )
    async def test_invalid_body_returns_422(
        self, client: AsyncClient, gateway: Any, body: Dict[str, Any], user_id: str
    ) -> None:
        response = await client.post("/checkout", json=body, headers=_headers(user_id))

        assert response.status_code == 422
        assert gateway.charge_calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeated_request_replays_outcome(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        body = {**sample_checkout_data, "idempotencyKey": "cart-1"}

        first = await client.post("/checkout", json=body, headers=_headers(user_id))
        second = await client.post("/checkout", json=body, headers=_headers(user_id))

        assert first.status_code == second.status_code == 201
        assert first.json() == second.json()
        assert len(gateway.charge_calls) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_idempotency_key_header(
        self,
        client: AsyncClient,
        orchestrator: CheckoutOrchestrator,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        headers = _headers(user_id, **{"Idempotency-Key": "hdr-1"})

        first = await client.post("/checkout", json=sample_checkout_data, headers=headers)
        second = await client.post("/checkout", json=sample_checkout_data, headers=headers)

        assert first.json()["orderId"] == second.json()["orderId"]
        assert len(gateway.charge_calls) == 1
        entry = await orchestrator.idempotency_manager.check("hdr-1")
        assert str(entry.order_id) == first.json()["orderId"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_body_key_wins_over_header(
        self,
        client: AsyncClient,
        orchestrator: CheckoutOrchestrator,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        body = {**sample_checkout_data, "idempotencyKey": "body-1"}
        headers = _headers(user_id, **{"Idempotency-Key": "hdr-1"})

        response = await client.post("/checkout", json=body, headers=headers)

        entry = await orchestrator.idempotency_manager.check("body-1")
        assert str(entry.order_id) == response.json()["orderId"]
        assert await orchestrator.idempotency_manager.check("hdr-1") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_of_another_user_returns_409(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
    ) -> None:
        body = {**sample_checkout_data, "idempotencyKey": "shared"}

        await client.post("/checkout", json=body, headers=_headers("user-a"))
        response = await client.post("/checkout", json=body, headers=_headers("user-b"))

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_store_outage_returns_503(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        broken = AsyncMock()
        broken.checkout.side_effect = PersistenceError("connection refused")
        app.dependency_overrides[get_orchestrator] = lambda: broken

        response = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_echoed(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        response = await client.post(
            "/checkout",
            json=sample_checkout_data,
            headers=_headers(user_id, **{"X-Request-ID": "req-42"}),
        )

        assert response.headers["X-Request-ID"] == "req-42"


class TestOrderEndpoints:
    """Integration tests for /orders."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_own_order(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        created = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )
        order_id = created.json()["orderId"]

        response = await client.get(f"/orders/{order_id}", headers=_headers(user_id))

        assert response.status_code == 200
        data = response.json()
        assert data["orderId"] == order_id
        assert data["userId"] == user_id
        assert data["status"] == "paid"
        assert data["totalCents"] == 4498
        assert data["currency"] == "USD"
        assert [i["productId"] for i in data["items"]] == ["sku-123", "sku-456"]
        assert [i["unitPriceCents"] for i in data["items"]] == [1999, 500]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_users_order_is_not_found(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
    ) -> None:
        created = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers("user-a")
        )
        order_id = created.json()["orderId"]

        response = await client.get(f"/orders/{order_id}", headers=_headers("user-b"))

        assert response.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client: AsyncClient, user_id: str) -> None:
        response = await client.get(f"/orders/{uuid.uuid4()}", headers=_headers(user_id))
        assert response.status_code == 404

        response = await client.get("/orders/not-a-uuid", headers=_headers(user_id))
        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_pending_order(
        self,
        client: AsyncClient,
        orchestrator: CheckoutOrchestrator,
        sample_checkout_data: Dict[str, Any],
        sample_items: Any,
        user_id: str,
    ) -> None:
        order = await orchestrator.order_store.create_order(
            user_id, sample_items, "cart-1", orchestrator.idempotency_manager.expires_at()
        )

        response = await client.post(
            f"/orders/{order.id}/cancel",
            json={"reason": "changed my mind"},
            headers=_headers(user_id),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        # The key now replays the cancellation
        replay = await client.post(
            "/checkout",
            json={**sample_checkout_data, "idempotencyKey": "cart-1"},
            headers=_headers(user_id),
        )
        assert replay.status_code == 409
        assert replay.json()["status"] == "cancelled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_order_conflicts(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        created = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )
        order_id = created.json()["orderId"]

        response = await client.post(f"/orders/{order_id}/cancel", headers=_headers(user_id))

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_cancel_other_users_order(
        self,
        client: AsyncClient,
        orchestrator: CheckoutOrchestrator,
        sample_items: Any,
    ) -> None:
        order = await orchestrator.order_store.create_order(
            "user-a", sample_items, "cart-1", orchestrator.idempotency_manager.expires_at()
        )

        response = await client.post(f"/orders/{order.id}/cancel", headers=_headers("user-b"))

        assert response.status_code == 404
        assert (await orchestrator.get_order(order.id)).status == "pending"


class TestAdminEndpoints:
    """Integration tests for /admin."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_sweep(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Indeterminate(reason="timeout", reference="pi_1"))
        await client.post("/checkout", json=sample_checkout_data, headers=_headers(user_id))
        gateway.query_results["pi_1"] = GatewayStatus.SUCCEEDED

        response = await client.post("/admin/reconcile", params={"staleness_seconds": 0})

        assert response.status_code == 200
        data = response.json()
        assert data["examined"] == 1
        assert data["resolved_paid"] == 1
        assert data["unresolved_order_ids"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_single_order(
        self,
        client: AsyncClient,
        gateway: Any,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        gateway.outcomes.append(Indeterminate(reason="timeout", reference="pi_1"))
        created = await client.post(
            "/checkout", json=sample_checkout_data, headers=_headers(user_id)
        )
        order_id = created.json()["orderId"]
        gateway.query_results["pi_1"] = GatewayStatus.DECLINED

        response = await client.post(f"/admin/orders/{order_id}/reconcile")

        assert response.status_code == 200
        assert response.json() == {"orderId": order_id, "status": "payment_failed"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_unknown_order(self, client: AsyncClient) -> None:
        response = await client.post(f"/admin/orders/{uuid.uuid4()}/reconcile")
        assert response.status_code == 404


class TestMonitoringEndpoints:
    """Integration tests for health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"]["status"] == "skipped"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

        assert live.status_code == 200
        assert live.json()["status"] == "alive"
        assert ready.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(
        self,
        client: AsyncClient,
        sample_checkout_data: Dict[str, Any],
        user_id: str,
    ) -> None:
        await client.post("/checkout", json=sample_checkout_data, headers=_headers(user_id))

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "checkout_requests_total" in response.text
