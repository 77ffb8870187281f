"""
API routes for checkout processing.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.checkout import CheckoutOrchestrator, CheckoutResult
from core.exceptions import (
    CheckoutError,
    ConflictError,
    InvalidRequest,
    NotFound,
    PersistenceError,
    StateTransitionError,
)
from core.reconciliation import ReconciliationEngine, ReconciliationError
from database.enums import OrderStatus
from database.models import Order, as_utc
from monitoring.health import HealthCheck

from .dependencies import (
    get_current_user_id,
    get_health_check,
    get_orchestrator,
    get_reconciliation_engine,
)
from .schemas import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResponse,
    HealthCheckResponse,
    OrderResponse,
    ReconciliationResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

CHECKOUT_STATUS_CODES = {
    OrderStatus.PAID: status.HTTP_201_CREATED,
    OrderStatus.PAYMENT_FAILED: status.HTTP_400_BAD_REQUEST,
    OrderStatus.AWAITING_PAYMENT: status.HTTP_202_ACCEPTED,
    OrderStatus.PENDING: status.HTTP_202_ACCEPTED,
    OrderStatus.CANCELLED: status.HTTP_409_CONFLICT,
}


def _http_error(exc: CheckoutError) -> HTTPException:
    """Translate a core error into the HTTP error the API documents."""
    if isinstance(exc, InvalidRequest):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (ConflictError, StateTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Order store unavailable, retry with the same idempotency key",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Checkout failed"
    )


def _checkout_body(result: CheckoutResult) -> Dict[str, Any]:
    return CheckoutResponse(order_id=str(result.order_id), status=result.status.value).model_dump(
        by_alias=True
    )


def _order_body(order: Order) -> Dict[str, Any]:
    return OrderResponse(
        order_id=str(order.id),
        user_id=order.user_id,
        status=order.status,
        total_cents=order.total_cents,
        currency=order.currency,
        items=[
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
            }
            for item in order.items
        ],
        created_at=as_utc(order.created_at).isoformat(),
        updated_at=as_utc(order.updated_at).isoformat(),
    ).model_dump(by_alias=True)


async def _get_owned_order(
    orchestrator: CheckoutOrchestrator, order_id: uuid.UUID, user_id: str
) -> Order:
    order = await orchestrator.get_order(order_id)
    if order.user_id != user_id:
        # Other users' orders are indistinguishable from missing ones
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    return order


@checkout_router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check out a cart",
    description=(
        "Create an order and charge it. Idempotent: repeating a request with the same "
        "key never charges twice and returns the same outcome."
    ),
    responses={
        400: {"model": CheckoutResponse, "description": "Payment declined"},
        202: {"model": CheckoutResponse, "description": "Payment outcome not yet known"},
        409: {"description": "Order cancelled, or a conflicting request"},
    },
)
async def checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key_header: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Check out a cart.

    The response code carries the outcome: 201 paid, 400 declined,
    202 still being settled, 409 cancelled.
    """
    try:
        logger.info(
            "api_checkout_request",
            user_id=user_id,
            item_count=len(request.items),
        )

        result = await orchestrator.checkout(
            user_id=user_id,
            items=[item.to_line_item() for item in request.items],
            idempotency_key=request.idempotency_key or idempotency_key_header,
        )

        logger.info(
            "api_checkout_success",
            order_id=str(result.order_id),
            status=result.status.value,
            replayed=result.replayed,
        )

        return JSONResponse(
            status_code=CHECKOUT_STATUS_CODES[result.status],
            content=_checkout_body(result),
        )

    except CheckoutError as e:
        logger.warning("api_checkout_error", error=str(e), error_type=type(e).__name__)
        raise _http_error(e) from e

    except Exception as e:
        logger.error("api_checkout_unexpected_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An unexpected error occurred",
        ) from e


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
    description="Retrieve an order with its items and status",
)
async def get_order(
    order_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Get an order by ID."""
    try:
        order = await _get_owned_order(orchestrator, order_id, user_id)
        return _order_body(order)
    except CheckoutError as e:
        raise _http_error(e) from e


@order_router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
    description="Cancel an order that has no payment in flight",
)
async def cancel_order(
    order_id: uuid.UUID,
    request: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Cancel an order."""
    try:
        await _get_owned_order(orchestrator, order_id, user_id)
        reason = request.reason if request else None
        logger.info("api_cancel_order_request", order_id=str(order_id), reason=reason)

        await orchestrator.cancel(order_id, reason=reason or "cancelled by user")
        order = await orchestrator.get_order(order_id)
        return _order_body(order)

    except CheckoutError as e:
        logger.warning("api_cancel_order_error", order_id=str(order_id), error=str(e))
        raise _http_error(e) from e


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Reconcile stale orders and purge expired idempotency records",
)
async def run_reconciliation(
    staleness_seconds: Optional[int] = Query(default=None, ge=0),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Run a reconciliation sweep."""
    try:
        logger.info("api_reconciliation_started", staleness_seconds=staleness_seconds)
        result = await engine.sweep(staleness_seconds=staleness_seconds)
        logger.info(
            "api_reconciliation_completed",
            examined=result["examined"],
            unresolved=result["unresolved"],
        )
        return result

    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        ) from e


@admin_router.post(
    "/orders/{order_id}/reconcile",
    response_model=CheckoutResponse,
    summary="Reconcile one order",
    description="Resolve a single order stuck in awaiting_payment",
)
async def reconcile_order(
    order_id: uuid.UUID,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Reconcile one order now."""
    try:
        result = await engine.reconcile_order(order_id)
        return _checkout_body(result)
    except CheckoutError as e:
        raise _http_error(e) from e


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        ) from e
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
