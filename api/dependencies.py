"""
FastAPI dependencies.

Services are created lazily and shared per process. Tests swap them through
app.dependency_overrides.
"""
from functools import lru_cache

from fastapi import HTTPException, Request, status

from config import get_settings
from core.checkout import CheckoutOrchestrator
from core.reconciliation import ReconciliationEngine
from monitoring.health import HealthCheck


@lru_cache()
def get_orchestrator() -> CheckoutOrchestrator:
    return CheckoutOrchestrator()


@lru_cache()
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(orchestrator=get_orchestrator())


@lru_cache()
def get_health_check() -> HealthCheck:
    orchestrator = get_orchestrator()
    return HealthCheck(
        session_factory=orchestrator.order_store.session_factory,
        gateway=orchestrator.gateway,
    )


def get_current_user_id(request: Request) -> str:
    """
    Resolve the caller from the identity header set by the upstream auth layer.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    header = get_settings().user_id_header
    user_id = request.headers.get(header, "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {header} header",
        )
    return user_id
