"""
Reconciliation engine for orders stuck between dispatch and settlement.

Runs on a schedule to resolve:
- awaiting_payment orders whose charge outcome was never learned
- awaiting_payment orders whose charge was never dispatched
- pending orders abandoned before payment started
- expired idempotency records
"""
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import update

from config import Settings, get_settings
from core.checkout import CheckoutOrchestrator, CheckoutResult
from core.exceptions import CheckoutError, ConflictError
from core.order_store import transaction_scope
from database.enums import AttemptOutcome, OrderStatus
from database.models import Order, ReconciliationRun, utc_now
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RESOLUTION_COUNTERS = {
    "paid": "resolved_paid",
    "payment_failed": "resolved_failed",
    "cancelled": "cancelled",
    "unresolved": "unresolved",
    "error": "errors",
}


class ReconciliationError(Exception):
    """Raised when a reconciliation sweep fails as a whole."""

    pass


class ReconciliationEngine:
    """
    Reconciliation engine for stale checkouts.

    Single orders are resolved through the orchestrator, so a sweep and a
    client retry follow exactly the same rules. Each sweep is recorded as a
    ReconciliationRun row.
    """

    def __init__(
        self,
        orchestrator: Optional[CheckoutOrchestrator] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            orchestrator: Optional checkout orchestrator
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator or CheckoutOrchestrator(settings=self.settings)
        self.order_store = self.orchestrator.order_store
        self.idempotency_manager = self.orchestrator.idempotency_manager
        self.session_factory = self.order_store.session_factory
        logger.info("reconciliation_engine_initialized")

    async def reconcile_order(self, order_id: uuid.UUID) -> CheckoutResult:
        """
        Reconcile one order now, regardless of its age.

        Raises:
            NotFound: If the order does not exist
        """
        result = await self.orchestrator.reconcile_order(order_id)
        logger.info(
            "order_reconciled",
            order_id=str(order_id),
            status=result.status.value,
        )
        return result

    async def _resolve_awaiting(self, order: Order) -> str:
        attempt = await self.order_store.latest_attempt(order.id)
        if attempt is None or attempt.attempt_outcome == AttemptOutcome.DECLINED:
            # Nothing can be in flight: nobody is waiting on this order any more
            await self.orchestrator.cancel(order.id, reason="payment never dispatched")
            return "cancelled"

        result = await self.orchestrator.reconcile_order(order.id)
        if result.status in (OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED):
            return result.status.value
        return "unresolved"

    async def _resolve(self, order: Order) -> str:
        try:
            if order.order_status == OrderStatus.PENDING:
                await self.orchestrator.cancel(order.id, reason="abandoned before payment")
                return "cancelled"
            return await self._resolve_awaiting(order)
        except ConflictError as e:
            # Moved on concurrently; the next sweep sees its new status
            logger.info(
                "reconciliation_order_moved",
                order_id=str(order.id),
                current_status=e.current_status,
            )
            return "unresolved"
        except CheckoutError as e:
            logger.error(
                "reconciliation_order_failed",
                order_id=str(order.id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return "error"

    async def _start_run(self) -> int:
        async with transaction_scope(self.session_factory) as db:
            run = ReconciliationRun(status="in_progress", started_at=utc_now())
            db.add(run)
            await db.flush()
            return run.id

    async def _finish_run(
        self, run_id: int, status: str, counts: Dict[str, int], details: Dict[str, Any]
    ) -> None:
        stmt = (
            update(ReconciliationRun)
            .where(ReconciliationRun.id == run_id)
            .values(status=status, completed_at=utc_now(), details=details, **counts)
            .execution_options(synchronize_session=False)
        )
        async with transaction_scope(self.session_factory) as db:
            await db.execute(stmt)

    async def sweep(
        self,
        staleness_seconds: Optional[int] = None,
        pending_ttl_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Reconcile every stale order and purge expired idempotency records.

        Args:
            staleness_seconds: Minimum age of awaiting_payment orders to examine
            pending_ttl_seconds: Minimum age of pending orders to cancel

        Returns:
            Dict[str, Any]: Sweep summary

        Raises:
            ReconciliationError: If the sweep could not run
        """
        if staleness_seconds is None:
            staleness_seconds = self.settings.reconciliation_staleness_seconds
        if pending_ttl_seconds is None:
            pending_ttl_seconds = self.settings.pending_order_ttl_seconds

        start_time = time.time()
        counts: Dict[str, int] = {
            "examined": 0,
            "resolved_paid": 0,
            "resolved_failed": 0,
            "cancelled": 0,
            "unresolved": 0,
            "errors": 0,
            "purged_idempotency_records": 0,
        }
        unresolved_ids: List[str] = []

        logger.info(
            "reconciliation_started",
            staleness_seconds=staleness_seconds,
            pending_ttl_seconds=pending_ttl_seconds,
        )

        try:
            run_id = await self._start_run()
        except CheckoutError as e:
            raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        try:
            now = utc_now()
            batch_size = self.settings.reconciliation_batch_size
            stale_orders = await self.order_store.list_stale(
                OrderStatus.AWAITING_PAYMENT,
                now - timedelta(seconds=staleness_seconds),
                batch_size,
            )
            stale_orders += await self.order_store.list_stale(
                OrderStatus.PENDING,
                now - timedelta(seconds=pending_ttl_seconds),
                batch_size,
            )

            for order in stale_orders:
                counts["examined"] += 1
                resolution = await self._resolve(order)
                counts[RESOLUTION_COUNTERS[resolution]] += 1
                metrics.record_reconciliation(resolution)
                if resolution in ("unresolved", "error"):
                    unresolved_ids.append(str(order.id))

            counts["purged_idempotency_records"] = (
                await self.idempotency_manager.purge_expired()
            )

        except Exception as e:
            logger.error("reconciliation_failed", run_id=run_id, error=str(e))
            await self._finish_run(run_id, "failed", counts, {"error": str(e)})
            raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        await self._finish_run(
            run_id,
            "completed",
            counts,
            {"unresolved_order_ids": unresolved_ids[:100]},
        )

        duration = time.time() - start_time
        metrics.set_reconciliation_metrics(counts["unresolved"] + counts["errors"], duration)
        logger.info("reconciliation_completed", run_id=run_id, duration_seconds=duration, **counts)

        return {
            "run_id": run_id,
            **counts,
            "unresolved_order_ids": unresolved_ids,
        }
