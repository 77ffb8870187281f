"""
Reconciliation background worker.

Sweeps stale checkouts on a fixed interval.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from config import get_settings
from core.reconciliation import ReconciliationEngine, ReconciliationError
from database.connection import close_db, init_db
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(
    engine: ReconciliationEngine, staleness_seconds: Optional[int] = None
) -> Dict[str, Any]:
    """
    Run one reconciliation sweep and flag what it could not resolve.

    Args:
        engine: Reconciliation engine
        staleness_seconds: Optional override of the configured staleness

    Returns:
        Dict[str, Any]: Sweep summary
    """
    result = await engine.sweep(staleness_seconds=staleness_seconds)

    if result["unresolved"] or result["errors"]:
        logger.warning(
            "reconciliation_orders_unresolved",
            unresolved=result["unresolved"],
            errors=result["errors"],
            order_ids=result["unresolved_order_ids"][:20],
        )
    return result


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None,
    staleness_seconds: Optional[int] = None,
    once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (configured value if not provided)
        staleness_seconds: Optional override of the configured staleness
        once: Run a single sweep and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval, once=once)

    await init_db()
    engine = ReconciliationEngine(settings=settings)
    stop_event = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop_event.is_set():
            try:
                await run_sweep(engine, staleness_seconds)
            except ReconciliationError as e:
                # Continue running even if one sweep fails
                logger.error("reconciliation_execution_error", error=str(e))

            if once:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await engine.orchestrator.wait_for_dispatches()
        await engine.idempotency_manager.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Checkout reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--staleness", type=int, default=None, help="Minimum order age in seconds"
    )
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    args = parser.parse_args()

    asyncio.run(
        start_reconciliation_worker(
            interval_seconds=args.interval,
            staleness_seconds=args.staleness,
            once=args.once,
        )
    )


if __name__ == "__main__":
    main()
