"""
Transactional outbox publisher.

Order settlement events are written to the outbox in the same transaction as
the status change (see OrderStore.transition). This module reads them back
and hands them to a publisher, marking each one published once delivered.
Delivery is at-least-once: consumers de-duplicate on the event id.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.order_store import transaction_scope
from database.connection import get_session_factory
from database.models import OutboxEvent, as_utc, utc_now
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Publisher = Callable[[Dict[str, Any]], Awaitable[None]]


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Read unpublished events, oldest first
    2. Publish each one
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        publisher_func: Optional[Publisher] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            publisher_func: Coroutine function that delivers one event
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
        """
        self.session_factory = session_factory or get_session_factory()
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Log the event; deployments pass a real broker publisher."""
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    @staticmethod
    def _serialize(event: OutboxEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": as_utc(event.created_at).isoformat(),
        }

    async def _fetch_unpublished_events(self) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        async with transaction_scope(self.session_factory) as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        start_time = time.time()
        try:
            await self.publisher_func(self._serialize(event))
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type, time.time() - start_time)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def _mark_as_published(self, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with transaction_scope(self.session_factory) as db:
            await db.execute(stmt)

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        events = await self._fetch_unpublished_events()
        if not events:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(events))

        published_ids = []
        for event in events:
            if await self._publish_event(event):
                published_ids.append(event.id)

        await self._mark_as_published(published_ids)

        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events until stop() is called.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check immediately for more
                    await asyncio.sleep(0)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        stmt = select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
        async with transaction_scope(self.session_factory) as db:
            return int(await db.scalar(stmt) or 0)
