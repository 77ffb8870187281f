"""
Outbox publisher background worker.

Continuously polls the outbox table and publishes order events to a Redis
stream, or to the log when no Redis is configured.
"""
import asyncio
import json
import signal
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from config import get_settings
from core.outbox import OutboxPublisher
from database.connection import close_db
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

ORDER_EVENTS_STREAM = "checkout:order-events"


def redis_stream_publisher(
    redis_client: aioredis.Redis, stream: str = ORDER_EVENTS_STREAM
) -> Callable[[Dict[str, Any]], Awaitable[None]]:
    """
    Build a publisher that appends events to a Redis stream.

    Args:
        redis_client: Redis client
        stream: Stream name

    Returns:
        Coroutine function publishing one event
    """

    async def publish(event_data: Dict[str, Any]) -> None:
        await redis_client.xadd(
            stream,
            {
                "event_id": str(event_data["id"]),
                "event_type": event_data["event_type"],
                "aggregate_id": event_data["aggregate_id"],
                "data": json.dumps(event_data),
            },
        )
        logger.info(
            "event_published_to_stream",
            stream=stream,
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    return publish


async def start_outbox_publisher(poll_interval_seconds: float = 1.0) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", redis=bool(settings.redis_url))

    redis_client: Optional[aioredis.Redis] = None
    publisher_func = None
    if settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        publisher_func = redis_stream_publisher(redis_client)

    publisher = OutboxPublisher(
        publisher_func=publisher_func,
        batch_size=100,
        poll_interval_seconds=poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
