"""
Idempotency records for checkout requests.

This module implements a two-tier lookup:
1. Redis cache for settled outcomes (optional, fast path)
2. Database records for durability; these are authoritative

Records are created by OrderStore.create_order in the same transaction as the
order, so this manager only reads, settles, reopens and purges them.
"""
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.order_store import LineItem, transaction_scope
from core.state_machine import TERMINAL_STATUSES
from database.connection import get_session_factory
from database.enums import IdempotencyState, OrderStatus
from database.models import IdempotencyRecord, as_utc, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class IdempotencyEntry:
    """What is known about a key: the order it maps to and, once settled, the outcome."""

    key: str
    user_id: str
    order_id: uuid.UUID
    state: IdempotencyState
    outcome: Optional[OrderStatus] = None
    response: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    source: str = "database"

    @property
    def is_completed(self) -> bool:
        return self.state == IdempotencyState.COMPLETED and self.outcome is not None

    @classmethod
    def from_record(cls, record: IdempotencyRecord) -> "IdempotencyEntry":
        return cls(
            key=record.key,
            user_id=record.user_id,
            order_id=record.order_id,
            state=IdempotencyState(record.state),
            outcome=OrderStatus(record.outcome) if record.outcome else None,
            response=record.response,
            expires_at=as_utc(record.expires_at),
        )

    def to_cache(self) -> str:
        return json.dumps(
            {
                "key": self.key,
                "user_id": self.user_id,
                "order_id": str(self.order_id),
                "state": self.state.value,
                "outcome": self.outcome.value if self.outcome else None,
                "response": self.response,
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            }
        )

    @classmethod
    def from_cache(cls, raw: str) -> "IdempotencyEntry":
        data = json.loads(raw)
        return cls(
            key=data["key"],
            user_id=data["user_id"],
            order_id=uuid.UUID(data["order_id"]),
            state=IdempotencyState(data["state"]),
            outcome=OrderStatus(data["outcome"]) if data.get("outcome") else None,
            response=data.get("response"),
            expires_at=(
                datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None
            ),
            source="redis",
        )


class IdempotencyManager:
    """
    Manages idempotency records and cached outcomes.

    Implements a two-tier system:
    - Redis for settled outcomes (only paid and cancelled, which never change)
    - The database for everything else
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency manager.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            redis_client: Optional Redis client (created from settings.redis_url if not provided)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client
        self._redis_initialized = redis_client is not None

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Ensure Redis client is initialized. Returns None when no cache is configured."""
        if not self._redis_initialized:
            if not self.settings.redis_url:
                return None
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def _cache_key(idempotency_key: str) -> str:
        return f"idempotency:{idempotency_key}"

    @staticmethod
    def generate_key(user_id: str, items: Sequence[LineItem]) -> str:
        """
        Derive an idempotency key from the request content.

        Format: {user_id}:{items_hash}

        The hash covers the sorted (product_id, quantity, unit_price_cents)
        tuples, so the same cart submitted twice maps to the same key
        regardless of item order.

        Args:
            user_id: User identifier
            items: Requested line items

        Returns:
            str: Idempotency key
        """
        user_id_str = str(user_id)
        parts = sorted(
            f"{item.product_id}:{item.quantity}:{item.unit_price_cents}" for item in items
        )
        items_data = f"{user_id_str}|" + "|".join(parts)
        items_hash = hashlib.sha256(items_data.encode()).hexdigest()[:32]
        return f"{user_id_str}:{items_hash}"

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        """Expiry for a record created now."""
        return (now or utc_now()) + timedelta(seconds=self.settings.idempotency_retention_seconds)

    async def check(self, idempotency_key: str) -> Optional[IdempotencyEntry]:
        """
        Look up an idempotency key.

        First checks Redis cache, then falls back to the database. An expired
        completed record is deleted and reported as absent, so a new request
        with the key starts a fresh checkout. In-flight records never expire.

        Args:
            idempotency_key: The idempotency key to check

        Returns:
            Optional[IdempotencyEntry]: Entry if the key is known, None otherwise

        Raises:
            PersistenceError: If the database is unavailable
        """
        logger.info("checking_idempotency", idempotency_key=idempotency_key)

        # Check Redis cache first
        try:
            redis = await self._ensure_redis()
            if redis is not None:
                cached = await redis.get(self._cache_key(idempotency_key))
                if cached:
                    logger.info(
                        "idempotency_cache_hit",
                        idempotency_key=idempotency_key,
                        source="redis",
                    )
                    return IdempotencyEntry.from_cache(cached)
        except Exception as e:
            logger.warning(
                "redis_cache_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

        # Fallback to database
        async with transaction_scope(self.session_factory) as db:
            record = await db.get(IdempotencyRecord, idempotency_key)
            if record is None:
                logger.info("idempotency_cache_miss", idempotency_key=idempotency_key)
                return None

            if record.is_expired():
                await db.delete(record)
                logger.info(
                    "idempotency_record_expired",
                    idempotency_key=idempotency_key,
                    order_id=str(record.order_id),
                )
                return None

            entry = IdempotencyEntry.from_record(record)

        logger.info(
            "idempotency_cache_hit",
            idempotency_key=idempotency_key,
            source="database",
            state=entry.state.value,
        )
        if entry.is_completed and entry.outcome in TERMINAL_STATUSES:
            await self._cache(entry)
        return entry

    async def finalize(
        self,
        idempotency_key: str,
        outcome: OrderStatus,
        response: Dict[str, Any],
    ) -> None:
        """
        Mark a key completed with the settled outcome and response.

        Args:
            idempotency_key: The idempotency key
            outcome: Settled order status
            response: Response body to replay for this key
        """
        stmt = (
            update(IdempotencyRecord)
            .where(IdempotencyRecord.key == idempotency_key)
            .values(
                state=IdempotencyState.COMPLETED.value,
                outcome=outcome.value,
                response=response,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with transaction_scope(self.session_factory) as db:
            result = await db.execute(stmt)

        if result.rowcount == 0:
            logger.warning("idempotency_record_missing", idempotency_key=idempotency_key)
            return

        logger.info(
            "idempotency_record_completed",
            idempotency_key=idempotency_key,
            outcome=outcome.value,
        )
        if outcome in TERMINAL_STATUSES:
            entry = await self._load(idempotency_key)
            if entry is not None:
                await self._cache(entry)

    async def reopen(self, idempotency_key: str) -> None:
        """Put a completed key back in flight for a payment retry."""
        stmt = (
            update(IdempotencyRecord)
            .where(IdempotencyRecord.key == idempotency_key)
            .values(
                state=IdempotencyState.IN_FLIGHT.value,
                outcome=None,
                response=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with transaction_scope(self.session_factory) as db:
            await db.execute(stmt)
        await self.invalidate(idempotency_key)
        logger.info("idempotency_record_reopened", idempotency_key=idempotency_key)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete completed records past their retention window.

        In-flight records are kept whatever their age: their order may still
        be awaiting a payment outcome, and a resubmission must find it.

        Returns:
            int: Number of records deleted
        """
        stmt = (
            delete(IdempotencyRecord)
            .where(
                IdempotencyRecord.state == IdempotencyState.COMPLETED.value,
                IdempotencyRecord.expires_at <= (now or utc_now()),
            )
            .execution_options(synchronize_session=False)
        )
        async with transaction_scope(self.session_factory) as db:
            result = await db.execute(stmt)
        purged = result.rowcount or 0
        if purged:
            logger.info("idempotency_records_purged", count=purged)
        return purged

    async def _load(self, idempotency_key: str) -> Optional[IdempotencyEntry]:
        async with transaction_scope(self.session_factory) as db:
            record = await db.get(IdempotencyRecord, idempotency_key)
            return IdempotencyEntry.from_record(record) if record else None

    async def _cache(self, entry: IdempotencyEntry) -> None:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            ttl = self.settings.idempotency_cache_ttl
            if entry.expires_at is not None:
                ttl = min(ttl, int((entry.expires_at - utc_now()).total_seconds()))
            if ttl <= 0:
                return
            await redis.setex(
                self._cache_key(entry.key),
                ttl,
                entry.to_cache(),
            )
            logger.info("idempotency_response_cached", idempotency_key=entry.key)
        except Exception as e:
            logger.warning(
                "idempotency_cache_store_error",
                error=str(e),
                idempotency_key=entry.key,
            )

    async def invalidate(self, idempotency_key: str) -> None:
        """
        Invalidate cached outcome for an idempotency key.

        Args:
            idempotency_key: The idempotency key to invalidate
        """
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            await redis.delete(self._cache_key(idempotency_key))
            logger.info("idempotency_cache_invalidated", idempotency_key=idempotency_key)
        except Exception as e:
            logger.warning(
                "idempotency_cache_invalidate_error",
                error=str(e),
                idempotency_key=idempotency_key,
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()
