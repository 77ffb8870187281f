"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (only when an idempotency cache is configured)
- Gateway circuit breaker state (informational, never fails readiness)
"""
import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Gateway circuit breaker report
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[Any] = None,
        settings: Optional[Settings] = None,
        timeout_seconds: float = 2.0,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            gateway: Optional gateway whose circuit breaker is reported
            settings: Optional settings override
            timeout_seconds: Bound on each dependency check
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await asyncio.wait_for(
                    db.execute(text("SELECT 1")), timeout=self.timeout_seconds
                )
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.settings.redis_url:
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Idempotency cache not configured",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await asyncio.wait_for(redis_client.ping(), timeout=self.timeout_seconds)

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        finally:
            if redis_client is not None:
                await redis_client.aclose()

    def check_gateway(self) -> Dict[str, Any]:
        """Report the gateway circuit breaker without calling the gateway."""
        breaker = getattr(self.gateway, "circuit_breaker", None)
        if breaker is None:
            return {"status": "unknown", "service": "gateway"}
        return {
            "status": "degraded" if breaker.state == "open" else "healthy",
            "service": "gateway",
            "circuit_breaker": breaker.state,
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "unhealthy",
                "service": "redis",
                "error": str(e),
            }
            all_healthy = False

        checks["gateway"] = self.check_gateway()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint: the full dependency check."""
        return await self.check_all()
