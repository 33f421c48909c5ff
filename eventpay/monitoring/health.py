"""
Health checks for Kubernetes readiness/liveness probes.

Checks:
- Settlement store connectivity
- Redis connectivity (when webhook dedup is configured)
- Gateway circuit breaker states
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from eventpay.config import get_settings
from eventpay.database.repository import SettlementRepository
from eventpay.integrations.base import GatewayRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Store connectivity check
    - Redis connectivity check
    - Gateway circuit breaker report
    - Overall system health status
    """

    def __init__(
        self,
        repository: SettlementRepository,
        gateways: Optional[GatewayRegistry] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            repository: Settlement store
            gateways: Registered gateway adapters
            redis_client: Redis client used for webhook dedup, if any
        """
        self.settings = get_settings()
        self.repository = repository
        self.gateways = gateways
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check store connectivity.

        Raises:
            HealthCheckError: If the store is unreachable
        """
        try:
            await self.repository.ping()
            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis not configured",
            }
        try:
            await self.redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

    def check_gateways(self) -> Dict[str, Any]:
        """Report circuit breaker state per gateway. An open breaker degrades, not fails."""
        states = self.gateways.circuit_states() if self.gateways else {}
        degraded = [gateway for gateway, state in states.items() if state == "open"]
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "gateways",
            "circuit_breakers": states,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            all_healthy = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {"status": "unhealthy", "service": "redis", "error": str(e)}
            all_healthy = False

        checks["gateways"] = self.check_gateways()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
