"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (only when a shared rate-limit store is configured)
- Provider credential presence
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from paybridge.config import PROVIDER_TAGS, Settings, get_settings
from paybridge.database.connection import get_session_factory

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
    - Provider configuration report
    - Overall system health status
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize health check service."""
        self.settings = settings or get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

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
                "status": "healthy",
                "service": "redis",
                "message": "Redis not configured; in-process rate limiting in use",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except (aioredis.RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    def check_providers(self) -> Dict[str, Any]:
        """
        Report which providers have credentials configured.

        Missing credentials do not make the service unhealthy: initiations
        for such providers are recorded as pending.
        """
        providers = {}
        for tag in PROVIDER_TAGS:
            config = self.settings.provider_config(tag)
            providers[tag] = {
                "has_keys": config.has_keys,
                "webhook_secret_configured": bool(config.webhook_secret),
            }
        return {"status": "healthy", "service": "providers", "providers": providers}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
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

        checks["providers"] = self.check_providers()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Returns:
            Dict[str, Any]: Readiness status
        """
        return await self.check_all()
