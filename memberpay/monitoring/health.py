"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway configuration
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from memberpay.integrations.gateways import GatewayRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway registry check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
    ) -> None:
        self.session_factory = session_factory
        self.gateways = gateways

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

    async def check_gateways(self) -> Dict[str, Any]:
        """
        Check that at least one gateway is configured.

        Gateways are not called: probes must not spend provider quota.
        """
        if not self.gateways:
            raise HealthCheckError("No payment gateway enabled")
        return {
            "status": "healthy",
            "service": "gateways",
            "enabled": sorted(g.value for g in self.gateways),
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("gateways", self.check_gateways)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

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
        """Readiness probe: all dependencies available."""
        return await self.check_all()
