"""
Health checks.

/health reports every dependency; /health/ready only fails when payments
cannot be recorded (database down) or no provider can be reached (every
circuit breaker open). Provider checks make no outbound call.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from ride_payments.config import Settings, get_settings
from ride_payments.core.enums import Provider
from ride_payments.database.connection import get_session_factory
from ride_payments.integrations.base import ProviderAdapter

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""

    pass


class HealthCheck:
    """Dependency checks for the payment service."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapters: Optional[Mapping[Provider, ProviderAdapter]] = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            settings: Application settings
            adapters: Provider adapters whose breakers are reported
            session_factory: Session factory (defaults to the application one)
        """
        self.settings = settings or get_settings()
        self.adapters = dict(adapters or {})
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Run a trivial query against the transaction database.

        Raises:
            HealthCheckError: If the query fails
        """
        session_factory = self.session_factory or get_session_factory()
        try:
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            raise HealthCheckError(f"database unreachable: {e}") from e
        return {"status": "healthy"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Ping the idempotency cache, if one is configured.

        Raises:
            HealthCheckError: If Redis does not answer
        """
        if not self.settings.redis_url:
            return {"status": "healthy", "message": "not configured, database tier only"}

        client = aioredis.from_url(self.settings.redis_url)
        try:
            await client.ping()
        except Exception as e:
            raise HealthCheckError(f"idempotency cache unreachable: {e}") from e
        finally:
            await client.aclose()
        return {"status": "healthy"}

    def check_providers(self) -> Dict[str, Any]:
        """
        Report provider circuit breaker states.

        Returns:
            Dict[str, Any]: "healthy", "degraded" (some breakers open) or
            "unhealthy" (all open), with the state of each breaker
        """
        breakers = {
            provider.value: adapter.circuit_breaker.state
            for provider, adapter in self.adapters.items()
        }
        open_count = sum(1 for state in breakers.values() if state == "open")
        if breakers and open_count == len(breakers):
            status = "unhealthy"
        elif open_count:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "circuit_breakers": breakers}

    async def _check(
        self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            result = await check()
        except HealthCheckError as e:
            logger.error("health_check_failed", dependency=name, error=str(e))
            result = {"status": "unhealthy", "error": str(e)}
        result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return result

    async def check_all(self) -> Dict[str, Any]:
        """
        Check every dependency.

        Redis failures only degrade the service since idempotency falls back
        to the database.

        Returns:
            Dict[str, Any]: Overall status and per-dependency results
        """
        checks = {
            "database": await self._check("database", self.check_database),
            "redis": await self._check("redis", self.check_redis),
            "providers": self.check_providers(),
        }

        if checks["database"]["status"] != "healthy" or checks["providers"]["status"] == "unhealthy":
            status = "unhealthy"
        elif any(check["status"] != "healthy" for check in checks.values()):
            status = "degraded"
        else:
            status = "healthy"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; no dependency is touched."""
        return {"status": "alive"}

    async def readiness(self) -> Dict[str, Any]:
        """
        Whether the service can take payments.

        A degraded service is still ready.
        """
        result = await self.check_all()
        ready = result["status"] != "unhealthy"
        return {"status": "healthy" if ready else "unhealthy", "checks": result["checks"]}
