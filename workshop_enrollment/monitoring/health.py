"""
Dependency health for liveness and readiness probes.

An instance cannot admit anyone unless its store answers and Stripe can
open checkouts; Redis matters only when locks or webhook dedup live there.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from workshop_enrollment.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised by readiness when a dependency is unhealthy."""

    def __init__(self, message: str, checks: Dict[str, Any]):
        super().__init__(message)
        self.checks = checks


class HealthCheck:
    """Probes the store database, Redis (when configured) and Stripe."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Args:
            session_factory: Database session factory, None when the store is in memory
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        if self.session_factory is None:
            return {"status": "healthy", "service": "database", "message": "In-memory store"}
        async with self.session_factory() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        client = aioredis.from_url(self.settings.redis_url, socket_connect_timeout=2)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return {"status": "healthy", "service": "redis"}

    async def check_stripe(self) -> Dict[str, Any]:
        stripe.api_key = self.settings.stripe_secret_key
        # Smallest authenticated call available
        await asyncio.to_thread(stripe.Balance.retrieve)
        return {
            "status": "healthy",
            "service": "stripe",
            "test_mode": self.settings.is_test_mode,
        }

    async def _probe(
        self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            result = await check()
        except Exception as e:
            logger.error("health_check_failed", service=name, error=str(e))
            return {"status": "unhealthy", "service": name, "error": str(e)}
        result["latency_ms"] = round((time.perf_counter() - started) * 1000, 1)
        return result

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every configured probe concurrently.

        Returns:
            Dict[str, Any]: Overall status plus one entry per dependency
        """
        probes = {"database": self.check_database, "stripe": self.check_stripe}
        if self.settings.uses_redis:
            probes["redis"] = self.check_redis

        results = await asyncio.gather(
            *(self._probe(name, check) for name, check in probes.items())
        )
        checks = dict(zip(probes, results))
        healthy = all(r["status"] == "healthy" for r in results)
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; no dependency is touched."""
        return {"status": "alive"}

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe.

        Raises:
            HealthCheckError: If any configured dependency is unhealthy
        """
        result = await self.check_all()
        if result["status"] != "healthy":
            failed = sorted(k for k, v in result["checks"].items() if v["status"] != "healthy")
            raise HealthCheckError(
                f"Unhealthy dependencies: {', '.join(failed)}", result["checks"]
            )
        return result
