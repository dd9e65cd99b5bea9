"""
Health checks and connectivity diagnostics.

Checks:
- Database connectivity and schema presence
- Redis connectivity (when the redis lock backend is configured)
- Metrics gateway reachability for a sample content URL

Run as a script for a one-off diagnostic:
    python -m payout_engine.monitoring.health --url https://www.tiktok.com/@user/video/123
"""
import asyncio
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import inspect

from payout_engine.config import get_settings
from payout_engine.core.metrics_gateway import MetricsGateway, build_default_gateway
from payout_engine.database.connection import get_engine
from payout_engine.database.models import Base

logger = structlog.get_logger(__name__)

SAMPLE_CONTENT_URL = "https://www.tiktok.com/@tiktok/video/7106594312292453675"


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the engine's dependencies.

    The gateway check is opt-in for readiness probes since it calls a
    third-party API.
    """

    def __init__(self, gateway: Optional[MetricsGateway] = None) -> None:
        self.settings = get_settings()
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity and that every table exists.

        Raises:
            HealthCheckError: If the database is unreachable or tables are missing
        """
        try:
            async with get_engine().connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        missing = sorted(set(Base.metadata.tables) - set(tables))
        if missing:
            logger.error("database_schema_incomplete", missing_tables=missing)
            raise HealthCheckError(f"Missing tables: {', '.join(missing)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
            "tables": len(Base.metadata.tables),
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.settings.lock_backend != "redis":
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Local lock backend configured",
            }

        redis_client: Optional[aioredis.Redis] = None
        try:
            redis_client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            await redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_metrics_gateway(self, content_url: str = SAMPLE_CONTENT_URL) -> Dict[str, Any]:
        """
        Fetch one content URL through the gateway.

        Raises:
            HealthCheckError: If the fetch fails
        """
        gateway = self.gateway or build_default_gateway()
        result = await gateway.fetch_views(content_url)
        if not result.ok:
            logger.error("metrics_gateway_health_check_failed", url=content_url, error=result.error)
            raise HealthCheckError(f"Metrics gateway check failed: {result.error}")

        return {
            "status": "healthy",
            "service": "metrics_gateway",
            "source": result.source,
            "views": result.views,
            "title": result.title,
        }

    async def check_all(self, include_gateway: bool = False) -> Dict[str, Any]:
        checks: Dict[str, Any] = {}
        probes = {"database": self.check_database, "redis": self.check_redis}
        if include_gateway:
            probes["metrics_gateway"] = self.check_metrics_gateway

        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}

        all_healthy = all(check["status"] != "unhealthy" for check in checks.values())
        return {"status": "healthy" if all_healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; no dependency checks."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()


async def run_diagnostics(content_url: str) -> Dict[str, Any]:
    health = HealthCheck()
    checks = await health.check_all(include_gateway=False)
    try:
        checks["checks"]["metrics_gateway"] = await health.check_metrics_gateway(content_url)
    except HealthCheckError as e:
        checks["checks"]["metrics_gateway"] = {
            "status": "unhealthy",
            "service": "metrics_gateway",
            "error": str(e),
        }
        checks["status"] = "unhealthy"
    return checks


if __name__ == "__main__":
    import argparse

    from payout_engine.monitoring.logging import setup_logging

    parser = argparse.ArgumentParser(description="Payout engine diagnostics")
    parser.add_argument("--url", default=SAMPLE_CONTENT_URL, help="Content URL to fetch")
    args = parser.parse_args()

    setup_logging(process="diagnostics")
    report = asyncio.run(run_diagnostics(args.url))
    print(json.dumps(report, indent=2, default=str))
