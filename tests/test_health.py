"""
Tests for health checks.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import text

from payout_engine.core.metrics_gateway import ViewFetchResult
from payout_engine.monitoring.health import HealthCheck, HealthCheckError


class StubGateway:
    def __init__(self, result: ViewFetchResult):
        self.result = result

    async def fetch_views(self, content_url: str) -> ViewFetchResult:
        return self.result


@pytest.mark.unit
class TestHealthCheck:
    """Test dependency probes."""

    @pytest.mark.asyncio
    async def test_database_healthy(self, engine):
        with patch("payout_engine.monitoring.health.get_engine", return_value=engine):
            result = await HealthCheck().check_database()

        assert result["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_database_missing_tables(self, engine):
        async with engine.begin() as conn:
            await conn.execute(text("DROP TABLE webhook_events"))

        with patch("payout_engine.monitoring.health.get_engine", return_value=engine):
            with pytest.raises(HealthCheckError) as exc_info:
                await HealthCheck().check_database()

        assert "webhook_events" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_redis_skipped_for_local_locks(self):
        result = await HealthCheck().check_redis()
        assert result["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_gateway_probe(self):
        ok = StubGateway(ViewFetchResult(url="u", ok=True, views=10, source="research_api"))
        broken = StubGateway(ViewFetchResult.failure("u", "Failed to fetch tiktok data"))

        assert (await HealthCheck(ok).check_metrics_gateway("u"))["views"] == 10
        with pytest.raises(HealthCheckError):
            await HealthCheck(broken).check_metrics_gateway("u")

    @pytest.mark.asyncio
    async def test_check_all_reports_unhealthy(self, engine):
        broken = StubGateway(ViewFetchResult.failure("u", "down"))

        with patch("payout_engine.monitoring.health.get_engine", return_value=engine):
            report = await HealthCheck(broken).check_all(include_gateway=True)

        assert report["status"] == "unhealthy"
        assert report["checks"]["database"]["status"] == "healthy"
        assert report["checks"]["metrics_gateway"]["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_liveness(self):
        assert (await HealthCheck().liveness())["status"] == "alive"
