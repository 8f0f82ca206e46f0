"""Tests for the health and status endpoints."""
import pytest
from httpx import AsyncClient, ASGITransport

from wagerboard.config import get_settings
from wagerboard.services.cache_service import CacheService
from wagerboard.services.upstream_client import FetchState, UpstreamClient


@pytest.fixture
async def test_app(test_engine):
    from wagerboard.main import app

    app.state.upstream_client = UpstreamClient(get_settings())
    app.state.cache_service = CacheService()
    yield app
    await app.state.upstream_client.close()


@pytest.mark.asyncio
async def test_health_reports_database(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": "connected"}


@pytest.mark.asyncio
async def test_status_reports_upstream_and_cache(test_app):
    test_app.state.cache_service.set("affiliate_stats", {"status": "success"}, namespace="leaderboard")

    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        response = await client.get("/status")

    body = response.json()
    assert response.status_code == 200
    assert body["upstream"]["state"] == FetchState.IDLE.value
    assert body["upstream"]["has_token"] is True
    assert body["upstream"]["last_fetch_age_seconds"] is None
    assert body["cache"]["keys"] == 1
