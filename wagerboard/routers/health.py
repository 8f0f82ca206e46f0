"""Health check endpoints."""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from wagerboard.database import engine
from wagerboard.config import get_settings
from wagerboard.dependencies import get_cache_service, get_upstream_client
from wagerboard.services.cache_service import CacheService
from wagerboard.services.upstream_client import UpstreamClient
from wagerboard.version import APP_VERSION
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "detail": "Database connection failed"},
        )

    return {"status": "ok", "database": "connected"}


@router.get("/status")
async def sync_status(
    client: UpstreamClient = Depends(get_upstream_client),
    cache: CacheService = Depends(get_cache_service),
):
    """
    Report version, upstream fetch state and cache statistics.

    Used by the operator dashboard to see whether leaderboard data is current.
    """
    settings = get_settings()
    age = client.last_fetch_age_seconds

    return {
        "version": APP_VERSION,
        "environment": settings.environment,
        "upstream": {
            "state": client.state.value,
            "has_token": client.has_api_token(),
            "last_fetch_age_seconds": round(age, 1) if age is not None else None,
            "last_error": client.last_error,
        },
        "cache": cache.get_stats(),
    }
