"""FastAPI dependencies."""
from fastapi import Request

from wagerboard.services.cache_service import CacheService
from wagerboard.services.upstream_client import UpstreamClient


def get_upstream_client(request: Request) -> UpstreamClient:
    return request.app.state.upstream_client


def get_cache_service(request: Request) -> CacheService:
    return request.app.state.cache_service
