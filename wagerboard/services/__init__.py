"""Leaderboard sync services."""
from wagerboard.services.cache_service import CacheService, CacheRecord, CacheResult
from wagerboard.services.leaderboard_transformer import (
    Recognized,
    Unrecognized,
    aggregate_stats,
    build_leaderboard,
    extract_entities,
    find_user_rankings,
    match_shape,
    rank,
    top_performers,
)
from wagerboard.services.upstream_client import UpstreamClient, FetchState, compute_backoff_delay
from wagerboard.services.leaderboard_service import LeaderboardService
from wagerboard.services.profile_store import ProfileStore
from wagerboard.services.profile_reconciler import ProfileReconciler, SyncResult

__all__ = [
    "CacheService",
    "CacheRecord",
    "CacheResult",
    "Recognized",
    "Unrecognized",
    "aggregate_stats",
    "build_leaderboard",
    "extract_entities",
    "find_user_rankings",
    "match_shape",
    "rank",
    "top_performers",
    "UpstreamClient",
    "FetchState",
    "compute_backoff_delay",
    "LeaderboardService",
    "ProfileStore",
    "ProfileReconciler",
    "SyncResult",
]
