"""Pydantic schemas."""
from wagerboard.schemas.leaderboard import (
    BUCKET_FIELDS,
    LeaderboardBuckets,
    LeaderboardEntity,
    LeaderboardEntry,
    LeaderboardMetadata,
    RankedLeaderboard,
    StatsAggregation,
    TimeframeBucket,
    UserRankings,
    WagerSnapshot,
)

__all__ = [
    "BUCKET_FIELDS",
    "LeaderboardBuckets",
    "LeaderboardEntity",
    "LeaderboardEntry",
    "LeaderboardMetadata",
    "RankedLeaderboard",
    "StatsAggregation",
    "TimeframeBucket",
    "UserRankings",
    "WagerSnapshot",
]
