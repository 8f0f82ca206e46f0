"""Cached leaderboard built from the upstream affiliate API."""
import logging
from typing import Optional

from wagerboard.config import Settings, get_settings
from wagerboard.schemas.leaderboard import (
    LeaderboardEntity,
    LeaderboardEntry,
    RankedLeaderboard,
    StatsAggregation,
    UserRankings,
)
from wagerboard.services.cache_service import CacheService
from wagerboard.services.leaderboard_transformer import (
    aggregate_stats,
    build_leaderboard,
    find_user_rankings,
    top_performers,
)
from wagerboard.services.upstream_client import UpstreamClient

logger = logging.getLogger(__name__)

LEADERBOARD_NAMESPACE = "leaderboard"
LEADERBOARD_KEY = "affiliate_stats"


class LeaderboardService:
    """Fetches, ranks and caches the affiliate leaderboard."""

    def __init__(self, client: UpstreamClient, cache: CacheService, settings: Settings | None = None):
        self.client = client
        self.cache = cache
        self.settings = settings or get_settings()

    async def _fetch_and_rank(self) -> RankedLeaderboard:
        raw = await self.client.fetch_snapshot()
        return build_leaderboard(raw)

    async def get_leaderboard(self, force_refresh: bool = False) -> RankedLeaderboard:
        """Ranked leaderboard, served from cache while valid or stale-but-refreshing."""
        return await self.cache.with_cache(
            LEADERBOARD_KEY,
            self._fetch_and_rank,
            namespace=LEADERBOARD_NAMESPACE,
            ttl=self.settings.cache_default_ttl_seconds,
            error_ttl=self.settings.cache_error_ttl_seconds,
            stale_while_revalidate=self.settings.cache_stale_while_revalidate,
            force_refresh=force_refresh,
        )

    def peek_cached(self) -> Optional[RankedLeaderboard]:
        """Whatever leaderboard is cached, stale or not, without fetching."""
        result = self.cache.get(LEADERBOARD_KEY, namespace=LEADERBOARD_NAMESPACE, stale_while_revalidate=True)
        if not result.found or result.error is not None:
            return None
        return result.data

    def invalidate(self) -> None:
        self.cache.invalidate(LEADERBOARD_KEY, namespace=LEADERBOARD_NAMESPACE)

    async def find_entity(self, uid: str) -> Optional[LeaderboardEntity]:
        """Search every bucket of the current leaderboard for ``uid``."""
        leaderboard = await self.get_leaderboard()
        return find_entity_in(leaderboard, uid)

    async def get_aggregated_stats(self) -> StatsAggregation:
        return aggregate_stats(await self.get_leaderboard())

    async def get_top_performers(self, limit: int = 3) -> dict[str, list[LeaderboardEntry]]:
        return top_performers(await self.get_leaderboard(), limit)

    async def get_user_rankings(self, uid: str) -> UserRankings:
        return find_user_rankings(await self.get_leaderboard(), uid)


def find_entity_in(leaderboard: Optional[RankedLeaderboard], uid: str) -> Optional[LeaderboardEntity]:
    if leaderboard is None or not uid:
        return None
    for bucket in ("all_time", "monthly", "weekly", "today"):
        for entry in leaderboard.data.bucket(bucket).data:
            if entry.uid == uid:
                return LeaderboardEntity(uid=entry.uid, name=entry.name, wagered=entry.wagered)
    return None
