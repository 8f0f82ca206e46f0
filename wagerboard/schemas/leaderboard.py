"""Leaderboard schemas shared by the transformer, cache and reconciler."""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from wagerboard.utils.datetime_helpers import isoformat_utc, utc_now

TimeframeField = Literal["today", "this_week", "this_month", "all_time"]

# Output bucket name -> wagered field it ranks by
BUCKET_FIELDS: dict[str, TimeframeField] = {
    "today": "today",
    "weekly": "this_week",
    "monthly": "this_month",
    "all_time": "all_time",
}


class WagerSnapshot(BaseModel):
    """Wagered totals per timeframe. Missing or unusable values read as zero."""

    model_config = ConfigDict(extra="ignore")

    today: float = 0.0
    this_week: float = 0.0
    this_month: float = 0.0
    all_time: float = 0.0

    @field_validator("today", "this_week", "this_month", "all_time", mode="before")
    @classmethod
    def coerce_amount(cls, value):
        if value is None or isinstance(value, bool):
            return 0.0
        try:
            amount = float(value)
        except (TypeError, ValueError):
            return 0.0
        if amount != amount or amount < 0:  # NaN or negative
            return 0.0
        return amount

    def value_for(self, field: TimeframeField) -> float:
        return getattr(self, field)


class LeaderboardEntity(BaseModel):
    """One upstream user with their wager totals."""

    model_config = ConfigDict(extra="ignore")

    uid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    wagered: WagerSnapshot = Field(default_factory=WagerSnapshot)

    @field_validator("uid", "name", mode="before")
    @classmethod
    def stringify(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("wagered", mode="before")
    @classmethod
    def default_wagered(cls, value):
        if not isinstance(value, dict) and not isinstance(value, WagerSnapshot):
            return {}
        return value


class LeaderboardEntry(LeaderboardEntity):
    """Entity placed in a ranked bucket."""

    rank: int = Field(ge=1)


class TimeframeBucket(BaseModel):
    data: list[LeaderboardEntry] = Field(default_factory=list)


class LeaderboardBuckets(BaseModel):
    today: TimeframeBucket = Field(default_factory=TimeframeBucket)
    weekly: TimeframeBucket = Field(default_factory=TimeframeBucket)
    monthly: TimeframeBucket = Field(default_factory=TimeframeBucket)
    all_time: TimeframeBucket = Field(default_factory=TimeframeBucket)

    def bucket(self, name: str) -> TimeframeBucket:
        return getattr(self, name)


class LeaderboardMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_users: int = Field(default=0, ge=0, alias="totalUsers")
    last_updated: datetime = Field(default_factory=utc_now, alias="lastUpdated")

    @field_serializer("last_updated")
    def serialize_last_updated(self, value: datetime) -> str:
        return isoformat_utc(value)


class RankedLeaderboard(BaseModel):
    """Ranked leaderboard across the four timeframes."""

    status: Literal["success", "error"] = "success"
    metadata: LeaderboardMetadata = Field(default_factory=LeaderboardMetadata)
    data: LeaderboardBuckets = Field(default_factory=LeaderboardBuckets)

    def to_payload(self) -> dict:
        """Wire representation served to clients."""
        return self.model_dump(by_alias=True, mode="json")


class StatsAggregation(BaseModel):
    """Totals across unique users in a leaderboard."""

    daily_total: float = 0.0
    weekly_total: float = 0.0
    monthly_total: float = 0.0
    all_time_total: float = 0.0
    user_count: int = 0
    average_wager: float = 0.0
    top_wager: float = 0.0


class UserRankings(BaseModel):
    """Rank of a single uid in every bucket, ``None`` where absent."""

    uid: str
    today: Optional[int] = None
    weekly: Optional[int] = None
    monthly: Optional[int] = None
    all_time: Optional[int] = None
