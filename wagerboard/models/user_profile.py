"""Persisted user profile reconciled against the affiliate leaderboard."""
from sqlalchemy import (
    Column,
    String,
    Float,
    DateTime,
    Index,
)
import uuid
from datetime import datetime, UTC
from wagerboard.database import Base
from wagerboard.models.base import get_uuid_column, LinkageState
from wagerboard.schemas.leaderboard import WagerSnapshot


class UserProfile(Base):
    """Profile row keyed by an internal UUID with an optional upstream uid."""

    __tablename__ = "user_profiles"

    internal_id = get_uuid_column(primary_key=True, default=uuid.uuid4)
    external_id = Column(String(64), unique=True, nullable=True)
    pending_external_id = Column(String(64), nullable=True)
    display_name = Column(String(120), nullable=False)

    wager_today = Column(Float, default=0.0, nullable=False)
    wager_this_week = Column(Float, default=0.0, nullable=False)
    wager_this_month = Column(Float, default=0.0, nullable=False)
    wager_all_time = Column(Float, default=0.0, nullable=False)

    linkage_state = Column(String(20), default=LinkageState.PLACEHOLDER.value, nullable=False)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_user_profiles_display_name", "display_name"),
    )

    @property
    def wager_snapshot(self) -> WagerSnapshot:
        return WagerSnapshot(
            today=self.wager_today or 0.0,
            this_week=self.wager_this_week or 0.0,
            this_month=self.wager_this_month or 0.0,
            all_time=self.wager_all_time or 0.0,
        )

    @property
    def state(self) -> LinkageState:
        return LinkageState(self.linkage_state)

    def __repr__(self):
        return (f"<UserProfile(internal_id={self.internal_id}, external_id={self.external_id}, "
                f"display_name={self.display_name}, linkage_state={self.linkage_state})>")
