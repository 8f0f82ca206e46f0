"""Persistence access for user profiles."""
import logging
import uuid
from typing import Any, Iterable

from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wagerboard.models.user_profile import UserProfile
from wagerboard.utils.datetime_helpers import utc_now

logger = logging.getLogger(__name__)

SCANNABLE_FIELDS = {"external_id", "pending_external_id", "display_name"}


class ProfileStore:
    """Thin query layer over ``user_profiles``. Every write commits."""

    BULK_CHUNK_SIZE = 500

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_internal_id(self, internal_id: uuid.UUID) -> UserProfile | None:
        stmt = select(UserProfile).where(UserProfile.internal_id == internal_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_by_external_id(self, external_id: str) -> UserProfile | None:
        stmt = select(UserProfile).where(UserProfile.external_id == external_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def insert(self, **fields: Any) -> UserProfile:
        """Insert a profile and commit.

        Raises:
            IntegrityError: a uniqueness constraint was hit; the session is rolled back
        """
        profile = UserProfile(**fields)
        self.db.add(profile)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise
        await self.db.refresh(profile)
        return profile

    async def update_fields(self, profile: UserProfile, **fields: Any) -> UserProfile:
        """Assign fields, bump ``updated_at`` and commit.

        Raises:
            IntegrityError: a uniqueness constraint was hit; the session is rolled back
        """
        for name, value in fields.items():
            setattr(profile, name, value)
        profile.updated_at = utc_now()
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise
        await self.db.refresh(profile)
        return profile

    async def reload_if_expired(self, profile: UserProfile) -> UserProfile:
        """Reload a profile whose attributes were expired by a rollback."""
        if inspect(profile).expired_attributes:
            await self.db.refresh(profile)
        return profile

    async def bulk_scan_by_field(self, field_name: str, values: Iterable[str]) -> dict[str, UserProfile]:
        """Map each matching value of ``field_name`` to its profile, querying in chunks."""
        if field_name not in SCANNABLE_FIELDS:
            raise ValueError(f"unsupported_scan_field: {field_name}")

        column = getattr(UserProfile, field_name)
        unique_values = list(dict.fromkeys(v for v in values if v))
        found: dict[str, UserProfile] = {}

        for start in range(0, len(unique_values), self.BULK_CHUNK_SIZE):
            chunk = unique_values[start:start + self.BULK_CHUNK_SIZE]
            result = await self.db.execute(select(UserProfile).where(column.in_(chunk)))
            for profile in result.scalars().all():
                found[getattr(profile, field_name)] = profile

        logger.debug(f"Bulk scan on {field_name} matched {len(found)}/{len(unique_values)} values")
        return found
