"""Reconcile leaderboard entities with persisted user profiles."""
import logging
import math
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wagerboard.config import get_settings
from wagerboard.models.base import LinkageState
from wagerboard.models.user_profile import UserProfile
from wagerboard.schemas.leaderboard import LeaderboardEntity, RankedLeaderboard
from wagerboard.services.leaderboard_service import LeaderboardService, find_entity_in
from wagerboard.services.profile_store import ProfileStore
from wagerboard.utils.datetime_helpers import ensure_utc, utc_now
from wagerboard.utils.exceptions import (
    CachedFetchError,
    ProfileError,
    ProfileLinkError,
    ReconciliationConflictError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    (LinkageState.PLACEHOLDER, LinkageState.PENDING_LINK),
    (LinkageState.PENDING_LINK, LinkageState.LINKED),
    (LinkageState.PENDING_LINK, LinkageState.PLACEHOLDER),
    (LinkageState.LINKED, LinkageState.PLACEHOLDER),
}


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    total: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return None


def entity_fields(entity: LeaderboardEntity) -> dict[str, Any]:
    """Profile column values carried by a leaderboard entity."""
    wagered = entity.wagered
    return {
        "display_name": entity.name,
        "wager_today": wagered.today,
        "wager_this_week": wagered.this_week,
        "wager_this_month": wagered.this_month,
        "wager_all_time": wagered.all_time,
    }


def profile_differs(profile: UserProfile, entity: LeaderboardEntity) -> bool:
    """True when the entity's name or any wager value differs from the profile."""
    for name, value in entity_fields(entity).items():
        current = getattr(profile, name)
        if isinstance(value, float):
            if current is None or not math.isclose(current, value, rel_tol=1e-9, abs_tol=1e-9):
                return True
        elif current != value:
            return True
    return False


class ProfileReconciler:
    """Creates and refreshes profiles from leaderboard data without ever deleting."""

    def __init__(
        self,
        db: AsyncSession,
        leaderboard_service: LeaderboardService | None = None,
        max_insert_attempts: int | None = None,
    ):
        """Initialize the reconciler.

        Args:
            db: Database session owned by the caller
            leaderboard_service: Source of leaderboard data; without it lookups never hit upstream
            max_insert_attempts: Bound on the insert/re-read loop
        """
        self.db = db
        self.store = ProfileStore(db)
        self.leaderboard_service = leaderboard_service
        self.settings = get_settings()
        self.max_insert_attempts = max_insert_attempts or self.settings.profile_insert_max_attempts

    async def get_profile(self, internal_id: str | uuid.UUID) -> UserProfile:
        parsed = internal_id if isinstance(internal_id, uuid.UUID) else _parse_uuid(internal_id)
        profile = await self.store.find_by_internal_id(parsed) if parsed else None
        if profile is None:
            raise ProfileError("profile_not_found")
        return profile

    async def ensure_profile(self, profile_id: str) -> UserProfile:
        """
        Return the profile for an internal or external id, creating one if needed.

        Lookup order: internal UUID, external id, current leaderboard. When the
        id is unknown everywhere a placeholder profile is created for it.
        Concurrent callers with the same id always end up with the same row.

        Raises:
            ValueError: the id is empty
        """
        profile_id = str(profile_id).strip() if profile_id is not None else ""
        if not profile_id:
            raise ValueError("invalid_profile_id")

        internal_id = _parse_uuid(profile_id)
        if internal_id is not None:
            profile = await self.store.find_by_internal_id(internal_id)
            if profile is not None:
                return profile

        profile = await self.store.find_by_external_id(profile_id)
        if profile is not None:
            return await self._refresh_from_cache(profile)

        entity = await self._search_leaderboard(profile_id)
        if entity is not None:
            fields = entity_fields(entity)
            fields.update(linkage_state=LinkageState.LINKED.value, last_synced_at=utc_now())
            profile, created = await self._insert_or_fetch(entity.uid, fields)
            if created:
                logger.info(f"Created linked profile for {entity.uid} ({entity.name})")
            return profile

        profile, created = await self._insert_or_fetch(
            profile_id,
            {
                "display_name": f"User{profile_id}",
                "linkage_state": LinkageState.PLACEHOLDER.value,
            },
        )
        if created:
            logger.info(f"Created placeholder profile for {profile_id}")
        return profile

    async def _refresh_from_cache(self, profile: UserProfile) -> UserProfile:
        """Apply newer cached leaderboard data to a profile. Never fetches."""
        if self.leaderboard_service is None:
            return profile
        cached = self.leaderboard_service.peek_cached()
        entity = find_entity_in(cached, profile.external_id)
        if entity is None:
            return profile

        synced_at = ensure_utc(profile.last_synced_at)
        cached_at = ensure_utc(cached.metadata.last_updated)
        if synced_at is not None and synced_at >= cached_at:
            return profile
        if not profile_differs(profile, entity):
            return profile
        return await self.store.update_fields(profile, last_synced_at=utc_now(), **entity_fields(entity))

    async def _search_leaderboard(self, uid: str) -> Optional[LeaderboardEntity]:
        if self.leaderboard_service is None:
            return None
        try:
            return await self.leaderboard_service.find_entity(uid)
        except (UpstreamError, CachedFetchError) as e:
            logger.warning(f"Leaderboard lookup for {uid} failed, treating as not found: {e}")
            return None

    async def _insert_or_fetch(self, external_id: str, fields: dict[str, Any]) -> tuple[UserProfile, bool]:
        """Insert a profile for ``external_id`` or return the row that won the race.

        Returns:
            (profile, created)
        """
        for attempt in range(1, self.max_insert_attempts + 1):
            try:
                profile = await self.store.insert(external_id=external_id, **fields)
                return profile, True
            except IntegrityError:
                existing = await self.store.find_by_external_id(external_id)
                if existing is not None:
                    logger.info(f"Profile for {external_id} was created concurrently, using existing row")
                    return existing, False
                logger.warning(
                    f"Insert conflict for {external_id} without a readable row "
                    f"(attempt {attempt}/{self.max_insert_attempts})"
                )
        raise ReconciliationConflictError("profile_insert_conflict")

    async def sync_all(self, leaderboard: RankedLeaderboard) -> SyncResult:
        """
        Create or refresh a profile for every entity in the all-time bucket.

        Rows are only written when the name or a wager value changed. A failure
        on one entity is logged and counted, and the batch continues.
        """
        started = time.perf_counter()
        result = SyncResult()
        entries = leaderboard.data.all_time.data

        if leaderboard.status != "success":
            logger.warning("Skipping profile sync for a leaderboard in error state")
            return result

        existing = await self.store.bulk_scan_by_field("external_id", [e.uid for e in entries])
        for entry in entries:
            result.total += 1
            try:
                profile = existing.get(entry.uid)
                if profile is None:
                    fields = entity_fields(entry)
                    fields.update(linkage_state=LinkageState.LINKED.value, last_synced_at=utc_now())
                    profile, created = await self._insert_or_fetch(entry.uid, fields)
                    existing[entry.uid] = profile
                    if created:
                        result.created += 1
                        continue

                await self.store.reload_if_expired(profile)
                if profile_differs(profile, entry):
                    await self.store.update_fields(profile, last_synced_at=utc_now(), **entity_fields(entry))
                    result.updated += 1
                else:
                    result.unchanged += 1
            except Exception as e:
                await self.db.rollback()
                result.failed += 1
                logger.error(f"Failed to sync profile for {entry.uid}: {e}")

        result.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"Profile sync finished: {result.created} created, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.failed} failed in {result.duration_ms}ms"
        )
        return result

    def _check_transition(self, profile: UserProfile, source: LinkageState, target: LinkageState) -> None:
        if profile.state != source or (source, target) not in ALLOWED_TRANSITIONS:
            logger.warning(
                f"Rejected linkage transition {profile.state.value} -> {target.value} for {profile.internal_id}"
            )
            raise ProfileLinkError("invalid_transition")

    async def request_link(self, internal_id: str | uuid.UUID, external_id: str) -> UserProfile:
        """Ask to link a placeholder profile to a uid that is on the leaderboard."""
        profile = await self.get_profile(internal_id)
        self._check_transition(profile, LinkageState.PLACEHOLDER, LinkageState.PENDING_LINK)

        external_id = (external_id or "").strip()
        if not external_id:
            raise ValueError("invalid_external_id")

        owner = await self.store.find_by_external_id(external_id)
        if owner is not None and owner.internal_id != profile.internal_id:
            raise ProfileLinkError("external_id_taken")

        if await self._search_leaderboard(external_id) is None:
            raise ProfileLinkError("external_id_not_on_leaderboard")

        profile = await self.store.update_fields(
            profile,
            linkage_state=LinkageState.PENDING_LINK.value,
            pending_external_id=external_id,
        )
        logger.info(f"Link requested: {profile.internal_id} -> {external_id}")
        return profile

    async def approve_link(self, internal_id: str | uuid.UUID) -> UserProfile:
        profile = await self.get_profile(internal_id)
        self._check_transition(profile, LinkageState.PENDING_LINK, LinkageState.LINKED)

        external_id = profile.pending_external_id
        fields: dict[str, Any] = {
            "external_id": external_id,
            "pending_external_id": None,
            "linkage_state": LinkageState.LINKED.value,
        }
        cached = self.leaderboard_service.peek_cached() if self.leaderboard_service else None
        entity = find_entity_in(cached, external_id)
        if entity is not None:
            fields.update(entity_fields(entity))
            fields["last_synced_at"] = utc_now()

        try:
            profile = await self.store.update_fields(profile, **fields)
        except IntegrityError as exc:
            raise ProfileLinkError("external_id_taken") from exc
        logger.info(f"Link approved: {profile.internal_id} -> {external_id}")
        return profile

    async def reject_link(self, internal_id: str | uuid.UUID) -> UserProfile:
        profile = await self.get_profile(internal_id)
        self._check_transition(profile, LinkageState.PENDING_LINK, LinkageState.PLACEHOLDER)

        rejected = profile.pending_external_id
        profile = await self.store.update_fields(
            profile,
            linkage_state=LinkageState.PLACEHOLDER.value,
            pending_external_id=None,
        )
        logger.info(f"Link rejected: {profile.internal_id} -> {rejected}")
        return profile

    async def unlink(self, internal_id: str | uuid.UUID) -> UserProfile:
        profile = await self.get_profile(internal_id)
        self._check_transition(profile, LinkageState.LINKED, LinkageState.PLACEHOLDER)

        previous = profile.external_id
        profile = await self.store.update_fields(
            profile,
            linkage_state=LinkageState.PLACEHOLDER.value,
            external_id=None,
        )
        logger.info(f"Profile {profile.internal_id} unlinked from {previous}")
        return profile
