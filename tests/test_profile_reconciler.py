"""Tests for profile reconciliation and the link workflow."""
import asyncio
import copy
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from wagerboard.config import get_settings
from wagerboard.models import LinkageState, UserProfile
from wagerboard.services.cache_service import CacheService
from wagerboard.services.leaderboard_service import LeaderboardService
from wagerboard.services.leaderboard_transformer import build_leaderboard
from wagerboard.services.profile_reconciler import ProfileReconciler
from wagerboard.utils.exceptions import (
    ProfileError,
    ProfileLinkError,
    ReconciliationConflictError,
    UpstreamUnavailable,
)


@pytest.fixture
def upstream(upstream_payload):
    client = MagicMock()
    client.fetch_snapshot = AsyncMock(return_value=upstream_payload)
    return client


@pytest.fixture
def leaderboard_service(upstream):
    return LeaderboardService(upstream, CacheService(), get_settings())


@pytest.fixture
def reconciler(db_session, leaderboard_service):
    return ProfileReconciler(db_session, leaderboard_service)


async def count_profiles(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(UserProfile))
        return result.scalar_one()


class TestEnsureProfile:
    """Test lookup-or-create."""

    @pytest.mark.asyncio
    async def test_blank_id_rejected(self, reconciler):
        with pytest.raises(ValueError, match="invalid_profile_id"):
            await reconciler.ensure_profile("   ")

    @pytest.mark.asyncio
    async def test_creates_linked_profile_from_leaderboard(self, reconciler):
        profile = await reconciler.ensure_profile("u3")

        assert profile.external_id == "u3"
        assert profile.display_name == "carol"
        assert profile.state == LinkageState.LINKED
        assert profile.wager_this_month == 900
        assert profile.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_unknown_id_creates_placeholder(self, reconciler):
        profile = await reconciler.ensure_profile("9999")

        assert profile.external_id == "9999"
        assert profile.display_name == "User9999"
        assert profile.state == LinkageState.PLACEHOLDER
        assert profile.wager_all_time == 0

    @pytest.mark.asyncio
    async def test_upstream_failure_falls_through_to_placeholder(self, db_session, upstream):
        upstream.fetch_snapshot = AsyncMock(side_effect=UpstreamUnavailable("down"))
        service = LeaderboardService(upstream, CacheService(), get_settings())

        profile = await ProfileReconciler(db_session, service).ensure_profile("u1")

        assert profile.state == LinkageState.PLACEHOLDER
        assert profile.display_name == "Useru1"

    @pytest.mark.asyncio
    async def test_cached_upstream_error_falls_through_to_placeholder(self, db_session, upstream):
        upstream.fetch_snapshot = AsyncMock(side_effect=UpstreamUnavailable("down"))
        service = LeaderboardService(upstream, CacheService(), get_settings())
        reconciler = ProfileReconciler(db_session, service)

        await reconciler.ensure_profile("a1")
        profile = await reconciler.ensure_profile("a2")

        assert profile.state == LinkageState.PLACEHOLDER
        upstream.fetch_snapshot.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_leaderboard_service(self, db_session):
        profile = await ProfileReconciler(db_session).ensure_profile("u1")

        assert profile.state == LinkageState.PLACEHOLDER

    @pytest.mark.asyncio
    async def test_lookup_by_internal_id(self, reconciler):
        created = await reconciler.ensure_profile("u1")

        found = await reconciler.ensure_profile(str(created.internal_id))

        assert found.internal_id == created.internal_id

    @pytest.mark.asyncio
    async def test_repeat_calls_return_same_row(self, reconciler, session_factory):
        first = await reconciler.ensure_profile("u1")
        second = await reconciler.ensure_profile("u1")

        assert first.internal_id == second.internal_id
        assert await count_profiles(session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_one_row(self, session_factory, leaderboard_service):
        async with session_factory() as first_session, session_factory() as second_session:
            first, second = await asyncio.gather(
                ProfileReconciler(first_session, leaderboard_service).ensure_profile("u2"),
                ProfileReconciler(second_session, leaderboard_service).ensure_profile("u2"),
            )

        assert first.internal_id == second.internal_id
        assert await count_profiles(session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_placeholder_calls_create_one_row(self, session_factory):
        async with session_factory() as first_session, session_factory() as second_session:
            first, second = await asyncio.gather(
                ProfileReconciler(first_session).ensure_profile("ghost"),
                ProfileReconciler(second_session).ensure_profile("ghost"),
            )

        assert first.internal_id == second.internal_id
        assert await count_profiles(session_factory) == 1

    @pytest.mark.asyncio
    async def test_existing_profile_refreshed_from_newer_cache(
        self, reconciler, leaderboard_service, upstream, upstream_payload
    ):
        await reconciler.ensure_profile("u1")

        updated = copy.deepcopy(upstream_payload)
        updated["data"]["all_time"]["data"][0]["wagered"]["all_time"] = 5000
        upstream.fetch_snapshot = AsyncMock(return_value=updated)
        await leaderboard_service.get_leaderboard(force_refresh=True)
        upstream.fetch_snapshot.reset_mock()

        profile = await reconciler.ensure_profile("u1")

        assert profile.wager_all_time == 5000
        upstream.fetch_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insert_conflict_without_row_raises(self, db_session):
        reconciler = ProfileReconciler(db_session, max_insert_attempts=2)
        reconciler.store.insert = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("UNIQUE")))
        reconciler.store.find_by_external_id = AsyncMock(return_value=None)

        with pytest.raises(ReconciliationConflictError):
            await reconciler._insert_or_fetch("u1", {"display_name": "x"})
        assert reconciler.store.insert.await_count == 2


class TestSyncAll:
    """Test batch reconciliation."""

    @pytest.mark.asyncio
    async def test_first_sync_creates_everyone(self, reconciler, upstream_payload, session_factory):
        result = await reconciler.sync_all(build_leaderboard(upstream_payload))

        assert (result.created, result.updated, result.unchanged, result.failed) == (3, 0, 0, 0)
        assert result.total == 3
        assert await count_profiles(session_factory) == 3

    @pytest.mark.asyncio
    async def test_second_sync_is_a_no_op(self, reconciler, upstream_payload):
        board = build_leaderboard(upstream_payload)
        await reconciler.sync_all(board)

        result = await reconciler.sync_all(board)

        assert (result.created, result.updated, result.unchanged) == (0, 0, 3)

    @pytest.mark.asyncio
    async def test_changed_values_are_updated(self, reconciler, upstream_payload):
        await reconciler.sync_all(build_leaderboard(upstream_payload))
        changed = copy.deepcopy(upstream_payload)
        changed["data"]["all_time"]["data"][1]["name"] = "robert"

        result = await reconciler.sync_all(build_leaderboard(changed))

        assert (result.updated, result.unchanged) == (1, 2)
        profile = await reconciler.store.find_by_external_id("u2")
        assert profile.display_name == "robert"

    @pytest.mark.asyncio
    async def test_profiles_missing_from_leaderboard_are_kept(self, reconciler, row_factory, session_factory):
        await reconciler.ensure_profile("retired")

        await reconciler.sync_all(build_leaderboard([row_factory("u1", "alice", all_time=1)]))

        assert await count_profiles(session_factory) == 2

    @pytest.mark.asyncio
    async def test_error_leaderboard_is_skipped(self, reconciler, session_factory):
        result = await reconciler.sync_all(build_leaderboard({"raw_text": "x", "parse_error": True}))

        assert result.total == 0
        assert await count_profiles(session_factory) == 0

    @pytest.mark.asyncio
    async def test_single_failure_does_not_stop_batch(self, reconciler, upstream_payload):
        original_insert = reconciler.store.insert

        async def flaky_insert(**fields):
            if fields["external_id"] == "u2":
                raise RuntimeError("disk full")
            return await original_insert(**fields)

        reconciler.store.insert = flaky_insert

        result = await reconciler.sync_all(build_leaderboard(upstream_payload))

        assert (result.created, result.failed) == (2, 1)


class TestLinkWorkflow:
    """Test the placeholder -> pending-link -> linked state machine."""

    @pytest.fixture
    async def placeholder(self, reconciler):
        return await reconciler.ensure_profile("local-42")

    @pytest.mark.asyncio
    async def test_request_and_approve(self, reconciler, placeholder):
        pending = await reconciler.request_link(placeholder.internal_id, "u2")
        assert pending.state == LinkageState.PENDING_LINK
        assert pending.pending_external_id == "u2"

        linked = await reconciler.approve_link(placeholder.internal_id)

        assert linked.state == LinkageState.LINKED
        assert linked.external_id == "u2"
        assert linked.pending_external_id is None
        assert linked.display_name == "bob"
        assert linked.wager_all_time == 1000

    @pytest.mark.asyncio
    async def test_reject_returns_to_placeholder(self, reconciler, placeholder):
        await reconciler.request_link(placeholder.internal_id, "u2")

        rejected = await reconciler.reject_link(str(placeholder.internal_id))

        assert rejected.state == LinkageState.PLACEHOLDER
        assert rejected.pending_external_id is None
        assert rejected.external_id == "local-42"

    @pytest.mark.asyncio
    async def test_unlink_clears_external_id(self, reconciler, placeholder):
        await reconciler.request_link(placeholder.internal_id, "u2")
        await reconciler.approve_link(placeholder.internal_id)

        unlinked = await reconciler.unlink(placeholder.internal_id)

        assert unlinked.state == LinkageState.PLACEHOLDER
        assert unlinked.external_id is None

    @pytest.mark.asyncio
    async def test_request_requires_leaderboard_presence(self, reconciler, placeholder):
        with pytest.raises(ProfileLinkError, match="external_id_not_on_leaderboard"):
            await reconciler.request_link(placeholder.internal_id, "nobody")

    @pytest.mark.asyncio
    async def test_request_rejects_id_owned_by_another_profile(self, reconciler, placeholder):
        await reconciler.ensure_profile("u1")

        with pytest.raises(ProfileLinkError, match="external_id_taken"):
            await reconciler.request_link(placeholder.internal_id, "u1")

    @pytest.mark.asyncio
    async def test_approve_loses_race_for_external_id(self, reconciler, placeholder):
        other = await reconciler.ensure_profile("local-43")
        await reconciler.request_link(placeholder.internal_id, "u3")
        await reconciler.request_link(other.internal_id, "u3")
        await reconciler.approve_link(placeholder.internal_id)

        with pytest.raises(ProfileLinkError, match="external_id_taken"):
            await reconciler.approve_link(other.internal_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["approve_link", "reject_link", "unlink"])
    async def test_invalid_transitions_from_placeholder(self, reconciler, placeholder, action):
        with pytest.raises(ProfileLinkError, match="invalid_transition"):
            await getattr(reconciler, action)(placeholder.internal_id)

    @pytest.mark.asyncio
    async def test_linked_profile_cannot_request_again(self, reconciler):
        linked = await reconciler.ensure_profile("u1")

        with pytest.raises(ProfileLinkError, match="invalid_transition"):
            await reconciler.request_link(linked.internal_id, "u2")

    @pytest.mark.asyncio
    async def test_unknown_profile(self, reconciler):
        with pytest.raises(ProfileError, match="profile_not_found"):
            await reconciler.approve_link(uuid.uuid4())
        with pytest.raises(ProfileError, match="profile_not_found"):
            await reconciler.unlink("not-a-uuid")
