"""
Tests for ProfileService (haven/services/profiles.py).

Tests cover:
- Profile creation defaults, encryption and duplicates
- Privacy level and detail updates
- Anonymous and missing principals
- Account deletion: owned records erased, counters given back, other
  users untouched, provider account removed, context closed
"""

from __future__ import annotations

import pytest

from haven.core.identity import AuthSession, InMemorySessionProvider
from haven.core.session import SessionManager, SessionState
from haven.lib import errors
from haven.services.profiles import ProfileService


async def _group(store, max_members=10):
    return await store.insert(
        "support_groups", {"name": "Evening circle", "category": "anxiety", "max_members": max_members}
    )


class TestCreateProfile:
    @pytest.mark.asyncio
    async def test_defaults(self, profile_service, auth_ctx):
        result = await profile_service.create_profile(auth_ctx)

        assert result.ok
        assert result.data.user_id == "user-1"
        assert result.data.privacy_level == "email"
        assert result.data.data_retention_days == 730
        assert result.data.display_name is None

    @pytest.mark.asyncio
    async def test_sensitive_fields_encrypted(self, profile_service, auth_ctx, store):
        result = await profile_service.create_profile(
            auth_ctx,
            {"privacy_level": "enhanced", "display_name": "Sam", "emergency_contact": "Alex 555-0100"},
        )

        assert result.data.display_name == "Sam"
        assert result.data.emergency_contact == "Alex 555-0100"
        [row] = await store.select("profiles")
        assert row["privacy_level"] == "enhanced"
        assert "Sam" not in row["encrypted_display_name"]
        assert "555" not in row["encrypted_emergency_contact"]

    @pytest.mark.asyncio
    async def test_second_profile_rejected(self, profile_service, auth_ctx):
        await profile_service.create_profile(auth_ctx)
        result = await profile_service.create_profile(auth_ctx, {"privacy_level": "enhanced"})
        assert result.error_code == errors.ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_invalid_privacy_level(self, profile_service, auth_ctx):
        result = await profile_service.create_profile(auth_ctx, {"privacy_level": "public"})
        assert result.error_code == errors.VALIDATION_ERROR
        assert result.error["details"]["fields"] == ["privacy_level"]

    @pytest.mark.asyncio
    async def test_anonymous_has_no_profile(self, profile_service, anon_ctx):
        result = await profile_service.create_profile(anon_ctx)
        assert result.error_code == errors.INVALID_TRANSITION
        assert (await profile_service.get_profile(anon_ctx)).data is None

    @pytest.mark.asyncio
    async def test_without_principal(self, profile_service):
        assert (await profile_service.create_profile(None)).error_code == errors.NO_ACTIVE_PRINCIPAL
        assert (await profile_service.get_profile(None)).data is None


class TestUpdateProfile:
    @pytest.mark.asyncio
    async def test_update_privacy_level(self, profile_service, auth_ctx):
        await profile_service.create_profile(auth_ctx)

        result = await profile_service.update_privacy_level(auth_ctx, "enhanced")

        assert result.data.privacy_level == "enhanced"
        assert (await profile_service.get_profile(auth_ctx)).data.privacy_level == "enhanced"

    @pytest.mark.asyncio
    async def test_update_privacy_level_without_profile(self, profile_service, auth_ctx):
        result = await profile_service.update_privacy_level(auth_ctx, "anonymous")
        assert result.error_code == errors.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_privacy_level_rejects_unknown(self, profile_service, auth_ctx):
        await profile_service.create_profile(auth_ctx)
        result = await profile_service.update_privacy_level(auth_ctx, "public")
        assert result.error_code == errors.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, profile_service, auth_ctx):
        await profile_service.create_profile(auth_ctx, {"display_name": "Sam", "emergency_contact": "Alex"})

        result = await profile_service.update_profile(auth_ctx, {"display_name": "Sammy"})

        assert result.data.display_name == "Sammy"
        assert result.data.emergency_contact == "Alex"

    @pytest.mark.asyncio
    async def test_blank_clears_field(self, profile_service, auth_ctx):
        await profile_service.create_profile(auth_ctx, {"display_name": "Sam"})
        result = await profile_service.update_profile(auth_ctx, {"display_name": "", "data_retention_days": 365})
        assert result.data.display_name is None
        assert result.data.data_retention_days == 365

    @pytest.mark.asyncio
    async def test_profiles_are_per_user(self, profile_service, auth_ctx, other_ctx):
        await profile_service.create_profile(auth_ctx)
        assert (await profile_service.get_profile(other_ctx)).data is None


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_erases_owned_records(
        self, profile_service, mood_service, coping_service, auth_ctx, other_ctx, store
    ):
        await profile_service.create_profile(auth_ctx)
        await mood_service.create_entry(auth_ctx, {"mood_score": 4, "notes": "mine"})
        await mood_service.create_entry(other_ctx, {"mood_score": 7, "notes": "theirs"})
        await coping_service.save_safety_plan(auth_ctx, {"warning_signs": "late nights"})

        result = await profile_service.delete_account(auth_ctx)

        assert result.ok
        assert result.data.tables["mood_entries"] == 1
        assert result.data.tables["mood_streaks"] == 1
        assert result.data.tables["safety_plans"] == 1
        assert result.data.tables["profiles"] == 1
        [remaining] = await store.select("mood_entries")
        assert remaining["user_id"] == "user-2"
        assert await store.select("profiles") == []

    @pytest.mark.asyncio
    async def test_seeker_match_erased_and_slot_released(
        self, profile_service, peer_service, auth_ctx, other_ctx, store
    ):
        await peer_service.become_supporter(other_ctx, {})
        match = (await peer_service.find_peer_supporter(auth_ctx, {"reason": "rough week"})).data
        await peer_service.send_message(auth_ctx, match.id, "hello")
        await peer_service.send_message(other_ctx, match.id, "hi")

        result = await profile_service.delete_account(auth_ctx)

        assert result.data.tables["peer_messages"] == 2
        assert result.data.tables["peer_matches"] == 1
        assert await store.select("peer_messages") == []
        supporter = (await peer_service.get_supporter_profile(other_ctx)).data
        assert supporter.current_matches == 0

    @pytest.mark.asyncio
    async def test_supporter_side_erased(self, profile_service, peer_service, auth_ctx, other_ctx, store):
        await peer_service.become_supporter(auth_ctx, {})
        await peer_service.find_peer_supporter(other_ctx, {})

        await profile_service.delete_account(auth_ctx)

        assert (await peer_service.list_my_matches(other_ctx)).data == []
        assert await store.select("peer_supporters") == []

    @pytest.mark.asyncio
    async def test_group_seat_given_back(self, profile_service, peer_service, auth_ctx, other_ctx, store):
        group = await _group(store)
        await peer_service.join_support_group(auth_ctx, group["id"])
        await peer_service.join_support_group(other_ctx, group["id"])
        await peer_service.send_group_message(auth_ctx, group["id"], "bye")

        await profile_service.delete_account(auth_ctx)

        [row] = await store.select("support_groups")
        assert row["current_members"] == 1
        [membership] = await store.select("group_memberships")
        assert membership["user_id"] == "user-2"
        assert await store.select("group_messages") == []

    @pytest.mark.asyncio
    async def test_closes_context_and_removes_provider_account(self, profile_service, provider, auth_ctx):
        await profile_service.create_profile(auth_ctx)

        await profile_service.delete_account(auth_ctx)

        assert provider.deleted_user_ids == ["user-1"]
        assert not auth_ctx.is_active
        assert (await profile_service.create_profile(auth_ctx)).error_code == errors.KEY_NOT_INITIALIZED

    @pytest.mark.asyncio
    async def test_session_manager_signs_out(self, store, storage, settings):
        provider = InMemorySessionProvider(AuthSession(user_id="user-7", access_token="tok-7"))
        manager = SessionManager(provider, storage, settings=settings)
        ctx = await manager.initialize()
        service = ProfileService(store, provider=provider)
        await service.create_profile(ctx)

        result = await service.delete_account(manager.context)

        assert result.ok
        assert manager.state == SessionState.SIGNED_OUT
        assert manager.context is None
        assert await provider.get_session() is None

    @pytest.mark.asyncio
    async def test_anonymous_rejected(self, profile_service, mood_service, anon_ctx, store):
        await mood_service.create_entry(anon_ctx, {"mood_score": 5})

        result = await profile_service.delete_account(anon_ctx)

        assert result.error_code == errors.INVALID_TRANSITION
        assert len(await store.select("mood_entries")) == 1
        assert anon_ctx.is_active

    @pytest.mark.asyncio
    async def test_without_principal(self, profile_service):
        assert (await profile_service.delete_account(None)).error_code == errors.NO_ACTIVE_PRINCIPAL
