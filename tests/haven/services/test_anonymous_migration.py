"""
Tests for the anonymous -> authenticated migration (haven/services/migration.py).
"""

from __future__ import annotations

import pytest

from haven.core.identity import AuthSession
from haven.core.session import SessionManager, SessionState
from haven.core.store import Query
from haven.lib.encryption import FieldCipher
from haven.lib.exceptions import DecryptionFailed, InvalidTransition
from haven.services.migration import AnonymousDataMigrator, rekey_row


@pytest.fixture()
def migrator(store) -> AnonymousDataMigrator:
    return AnonymousDataMigrator(store)


class TestRekeyRow:
    def test_rekeys_every_encrypted_column(self, auth_ctx, anon_ctx):
        old, new = anon_ctx.keys.current_key, auth_ctx.keys.current_key
        row = {
            "encrypted_notes": FieldCipher.encrypt_with(old, "note"),
            "encrypted_triggers": None,
            "encrypted_gratitude": FieldCipher.encrypt_with(old, "sun"),
        }

        changes = rekey_row("mood_entries", row, old, new)

        assert set(changes) == {"encrypted_notes", "encrypted_gratitude"}
        assert FieldCipher.decrypt_with(new, changes["encrypted_notes"]) == "note"

    def test_wrong_key_raises(self, auth_ctx, anon_ctx, other_ctx):
        row = {"encrypted_notes": FieldCipher.encrypt_with(other_ctx.keys.current_key, "note")}
        with pytest.raises(DecryptionFailed):
            rekey_row("mood_entries", row, anon_ctx.keys.current_key, auth_ctx.keys.current_key)


class TestMigrate:
    @pytest.mark.asyncio
    async def test_moves_and_rekeys_owned_rows(self, migrator, mood_service, coping_service, anon_ctx, auth_ctx):
        await mood_service.create_entry(anon_ctx, {"mood_score": 4, "notes": "first", "triggers": ["work"]})
        await mood_service.create_entry(anon_ctx, {"mood_score": 6, "gratitude": "friends"})
        await coping_service.save_safety_plan(anon_ctx, {"reasons_to_live": "my sister"})

        report = await migrator.migrate(anon_ctx, auth_ctx)

        assert report.counts() == {"mood_entries": 2, "mood_streaks": 1, "safety_plans": 1}
        assert report.unreadable == 0 and report.skipped == 0

        entries = (await mood_service.list_entries(auth_ctx)).data
        assert [e.gratitude for e in entries] == ["friends", None]
        assert entries[1].notes == "first"
        assert entries[1].triggers == ["work"]
        assert entries[1].user_id == "user-1" and entries[1].anonymous_id is None
        assert (await coping_service.get_safety_plan(auth_ctx)).data.reasons_to_live == "my sister"
        assert (await mood_service.get_streak(auth_ctx)).data.total_check_ins == 2

        assert (await mood_service.list_entries(anon_ctx)).data == []

    @pytest.mark.asyncio
    async def test_unreadable_row_is_moved_and_flagged(self, migrator, mood_service, store, anon_ctx, auth_ctx):
        entry = (await mood_service.create_entry(anon_ctx, {"mood_score": 5, "notes": "x"})).data
        await store.update("mood_entries", Query().eq("id", entry.id), {"encrypted_notes": "AAAA"})

        report = await migrator.migrate(anon_ctx, auth_ctx)

        assert report.tables["mood_entries"].unreadable == 1
        assert report.tables["mood_entries"].migrated == 1
        [moved] = (await mood_service.list_entries(auth_ctx)).data
        assert moved.decryption_failed is True

    @pytest.mark.asyncio
    async def test_supporter_side_repointed_not_rekeyed(
        self, migrator, peer_service, store, anon_ctx, auth_ctx, other_ctx
    ):
        await peer_service.become_supporter(anon_ctx, {})
        await peer_service.find_peer_supporter(other_ctx, {"reason": "need to talk"})
        [before] = await store.select("peer_matches")

        await migrator.migrate(anon_ctx, auth_ctx)

        [after] = await store.select("peer_matches")
        assert after["supporter_user_id"] == "user-1"
        assert after["supporter_anonymous_id"] is None
        assert after["encrypted_match_reason"] == before["encrypted_match_reason"]
        # The seeker still reads the reason
        [match] = (await peer_service.list_my_matches(other_ctx)).data
        assert match.match_reason == "need to talk"
        profile = (await peer_service.get_supporter_profile(auth_ctx)).data
        assert profile.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_existing_singleton_is_skipped(self, migrator, coping_service, store, anon_ctx, auth_ctx):
        await coping_service.save_safety_plan(auth_ctx, {"warning_signs": "mine"})
        await coping_service.save_safety_plan(anon_ctx, {"warning_signs": "anonymous"})

        report = await migrator.migrate(anon_ctx, auth_ctx)

        assert report.tables["safety_plans"].skipped == 1
        assert (await coping_service.get_safety_plan(auth_ctx)).data.warning_signs == "mine"
        assert len(await store.select("safety_plans")) == 2

    @pytest.mark.asyncio
    async def test_requires_anonymous_to_authenticated(self, migrator, anon_ctx, auth_ctx):
        with pytest.raises(InvalidTransition):
            await migrator.migrate(auth_ctx, anon_ctx)

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self, migrator, anon_ctx, auth_ctx):
        report = await migrator.migrate(anon_ctx, auth_ctx)
        assert report.migrated == 0
        assert report.counts() == {}


class TestUpgradeEndToEnd:
    @pytest.mark.asyncio
    async def test_upgrade_keeps_anonymous_history_readable(self, provider, storage, settings, store, mood_service):
        manager = SessionManager(provider, storage, settings=settings, migrator=AnonymousDataMigrator(store))
        await manager.initialize()
        anon = await manager.start_anonymous()
        await mood_service.create_entry(anon, {"mood_score": 3, "notes": "before signing up"})

        report = await manager.upgrade_to_authenticated(AuthSession(user_id="user-9", access_token="tok"))

        assert manager.state == SessionState.AUTHENTICATED
        assert report.tables["mood_entries"].migrated == 1
        [entry] = (await mood_service.list_entries(manager.context)).data
        assert entry.notes == "before signing up"
        assert entry.user_id == "user-9"
