"""
Tests for CopingToolsService (haven/services/coping_tools.py).
"""

from __future__ import annotations

import pytest

from haven.lib import errors


async def _seed_tool(store, name="Box breathing", category="breathing", **extra):
    return await store.insert(
        "coping_tools",
        {"name": name, "category": category, "description": "Breathe", "instructions": "4-4-4-4", **extra},
    )


class TestCatalogue:
    @pytest.mark.asyncio
    async def test_list_tools_filters(self, coping_service, store):
        await _seed_tool(store, "Box breathing", "breathing")
        await _seed_tool(store, "TIPP", "dbt", is_crisis_tool=True)
        await _seed_tool(store, "Body scan", "mindfulness")

        everything = await coping_service.list_tools()
        assert [t.name for t in everything.data] == ["Body scan", "Box breathing", "TIPP"]

        crisis = await coping_service.list_tools(is_crisis=True)
        assert [t.name for t in crisis.data] == ["TIPP"]

        dbt = await coping_service.list_tools(category="dbt")
        assert [t.name for t in dbt.data] == ["TIPP"]

    @pytest.mark.asyncio
    async def test_get_tool(self, coping_service, store):
        tool = await _seed_tool(store, tags=["calm"])
        result = await coping_service.get_tool(tool["id"])
        assert result.data.tags == ["calm"]
        assert result.data.duration_minutes == 5

    @pytest.mark.asyncio
    async def test_get_missing_tool(self, coping_service):
        assert (await coping_service.get_tool("missing")).error_code == errors.NOT_FOUND

    @pytest.mark.asyncio
    async def test_crisis_resources_only_active(self, coping_service, store):
        await store.insert("crisis_resources", {"name": "988 Lifeline", "type": "hotline", "phone_number": "988"})
        await store.insert("crisis_resources", {"name": "Crisis Text Line", "type": "text"})
        await store.insert("crisis_resources", {"name": "Retired", "type": "hotline", "is_active": False})

        result = await coping_service.list_crisis_resources()
        assert [r.name for r in result.data] == ["988 Lifeline", "Crisis Text Line"]

        hotlines = await coping_service.list_crisis_resources(type="hotline")
        assert [r.phone_number for r in hotlines.data] == ["988"]


class TestUsage:
    @pytest.mark.asyncio
    async def test_record_usage_encrypts_notes(self, coping_service, auth_ctx, store):
        tool = await _seed_tool(store)

        result = await coping_service.record_usage(
            auth_ctx,
            {"tool_id": tool["id"], "mood_before": 3, "mood_after": 6, "notes": "helped a lot"},
        )

        assert result.ok
        assert result.data.notes == "helped a lot"
        [row] = await store.select("tool_usage")
        assert "helped" not in row["encrypted_notes"]

    @pytest.mark.asyncio
    async def test_history_scoped_and_newest_first(self, coping_service, auth_ctx, other_ctx, store):
        tool = await _seed_tool(store)
        await coping_service.record_usage(auth_ctx, {"tool_id": tool["id"], "duration_used": 1})
        await coping_service.record_usage(auth_ctx, {"tool_id": tool["id"], "duration_used": 2})
        await coping_service.record_usage(other_ctx, {"tool_id": tool["id"], "duration_used": 9})

        result = await coping_service.list_usage_history(auth_ctx)

        assert [u.duration_used for u in result.data] == [2, 1]

    @pytest.mark.asyncio
    async def test_record_usage_without_principal(self, coping_service):
        result = await coping_service.record_usage(None, {"tool_id": "x"})
        assert result.error_code == errors.NO_ACTIVE_PRINCIPAL

    @pytest.mark.asyncio
    async def test_effectiveness_rating_validated(self, coping_service, auth_ctx):
        result = await coping_service.record_usage(auth_ctx, {"tool_id": "x", "effectiveness_rating": 6})
        assert result.error_code == errors.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_effectiveness_aggregates(self, coping_service, auth_ctx, store):
        breathing = await _seed_tool(store, "Box breathing")
        scan = await _seed_tool(store, "Body scan", "mindfulness")
        for usage in (
            {"tool_id": breathing["id"], "effectiveness_rating": 5, "mood_before": 3, "mood_after": 7},
            {"tool_id": breathing["id"], "effectiveness_rating": 3},
            {"tool_id": scan["id"], "effectiveness_rating": 2, "mood_before": 5, "mood_after": 6},
            {"tool_id": scan["id"]},
        ):
            await coping_service.record_usage(auth_ctx, usage)

        result = await coping_service.get_tool_effectiveness(auth_ctx)

        first, second = result.data
        assert first.tool_name == "Box breathing"
        assert first.usage_count == 2
        assert first.avg_effectiveness == 4.0
        # The unscored usage counts as zero improvement
        assert first.avg_mood_improvement == 2.0
        assert second.tool_name == "Body scan"
        assert second.usage_count == 1
        assert second.avg_mood_improvement == 1.0

    @pytest.mark.asyncio
    async def test_effectiveness_without_ratings(self, coping_service, auth_ctx):
        assert (await coping_service.get_tool_effectiveness(auth_ctx)).data == []


class TestSafetyPlan:
    @pytest.mark.asyncio
    async def test_no_plan_yet(self, coping_service, auth_ctx):
        result = await coping_service.get_safety_plan(auth_ctx)
        assert result.ok
        assert result.data is None

    @pytest.mark.asyncio
    async def test_second_save_updates_in_place(self, coping_service, auth_ctx, store):
        first = await coping_service.save_safety_plan(
            auth_ctx, {"warning_signs": "isolating", "reasons_to_live": "my cat"}
        )
        second = await coping_service.save_safety_plan(auth_ctx, {"warning_signs": "not sleeping"})

        assert first.data.id == second.data.id
        rows = await store.select("safety_plans")
        assert len(rows) == 1
        assert "not sleeping" not in rows[0]["encrypted_warning_signs"]

        plan = (await coping_service.get_safety_plan(auth_ctx)).data
        assert plan.warning_signs == "not sleeping"
        # Omitted sections are cleared
        assert plan.reasons_to_live is None

    @pytest.mark.asyncio
    async def test_plans_are_per_principal(self, coping_service, auth_ctx, anon_ctx):
        await coping_service.save_safety_plan(auth_ctx, {"coping_strategies": "walk"})
        await coping_service.save_safety_plan(anon_ctx, {"coping_strategies": "music"})

        assert (await coping_service.get_safety_plan(auth_ctx)).data.coping_strategies == "walk"
        assert (await coping_service.get_safety_plan(anon_ctx)).data.coping_strategies == "music"

    @pytest.mark.asyncio
    async def test_empty_section_stored_as_null(self, coping_service, auth_ctx, store):
        await coping_service.save_safety_plan(auth_ctx, {"warning_signs": ""})
        [row] = await store.select("safety_plans")
        assert row["encrypted_warning_signs"] is None

    @pytest.mark.asyncio
    async def test_save_without_principal(self, coping_service):
        result = await coping_service.save_safety_plan(None, {"warning_signs": "x"})
        assert result.error_code == errors.NO_ACTIVE_PRINCIPAL
