"""
Tests for the insight engine (haven/services/insight_engine.py).

Tests cover:
- Statistics helpers
- Mood trend, trigger, sleep and recommendation templates
- Risk assessment levels and crisis language
- Optional phrasing through the text generation client, with template fallback
- run_analysis persisting its output
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from haven.lib import errors
from haven.lib.exceptions import ExternalServiceUnavailable, StoreError
from haven.services.insight_engine import (
    InsightEngine,
    assess_risk,
    mood_trend_insight,
    pearson,
    recommendation_insight,
    sleep_pattern,
    trigger_pattern,
    variability,
)
from haven.services.mood_service import MoodEntryView

START = datetime(2024, 5, 20, 9, tzinfo=UTC)


def _entries(scores, **fields):
    """Newest-first entries, one per day, with optional per-entry field lists."""
    entries = []
    for i, score in enumerate(scores):
        extra = {name: values[i] for name, values in fields.items()}
        entries.append(
            MoodEntryView(id=f"e{i}", mood_score=score, created_at=START - timedelta(days=i), **extra)
        )
    return entries


class FakeTextClient:
    """Stands in for TextGenerationClient: returns canned replies or raises."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    @property
    def enabled(self):
        return True

    async def complete(self, prompt, max_tokens=500):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


# =============================================================================
# Statistics
# =============================================================================


class TestStatistics:
    def test_variability(self):
        assert variability([5]) == 0.0
        assert variability([2, 4, 4, 4, 5, 5, 7, 9]) == 2.0

    def test_pearson(self):
        assert pearson([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
        assert pearson([1, 2, 3], [6, 4, 2]) == pytest.approx(-1.0)
        assert pearson([1, 1, 1], [2, 4, 6]) is None


# =============================================================================
# Templates
# =============================================================================


class TestMoodTrend:
    def test_improving(self):
        insight = mood_trend_insight(_entries([8] * 7 + [6] * 7))

        assert insight.insight_type == "mood_pattern"
        assert insight.content.startswith(
            "Your mood has improved by 2.0 points over the past week (from 6.0 to 8.0)."
        )
        assert insight.confidence_score == 0.9
        assert insight.data_period_start == "2024-05-07"
        assert insight.data_period_end == "2024-05-20"

    def test_declining(self):
        insight = mood_trend_insight(_entries([4] * 7 + [6] * 7))
        assert insight.content.startswith("Your mood has declined by 2.0 points")
        assert insight.confidence_score == 0.85

    def test_stable_without_previous_week(self):
        insight = mood_trend_insight(_entries([6, 7, 5]))
        assert insight.content.startswith("Your mood has been stable over the past week, averaging 6.0/10.")
        assert insight.confidence_score == 0.8

    def test_too_few_entries(self):
        assert mood_trend_insight(_entries([6, 7])) is None


class TestTriggers:
    def test_most_frequent_trigger(self):
        entries = _entries(
            [3, 4, 8, 5],
            triggers=[["Work", "sleep"], ["work "], ["family"], None],
        )

        pattern = trigger_pattern(entries)

        assert pattern.pattern_type == "trigger_correlation"
        assert pattern.description == (
            'You\'ve identified "work" as a trigger 2 times, with an average mood of 3.5/10 when this occurs.'
        )
        assert pattern.triggers == ["work", "sleep", "family"]
        assert pattern.strength == pytest.approx(2 / 3)
        assert pattern.frequency == "weekly"
        assert len(pattern.recommendations) == 4

    def test_frequency_threshold(self):
        entries = _entries([5, 5, 5, 5], triggers=[["a"], ["b"], ["c"], ["a"]])
        pattern = trigger_pattern(entries)
        assert pattern.triggers[0] == "a"
        assert pattern.frequency == "weekly"

        entries = _entries([5, 5, 5, 5, 5], triggers=[["a"], ["b"], ["c"], ["d"], ["a"]])
        assert trigger_pattern(entries).frequency == "irregular"

    def test_needs_two_entries_with_triggers(self):
        assert trigger_pattern(_entries([5, 5, 5], triggers=[["work"], None, None])) is None


class TestSleep:
    def test_strong_positive_correlation(self):
        entries = _entries([2, 4, 6, 8, 9], sleep_quality=[1, 3, 5, 7, 9])

        pattern = sleep_pattern(entries)

        assert pattern.pattern_type == "sleep_mood"
        assert pattern.frequency == "daily"
        assert pattern.strength > 0.9
        assert pattern.description.startswith("There's a positive correlation")
        assert pattern.recommendations[0] == "Prioritize consistent sleep schedule"

    def test_negative_correlation(self):
        pattern = sleep_pattern(_entries([9, 8, 6, 4, 2], sleep_quality=[1, 3, 5, 7, 9]))
        assert pattern.description.startswith("There's a negative correlation")

    def test_weak_correlation_gives_no_pattern(self):
        entries = _entries([5, 6, 5, 6, 5, 6], sleep_quality=[1, 2, 3, 4, 5, 6])
        assert sleep_pattern(entries) is None

    def test_needs_five_sleep_scores(self):
        entries = _entries([2, 4, 6, 8, 9], sleep_quality=[1, 3, 5, 7, None])
        assert sleep_pattern(entries) is None


class TestRecommendation:
    @pytest.mark.parametrize(
        ("scores", "opening"),
        [
            ([8, 8, 7], "Your mood has been consistently positive"),
            ([5, 6, 5], "Your mood has been moderate"),
            ([3, 2, 4], "Your mood has been lower"),
        ],
    )
    def test_template_by_average(self, scores, opening):
        insight = recommendation_insight(_entries(scores))
        assert insight.insight_type == "recommendation"
        assert insight.content.startswith(opening)
        assert insight.confidence_score == 0.8


class TestRisk:
    def test_low_average_is_high_risk(self):
        risk = assess_risk(_entries([2, 2, 2]))

        assert risk.risk_level == "high"
        assert risk.requires_intervention is False
        assert risk.risk_factors == ["Consistently low mood scores"]
        assert risk.recommendations.startswith("Consider reaching out")

    def test_below_average_is_medium(self):
        assert assess_risk(_entries([4, 4, 4])).risk_level == "medium"

    def test_high_variability_is_medium(self):
        risk = assess_risk(_entries([10, 1, 10, 1, 10]))
        assert risk.risk_level == "medium"
        assert "High mood variability" in risk.risk_factors
        assert "Consistent mood tracking" in risk.protective_factors

    def test_crisis_language(self):
        risk = assess_risk(_entries([6, 7, 6], notes=["I want to kill myself", None, None]))

        assert risk.risk_level == "crisis"
        assert risk.requires_intervention is True
        assert "Concerning language in journal entries" in risk.risk_factors
        assert risk.recommendations.startswith("Immediate professional support recommended.")

    def test_crisis_match_is_case_insensitive(self):
        risk = assess_risk(_entries([6, 6, 6], notes=[None, "Feeling HOPELESS", None]))
        assert risk.risk_level == "crisis"

    def test_week_of_low_scores_is_high_without_intervention(self):
        risk = assess_risk(_entries([2] * 7, notes=["tired"] * 7))

        assert risk.risk_level == "high"
        assert risk.requires_intervention is False
        assert "Concerning language in journal entries" not in risk.risk_factors

    def test_week_of_low_scores_with_crisis_note(self):
        notes = [None, None, "some days I think I could kill myself", None, None, None, None]

        risk = assess_risk(_entries([2] * 7, notes=notes))

        assert risk.risk_level == "crisis"
        assert risk.requires_intervention is True
        assert risk.risk_factors == ["Consistently low mood scores", "Concerning language in journal entries"]

    def test_crisis_language_overrides_high_mean(self):
        notes = [None] * 6 + ["honestly I just want to give up"]

        risk = assess_risk(_entries([9] * 7, notes=notes, gratitude=["friends"] * 7))

        assert risk.risk_level == "crisis"
        assert risk.requires_intervention is True
        assert risk.risk_factors == ["Concerning language in journal entries"]
        assert risk.protective_factors == [
            "Consistent mood tracking",
            "Practicing gratitude",
            "Generally positive mood",
        ]

    def test_only_last_seven_entries_assessed(self):
        notes = [None] * 8 + ["hopeless", None]
        assert assess_risk(_entries([8] * 7 + [1] * 3, notes=notes)) is None

    def test_no_factors_no_assessment(self):
        assert assess_risk(_entries([7, 7, 7], gratitude=["sun", None, None])) is None

    def test_too_few_entries(self):
        assert assess_risk(_entries([1, 1])) is None


# =============================================================================
# Engine
# =============================================================================


class TestEngine:
    @pytest.mark.asyncio
    async def test_analyze_needs_three_entries(self, mood_service, insight_records, settings):
        engine = InsightEngine(mood_service, insight_records, settings=settings)
        result = await engine.analyze(_entries([5, 5]))
        assert result.insights == [] and result.patterns == [] and result.risk is None

    @pytest.mark.asyncio
    async def test_templates_without_client(self, mood_service, insight_records, settings):
        engine = InsightEngine(mood_service, insight_records, settings=settings)

        result = await engine.analyze(_entries([8] * 7 + [6] * 7))

        assert [i.insight_type for i in result.insights] == ["mood_pattern", "recommendation"]
        assert result.risk is None

    @pytest.mark.asyncio
    async def test_phrasing_replaces_text(self, mood_service, insight_records, settings):
        client = FakeTextClient(reply="You are making progress.")
        engine = InsightEngine(mood_service, insight_records, text_client=client, settings=settings)

        result = await engine.analyze(_entries([8] * 7 + [6] * 7))

        trend, recommendation = result.insights
        assert trend.content == "You are making progress."
        assert trend.confidence_score == pytest.approx(1.0)
        assert recommendation.confidence_score == 0.9
        assert "Trend: improving" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_trigger_phrasing_splits_lines(self, mood_service, insight_records, settings):
        client = FakeTextClient(reply="Work weighs on you.\n- Take short breaks\n- Set boundaries")
        engine = InsightEngine(mood_service, insight_records, text_client=client, settings=settings)

        result = await engine.analyze(_entries([3, 4, 5], triggers=[["work"], ["work"], None]))

        [pattern] = result.patterns
        assert pattern.description == "Work weighs on you."
        assert pattern.recommendations == ["Take short breaks", "Set boundaries"]

    @pytest.mark.asyncio
    async def test_failed_phrasing_keeps_template(self, mood_service, insight_records, settings):
        client = FakeTextClient(error=ExternalServiceUnavailable("down"))
        engine = InsightEngine(mood_service, insight_records, text_client=client, settings=settings)

        result = await engine.analyze(_entries([8] * 7 + [6] * 7))

        assert result.insights[0].content.startswith("Your mood has improved by 2.0 points")
        assert result.insights[0].confidence_score == 0.9

    @pytest.mark.asyncio
    async def test_run_analysis_persists(self, mood_service, insight_records, settings, auth_ctx):
        for score in (2, 2, 2):
            await mood_service.create_entry(auth_ctx, {"mood_score": score, "notes": "long day"})
        engine = InsightEngine(mood_service, insight_records, settings=settings)

        result = await engine.run_analysis(auth_ctx)

        assert result.ok
        assert result.data.risk.risk_level == "high"
        stored = (await insight_records.list_insights(auth_ctx)).data
        assert {i.insight_type for i in stored} == {"mood_pattern", "recommendation"}
        latest = (await insight_records.get_latest_risk_assessment(auth_ctx)).data
        assert latest.risk_level == "high"

    @pytest.mark.asyncio
    async def test_run_analysis_reads_decrypted_notes(self, mood_service, insight_records, settings, auth_ctx):
        for note in ("fine", "tired", "everything feels hopeless"):
            await mood_service.create_entry(auth_ctx, {"mood_score": 6, "notes": note})
        engine = InsightEngine(mood_service, insight_records, settings=settings)

        result = await engine.run_analysis(auth_ctx)

        assert result.data.risk.risk_level == "crisis"
        assert result.data.risk.requires_intervention is True

    @pytest.mark.asyncio
    async def test_run_analysis_failure_stores_nothing(
        self, mood_service, insight_records, settings, auth_ctx, store, monkeypatch
    ):
        for score in (2, 2, 2):
            await mood_service.create_entry(auth_ctx, {"mood_score": score})
        engine = InsightEngine(mood_service, insight_records, settings=settings)
        read_back = store._select_ids

        async def fail_on_risks(conn, table, ids):
            if table.name == "risk_assessments":
                raise StoreError("read back failed")
            return await read_back(conn, table, ids)

        monkeypatch.setattr(store, "_select_ids", fail_on_risks)

        result = await engine.run_analysis(auth_ctx)

        assert result.error_code == errors.STORE_ERROR
        monkeypatch.undo()
        assert (await insight_records.list_insights(auth_ctx)).data == []
        assert (await insight_records.list_patterns(auth_ctx)).data == []

    @pytest.mark.asyncio
    async def test_run_analysis_with_too_little_data(self, mood_service, insight_records, settings, auth_ctx):
        await mood_service.create_entry(auth_ctx, {"mood_score": 5})
        engine = InsightEngine(mood_service, insight_records, settings=settings)

        result = await engine.run_analysis(auth_ctx)

        assert result.ok
        assert result.data.insights == []
        assert (await insight_records.list_insights(auth_ctx)).data == []

    @pytest.mark.asyncio
    async def test_run_analysis_without_principal(self, mood_service, insight_records, settings):
        engine = InsightEngine(mood_service, insight_records, settings=settings)
        result = await engine.run_analysis(None)
        assert result.error_code == errors.NO_ACTIVE_PRINCIPAL
