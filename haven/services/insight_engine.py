"""
Insight Engine for Haven.

Derives insights, patterns and a risk assessment from a principal's recent
mood entries (newest first). All rules are deterministic templates; when a
text-generation client is configured, some texts are re-phrased by it and
the template is kept whenever that fails.

Analyses (each needs at least 3 entries in the window):
- mood trend: average of the 7 most recent vs the 7 before them
- trigger correlation: most frequent normalized trigger and its mood
- sleep/mood correlation: Pearson r over entries with a sleep score
- weekly recommendation: template chosen by the recent average
- risk: low average, high variability, crisis language in notes

Risk output is guidance, not a diagnosis. A crisis phrase in any recent
note forces risk level "crisis" with requires_intervention set.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC

from haven.config.settings import Settings, get_settings
from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.lib import errors
from haven.lib.exceptions import ExternalServiceUnavailable
from haven.services.insight_records import Insight, InsightRecordService, Pattern, Risk
from haven.services.mood_service import MoodEntryView, MoodService
from haven.services.text_generation import TextGenerationClient

logger = logging.getLogger(__name__)

MIN_ENTRIES = 3
RECENT_WINDOW = 7
TREND_THRESHOLD = 0.5
MIN_TRIGGER_ENTRIES = 2
MIN_SLEEP_ENTRIES = 5
MIN_CORRELATION = 0.3
HIGH_VARIABILITY = 2.5
PHRASING_CONFIDENCE_BONUS = 0.1

CRISIS_PHRASES = ("hopeless", "worthless", "suicide", "kill myself", "end it all", "no point", "give up")

TRIGGER_RECOMMENDATIONS = (
    "Practice mindfulness when you notice this trigger arising",
    "Develop a specific coping strategy for this situation",
    "Consider what you can control vs. what you cannot in these situations",
    "Track your response to this trigger to identify what helps most",
)

POSITIVE_SLEEP_RECOMMENDATIONS = (
    "Prioritize consistent sleep schedule",
    "Create a relaxing bedtime routine",
    "Limit screen time before bed",
    "Consider sleep hygiene practices",
)

NEGATIVE_SLEEP_RECOMMENDATIONS = (
    "Practice stress management before bedtime",
    "Consider relaxation techniques for better sleep",
    "Track what affects your sleep quality",
    "Speak with a healthcare provider about sleep concerns",
)

RISK_RECOMMENDATIONS = {
    "crisis": (
        "Immediate professional support recommended. "
        "Please contact a crisis hotline or emergency services."
    ),
    "high": "Consider reaching out to a mental health professional for support and guidance.",
    "medium": "Focus on self-care, social connection, and monitor mood patterns closely.",
}


@dataclass
class AnalysisResult:
    """Everything one analysis run computed."""

    insights: list[Insight] = field(default_factory=list)
    patterns: list[Pattern] = field(default_factory=list)
    risk: Risk | None = None


# =============================================================================
# Statistics
# =============================================================================


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def variability(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float | None:
    """Pearson correlation coefficient, None when either side has zero variance."""
    n = len(xs)
    sum_x, sum_y = sum(xs), sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)
    sum_yy = sum(y * y for y in ys)
    denominator = (n * sum_xx - sum_x**2) * (n * sum_yy - sum_y**2)
    if denominator <= 0:
        return None
    return (n * sum_xy - sum_x * sum_y) / math.sqrt(denominator)


def data_period(entries: Sequence[MoodEntryView]) -> tuple[str, str]:
    """(oldest, newest) entry dates as YYYY-MM-DD in UTC."""
    if not entries:
        return "", ""
    oldest = entries[-1].created_at.astimezone(UTC).date().isoformat()
    newest = entries[0].created_at.astimezone(UTC).date().isoformat()
    return oldest, newest


# =============================================================================
# Template analyses
# =============================================================================


def trend_averages(entries: Sequence[MoodEntryView]) -> tuple[float, float] | None:
    recent = [e.mood_score for e in entries[:RECENT_WINDOW]]
    previous = [e.mood_score for e in entries[RECENT_WINDOW : RECENT_WINDOW * 2]]
    if len(recent) < MIN_ENTRIES:
        return None
    recent_avg = mean(recent)
    previous_avg = mean(previous) if previous else recent_avg
    return recent_avg, previous_avg


def mood_trend_insight(entries: Sequence[MoodEntryView]) -> Insight | None:
    averages = trend_averages(entries)
    if averages is None:
        return None
    recent_avg, previous_avg = averages
    trend = recent_avg - previous_avg

    if abs(trend) < TREND_THRESHOLD:
        content = (
            f"Your mood has been stable over the past week, averaging {recent_avg:.1f}/10. "
            "Consistency in mood tracking is a positive sign of emotional awareness. "
            "Consider maintaining your current routines and coping strategies."
        )
        confidence = 0.8
    elif trend > 0:
        content = (
            f"Your mood has improved by {trend:.1f} points over the past week "
            f"(from {previous_avg:.1f} to {recent_avg:.1f}). This is encouraging progress! "
            "Reflect on what positive changes you've made recently and try to maintain them."
        )
        confidence = 0.9
    else:
        content = (
            f"Your mood has declined by {abs(trend):.1f} points over the past week. "
            "This might be a good time to reach out for support, practice self-care, or consider "
            "speaking with a mental health professional if the decline continues."
        )
        confidence = 0.85

    start, end = data_period(entries)
    return Insight(
        insight_type="mood_pattern",
        content=content,
        confidence_score=confidence,
        data_period_start=start,
        data_period_end=end,
    )


def trigger_counts(entries: Sequence[MoodEntryView]) -> tuple[dict[str, list[int]], int]:
    """Mood scores per normalized trigger, and how many entries had triggers."""
    with_triggers = [e for e in entries if e.triggers]
    moods: dict[str, list[int]] = {}
    for entry in with_triggers:
        for trigger in entry.triggers or []:
            moods.setdefault(trigger.lower().strip(), []).append(entry.mood_score)
    return moods, len(with_triggers)


def trigger_pattern(entries: Sequence[MoodEntryView]) -> Pattern | None:
    moods, with_triggers = trigger_counts(entries)
    if with_triggers < MIN_TRIGGER_ENTRIES or not moods:
        return None

    # Stable sort: equal counts keep first-seen order
    by_frequency = sorted(moods.items(), key=lambda item: len(item[1]), reverse=True)[:3]
    top, top_moods = by_frequency[0]
    count = len(top_moods)
    return Pattern(
        pattern_type="trigger_correlation",
        description=(
            f'You\'ve identified "{top}" as a trigger {count} times, '
            f"with an average mood of {mean(top_moods):.1f}/10 when this occurs."
        ),
        strength=min(count / with_triggers, 1.0),
        frequency="weekly" if count >= with_triggers * 0.5 else "irregular",
        triggers=[name for name, _ in by_frequency],
        recommendations=list(TRIGGER_RECOMMENDATIONS),
    )


def sleep_pattern(entries: Sequence[MoodEntryView]) -> Pattern | None:
    with_sleep = [e for e in entries if e.sleep_quality and e.sleep_quality > 0]
    if len(with_sleep) < MIN_SLEEP_ENTRIES:
        return None
    r = pearson([e.sleep_quality for e in with_sleep], [e.mood_score for e in with_sleep])
    if r is None or abs(r) < MIN_CORRELATION:
        return None

    if r > 0:
        description = (
            f"There's a positive correlation ({r * 100:.0f}%) between your sleep quality and mood. "
            "Better sleep tends to lead to better mood days."
        )
        recommendations = list(POSITIVE_SLEEP_RECOMMENDATIONS)
    else:
        description = (
            "There's a negative correlation between your sleep and mood patterns. "
            "This might indicate sleep disruption during stressful periods."
        )
        recommendations = list(NEGATIVE_SLEEP_RECOMMENDATIONS)
    return Pattern(
        pattern_type="sleep_mood",
        description=description,
        strength=abs(r),
        frequency="daily",
        triggers=[],
        recommendations=recommendations,
    )


def recommendation_insight(entries: Sequence[MoodEntryView]) -> Insight | None:
    if len(entries) < MIN_ENTRIES:
        return None
    avg = mean([e.mood_score for e in entries[:RECENT_WINDOW]])
    if avg >= 7:
        content = (
            "Your mood has been consistently positive this week! To maintain this wellbeing: "
            "continue your current self-care practices, celebrate your progress, and consider what "
            "specific activities or routines are contributing to your positive mood."
        )
    elif avg >= 5:
        content = (
            "Your mood has been moderate this week. Consider incorporating more activities that "
            "bring you joy, practicing mindfulness or gratitude, and ensuring you're getting "
            "adequate rest and social connection."
        )
    else:
        content = (
            "Your mood has been lower this week. This is a good time to prioritize self-care, "
            "reach out to supportive friends or family, and consider speaking with a mental "
            "health professional if these feelings persist."
        )
    start, end = data_period(entries)
    return Insight(
        insight_type="recommendation",
        content=content,
        confidence_score=0.8,
        data_period_start=start,
        data_period_end=end,
    )


def has_crisis_language(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in CRISIS_PHRASES)


def assess_risk(entries: Sequence[MoodEntryView]) -> Risk | None:
    """
    Risk assessment over the 7 most recent entries.

    Returns None when there are fewer than 3 entries or no risk factor.
    Protective factors are reported but never lower the level.
    """
    if len(entries) < MIN_ENTRIES:
        return None
    recent = list(entries[:RECENT_WINDOW])
    scores = [e.mood_score for e in recent]
    avg = mean(scores)

    factors: list[str] = []
    protective: list[str] = []
    level = "low"
    requires_intervention = False

    if avg < 3:
        factors.append("Consistently low mood scores")
        level = "high"
    elif avg < 5:
        factors.append("Below-average mood scores")
        level = "medium"

    if variability(scores) > HIGH_VARIABILITY:
        factors.append("High mood variability")
        if level == "low":
            level = "medium"

    if any(has_crisis_language(e.notes) for e in recent):
        factors.append("Concerning language in journal entries")
        level = "crisis"
        requires_intervention = True

    if len(recent) >= 5:
        protective.append("Consistent mood tracking")
    if any(e.gratitude for e in recent):
        protective.append("Practicing gratitude")
    if avg >= 6:
        protective.append("Generally positive mood")

    if not factors:
        return None
    return Risk(
        risk_level=level,
        risk_factors=factors,
        protective_factors=protective,
        recommendations=RISK_RECOMMENDATIONS.get(level),
        requires_intervention=requires_intervention,
    )


# =============================================================================
# Engine
# =============================================================================


class InsightEngine:
    """
    Runs the analyses for a principal and stores what they produce.

    Args:
        mood: Source of the principal's decrypted mood entries
        records: Destination for insights, patterns and risk assessments
        text_client: Optional phrasing client; None means templates only
        settings: Provides the analysis window size
    """

    def __init__(
        self,
        mood: MoodService,
        records: InsightRecordService,
        text_client: TextGenerationClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._mood = mood
        self._records = records
        self._text = text_client
        self._settings = settings or get_settings()

    async def _phrase(self, prompt: str, max_tokens: int) -> str | None:
        if self._text is None or not self._text.enabled:
            return None
        try:
            return await self._text.complete(prompt, max_tokens=max_tokens)
        except ExternalServiceUnavailable as e:
            logger.info("insight_phrasing_skipped", extra={"reason": type(e).__name__})
            return None

    async def _phrase_trend(self, entries: Sequence[MoodEntryView], insight: Insight) -> Insight:
        averages = trend_averages(entries)
        if averages is None:
            return insight
        recent_avg, previous_avg = averages
        trend = recent_avg - previous_avg
        label = "improving" if trend > 0 else "declining" if trend < 0 else "stable"
        prompt = (
            "Analyze this mood trend data and provide a supportive insight:\n"
            f"Recent average mood: {recent_avg:.1f}/10\n"
            f"Previous average mood: {previous_avg:.1f}/10\n"
            f"Trend: {label}\n\n"
            "Provide a brief, encouraging insight (2-3 sentences) that acknowledges the trend "
            "and offers gentle guidance."
        )
        phrased = await self._phrase(prompt, max_tokens=200)
        if phrased:
            insight.content = phrased
            insight.confidence_score = min(insight.confidence_score + PHRASING_CONFIDENCE_BONUS, 1.0)
        return insight

    async def _phrase_triggers(self, entries: Sequence[MoodEntryView], pattern: Pattern) -> Pattern:
        moods, _ = trigger_counts(entries)
        top = pattern.triggers[0]
        prompt = (
            "Analyze this trigger pattern and provide supportive guidance:\n"
            f'Most frequent trigger: "{top}" ({len(moods[top])} times)\n'
            f"Average mood when triggered: {mean(moods[top]):.1f}/10\n\n"
            "Provide a brief analysis and 2-3 specific, actionable recommendations for managing "
            "this trigger."
        )
        phrased = await self._phrase(prompt, max_tokens=300)
        if phrased:
            lines = [line.strip() for line in phrased.splitlines() if line.strip()]
            if lines:
                pattern.description = lines[0]
                if len(lines) > 1:
                    pattern.recommendations = [line.lstrip("-•").strip() for line in lines[1:]]
        return pattern

    async def _phrase_recommendation(self, entries: Sequence[MoodEntryView], insight: Insight) -> Insight:
        recent = entries[:RECENT_WINDOW]
        mood_data = [
            {
                "mood": e.mood_score,
                "energy": e.energy_level,
                "anxiety": e.anxiety_level,
                "sleep": e.sleep_quality,
                "hasNotes": bool(e.notes),
                "hasTriggers": bool(e.triggers),
            }
            for e in recent
        ]
        prompt = (
            "Based on this week's mood data, provide 3-4 specific, actionable recommendations:\n"
            f"Average mood: {mean([e.mood_score for e in recent]):.1f}/10\n"
            f"Data points: {json.dumps(mood_data)}\n\n"
            "Provide personalized, evidence-based suggestions that are encouraging and practical."
        )
        phrased = await self._phrase(prompt, max_tokens=400)
        if phrased:
            insight.content = phrased
            insight.confidence_score = 0.9
        return insight

    async def analyze(self, entries: Sequence[MoodEntryView]) -> AnalysisResult:
        """Compute insights, patterns and risk for newest-first `entries`."""
        if len(entries) < MIN_ENTRIES:
            return AnalysisResult()

        result = AnalysisResult()
        trend = mood_trend_insight(entries)
        if trend is not None:
            result.insights.append(await self._phrase_trend(entries, trend))

        triggers = trigger_pattern(entries)
        if triggers is not None:
            result.patterns.append(await self._phrase_triggers(entries, triggers))

        sleep = sleep_pattern(entries)
        if sleep is not None:
            result.patterns.append(sleep)

        recommendation = recommendation_insight(entries)
        if recommendation is not None:
            result.insights.append(await self._phrase_recommendation(entries, recommendation))

        result.risk = assess_risk(entries)
        return result

    async def run_analysis(self, ctx: PrincipalContext | None) -> ServiceResult[AnalysisResult]:
        """Analyze the principal's recent entries and persist the results."""
        if ctx is None:
            return ServiceResult.failure(errors.NO_ACTIVE_PRINCIPAL)

        entries_result = await self._mood.list_entries(ctx, limit=self._settings.insight_window)
        if not entries_result.ok:
            return ServiceResult(error=entries_result.error)
        entries = entries_result.data or []

        result = await self.analyze(entries)

        saved = await self._records.save_analysis(ctx, result.insights, result.patterns, result.risk)
        if not saved.ok:
            return ServiceResult(error=saved.error)

        logger.info(
            "insight_analysis_completed",
            extra={
                "principal": ctx.identity.log_id,
                "entries": len(entries),
                "insights": len(result.insights),
                "patterns": len(result.patterns),
                "risk_level": result.risk.risk_level if result.risk else None,
            },
        )
        return ServiceResult.success(result)


__all__ = [
    "AnalysisResult",
    "InsightEngine",
    "assess_risk",
    "mood_trend_insight",
    "pearson",
    "recommendation_insight",
    "sleep_pattern",
    "trigger_pattern",
    "variability",
]
