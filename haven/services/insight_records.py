"""
Insight Record Service for Haven.

Persists and reads back the insight engine's output:
- ai_insights: encrypted content, plaintext type/confidence/period
- pattern_analysis: encrypted description, plaintext strength, frequency,
  trigger names and recommendations
- risk_assessments: encrypted recommendations, plaintext level and factors

Rows are immutable except ai_insights.is_reviewed. save_analysis() writes
one run of all three tables in a single transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.core.store import Query
from haven.lib import errors
from haven.lib.exceptions import HavenError
from haven.services.base import RecordService

logger = logging.getLogger(__name__)

INSIGHTS = "ai_insights"
PATTERNS = "pattern_analysis"
RISKS = "risk_assessments"

InsightType = Literal["mood_pattern", "trigger_analysis", "progress_summary", "recommendation", "warning"]
PatternType = Literal[
    "mood_cycle", "trigger_correlation", "sleep_mood", "energy_mood", "weekly_pattern", "stress_response"
]
Frequency = Literal["daily", "weekly", "monthly", "irregular"]
RiskLevel = Literal["low", "medium", "high", "crisis"]


# =============================================================================
# Computed results (engine output, not yet stored)
# =============================================================================


@dataclass
class Insight:
    insight_type: InsightType
    content: str
    confidence_score: float
    data_period_start: str = ""
    data_period_end: str = ""


@dataclass
class Pattern:
    pattern_type: PatternType
    description: str
    strength: float
    frequency: Frequency
    triggers: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass
class Risk:
    risk_level: RiskLevel
    risk_factors: list[str] = field(default_factory=list)
    protective_factors: list[str] = field(default_factory=list)
    recommendations: str | None = None
    requires_intervention: bool = False


# =============================================================================
# Stored views
# =============================================================================


@dataclass
class InsightView:
    id: str
    insight_type: str
    confidence_score: float
    data_period_start: str
    data_period_end: str
    is_reviewed: bool
    created_at: datetime
    content: str | None = None
    decryption_failed: bool = False


@dataclass
class PatternView:
    id: str
    pattern_type: str
    strength: float
    frequency: str
    created_at: datetime
    triggers: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    description: str | None = None
    decryption_failed: bool = False


@dataclass
class RiskAssessmentView:
    id: str
    risk_level: str
    requires_intervention: bool
    created_at: datetime
    risk_factors: list[str] = field(default_factory=list)
    protective_factors: list[str] = field(default_factory=list)
    recommendations: str | None = None
    decryption_failed: bool = False


@dataclass
class StoredAnalysis:
    """Rows written by save_analysis()."""

    insights: list[InsightView] = field(default_factory=list)
    patterns: list[PatternView] = field(default_factory=list)
    risk: RiskAssessmentView | None = None


class InsightRecordService(RecordService):
    """Stores and lists insights, patterns and risk assessments."""

    def _insight_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> InsightView:
        plain, failed = self.decrypt_fields(ctx, INSIGHTS, row)
        return InsightView(
            id=row["id"],
            insight_type=row["insight_type"],
            confidence_score=row["confidence_score"],
            data_period_start=row["data_period_start"],
            data_period_end=row["data_period_end"],
            is_reviewed=bool(row["is_reviewed"]),
            created_at=row["created_at"],
            content=plain["content"],
            decryption_failed=failed,
        )

    def _pattern_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> PatternView:
        plain, failed = self.decrypt_fields(ctx, PATTERNS, row)
        return PatternView(
            id=row["id"],
            pattern_type=row["pattern_type"],
            strength=row["strength"],
            frequency=row["frequency"],
            created_at=row["created_at"],
            triggers=list(row.get("triggers") or []),
            recommendations=list(row.get("recommendations") or []),
            description=plain["description"],
            decryption_failed=failed,
        )

    def _risk_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> RiskAssessmentView:
        plain, failed = self.decrypt_fields(ctx, RISKS, row)
        return RiskAssessmentView(
            id=row["id"],
            risk_level=row["risk_level"],
            requires_intervention=bool(row["requires_intervention"]),
            created_at=row["created_at"],
            risk_factors=list(row.get("risk_factors") or []),
            protective_factors=list(row.get("protective_factors") or []),
            recommendations=plain["recommendations"],
            decryption_failed=failed,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _insight_row(self, ctx: PrincipalContext, insight: Insight) -> dict[str, Any]:
        return {
            "insight_type": insight.insight_type,
            "confidence_score": insight.confidence_score,
            "data_period_start": insight.data_period_start,
            "data_period_end": insight.data_period_end,
            "is_reviewed": False,
            **ctx.identity.owner_values(),
            **self.encrypt_fields(ctx, INSIGHTS, {"content": insight.content}),
        }

    def _pattern_row(self, ctx: PrincipalContext, pattern: Pattern) -> dict[str, Any]:
        return {
            "pattern_type": pattern.pattern_type,
            "strength": pattern.strength,
            "frequency": pattern.frequency,
            "triggers": list(pattern.triggers),
            "recommendations": list(pattern.recommendations),
            **ctx.identity.owner_values(),
            **self.encrypt_fields(ctx, PATTERNS, {"description": pattern.description}),
        }

    def _risk_row(self, ctx: PrincipalContext, risk: Risk) -> dict[str, Any]:
        return {
            "risk_level": risk.risk_level,
            "risk_factors": list(risk.risk_factors),
            "protective_factors": list(risk.protective_factors),
            "requires_intervention": risk.requires_intervention,
            **ctx.identity.owner_values(),
            **self.encrypt_fields(ctx, RISKS, {"recommendations": risk.recommendations or None}),
        }

    @staticmethod
    def _log_intervention(ctx: PrincipalContext, risk: Risk | None) -> None:
        if risk is not None and risk.requires_intervention:
            logger.warning(
                "risk_requires_intervention",
                extra={"principal": ctx.identity.log_id, "risk_level": risk.risk_level},
            )

    async def save_insights(
        self,
        ctx: PrincipalContext | None,
        insights: list[Insight],
    ) -> ServiceResult[list[InsightView]]:
        if not insights:
            return ServiceResult.success([])
        try:
            ctx = self.require_principal(ctx)
            stored = await self._store.insert_many(INSIGHTS, [self._insight_row(ctx, i) for i in insights])
            return ServiceResult.success([self._insight_view(ctx, row) for row in stored])
        except HavenError as e:
            logger.warning("insights_save_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def save_patterns(
        self,
        ctx: PrincipalContext | None,
        patterns: list[Pattern],
    ) -> ServiceResult[list[PatternView]]:
        if not patterns:
            return ServiceResult.success([])
        try:
            ctx = self.require_principal(ctx)
            stored = await self._store.insert_many(PATTERNS, [self._pattern_row(ctx, p) for p in patterns])
            return ServiceResult.success([self._pattern_view(ctx, row) for row in stored])
        except HavenError as e:
            logger.warning("patterns_save_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def save_risk_assessment(
        self,
        ctx: PrincipalContext | None,
        risk: Risk,
    ) -> ServiceResult[RiskAssessmentView]:
        try:
            ctx = self.require_principal(ctx)
            row = await self._store.insert(RISKS, self._risk_row(ctx, risk))
            self._log_intervention(ctx, risk)
            return ServiceResult.success(self._risk_view(ctx, row))
        except HavenError as e:
            logger.warning("risk_assessment_save_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def save_analysis(
        self,
        ctx: PrincipalContext | None,
        insights: list[Insight],
        patterns: list[Pattern],
        risk: Risk | None = None,
    ) -> ServiceResult[StoredAnalysis]:
        """Store one analysis run in a single transaction: all of it or none of it."""
        try:
            ctx = self.require_principal(ctx)
            stored = await self._store.insert_all(
                {
                    INSIGHTS: [self._insight_row(ctx, i) for i in insights],
                    PATTERNS: [self._pattern_row(ctx, p) for p in patterns],
                    RISKS: [self._risk_row(ctx, risk)] if risk is not None else [],
                }
            )
            self._log_intervention(ctx, risk)
            risks = stored[RISKS]
            return ServiceResult.success(
                StoredAnalysis(
                    insights=[self._insight_view(ctx, row) for row in stored[INSIGHTS]],
                    patterns=[self._pattern_view(ctx, row) for row in stored[PATTERNS]],
                    risk=self._risk_view(ctx, risks[0]) if risks else None,
                )
            )
        except HavenError as e:
            logger.warning("analysis_save_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def mark_insight_reviewed(
        self,
        ctx: PrincipalContext | None,
        insight_id: str,
    ) -> ServiceResult[InsightView]:
        try:
            ctx = self.require_principal(ctx)
            rows = await self._store.update(
                INSIGHTS,
                Query().eq("id", insight_id).match(ctx.identity.scope()),
                {"is_reviewed": True},
            )
            if not rows:
                return ServiceResult.failure(errors.NOT_FOUND)
            return ServiceResult.success(self._insight_view(ctx, rows[0]))
        except HavenError as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_insights(
        self,
        ctx: PrincipalContext | None,
        limit: int = 10,
    ) -> ServiceResult[list[InsightView]]:
        if ctx is None:
            return ServiceResult.success([])
        query = Query().match(ctx.identity.scope()).order("created_at", ascending=False).limit(limit)
        try:
            rows = await self._store.select(INSIGHTS, query)
            return ServiceResult.success([self._insight_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def list_patterns(
        self,
        ctx: PrincipalContext | None,
        limit: int = 10,
    ) -> ServiceResult[list[PatternView]]:
        if ctx is None:
            return ServiceResult.success([])
        query = Query().match(ctx.identity.scope()).order("created_at", ascending=False).limit(limit)
        try:
            rows = await self._store.select(PATTERNS, query)
            return ServiceResult.success([self._pattern_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def get_latest_risk_assessment(
        self,
        ctx: PrincipalContext | None,
    ) -> ServiceResult[RiskAssessmentView]:
        """Newest risk assessment, or data=None when there is none."""
        if ctx is None:
            return ServiceResult.success(None)
        query = Query().match(ctx.identity.scope()).order("created_at", ascending=False).limit(1)
        try:
            rows = await self._store.select(RISKS, query)
            return ServiceResult.success(self._risk_view(ctx, rows[0]) if rows else None)
        except HavenError as e:
            return ServiceResult.from_exception(e)


__all__ = [
    "Insight",
    "InsightRecordService",
    "InsightView",
    "Pattern",
    "PatternView",
    "Risk",
    "RiskAssessmentView",
    "StoredAnalysis",
]
