"""
Derived analysis tables written by the insight engine.

Data Classification: SENSITIVE
- ai_insights.content, pattern_analysis.description and
  risk_assessments.recommendations: ciphertext only
- levels, scores, trigger names and pattern recommendations: plaintext

Rows are immutable except ai_insights.is_reviewed.
"""

from sqlalchemy import JSON, Boolean, Column, Float, String, Text

from haven.models.base import (
    Base,
    PrincipalOwned,
    created_at_column,
    id_column,
    principal_check,
    updated_at_column,
)


class AIInsight(PrincipalOwned, Base):
    __tablename__ = "ai_insights"

    id = id_column()
    # mood_pattern | trigger_analysis | progress_summary | recommendation | warning
    insight_type = Column(String(30), nullable=False)
    encrypted_content = Column(Text, nullable=False)
    confidence_score = Column(Float, nullable=False)
    data_period_start = Column(String(10), nullable=False, default="")  # YYYY-MM-DD
    data_period_end = Column(String(10), nullable=False, default="")
    is_reviewed = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()

    __table_args__ = (principal_check("ai_insights"),)


class PatternAnalysis(PrincipalOwned, Base):
    __tablename__ = "pattern_analysis"

    id = id_column()
    pattern_type = Column(String(30), nullable=False)  # trigger_correlation | sleep_mood | ...
    encrypted_description = Column(Text, nullable=False)
    strength = Column(Float, nullable=False)
    frequency = Column(String(20), nullable=False)  # daily | weekly | monthly | irregular
    triggers = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (principal_check("pattern_analysis"),)


class RiskAssessment(PrincipalOwned, Base):
    __tablename__ = "risk_assessments"

    id = id_column()
    risk_level = Column(String(10), nullable=False)  # low | medium | high | crisis
    risk_factors = Column(JSON, nullable=False, default=list)
    protective_factors = Column(JSON, nullable=False, default=list)
    encrypted_recommendations = Column(Text, nullable=True)
    requires_intervention = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()

    __table_args__ = (principal_check("risk_assessments"),)
