"""
Models package for Haven.

Exports all SQLAlchemy models plus two registries the services and the
migrator share:

- ENCRYPTED_COLUMNS: per table, which logical fields are stored only as
  ciphertext and in which column (and whether the plaintext is JSON)
- PRINCIPAL_SCOPES: per principal-owned table, the scoping-column
  prefixes and whether that role's key encrypted the row

Usage:
    from haven.models import Base, MoodEntry, ENCRYPTED_COLUMNS
"""

from typing import NamedTuple

from haven.models.base import Base
from haven.models.coping import (
    SAFETY_PLAN_SECTIONS,
    CopingTool,
    CrisisResource,
    SafetyPlan,
    ToolUsage,
)
from haven.models.insight import AIInsight, PatternAnalysis, RiskAssessment
from haven.models.mood import MoodEntry, MoodStreak
from haven.models.profile import Profile
from haven.models.peer import (
    GroupMembership,
    GroupMessage,
    PeerFeedback,
    PeerMatch,
    PeerMessage,
    PeerSupporter,
    SupportGroup,
)


class EncryptedColumn(NamedTuple):
    column: str
    is_json: bool = False


ENCRYPTED_COLUMNS: dict[str, dict[str, EncryptedColumn]] = {
    "mood_entries": {
        "notes": EncryptedColumn("encrypted_notes"),
        "triggers": EncryptedColumn("encrypted_triggers", is_json=True),
        "gratitude": EncryptedColumn("encrypted_gratitude"),
    },
    "tool_usage": {
        "notes": EncryptedColumn("encrypted_notes"),
    },
    "safety_plans": {
        section: EncryptedColumn(f"encrypted_{section}") for section in SAFETY_PLAN_SECTIONS
    },
    "peer_matches": {
        "match_reason": EncryptedColumn("encrypted_match_reason"),
        "seeker_preferences": EncryptedColumn("encrypted_seeker_preferences", is_json=True),
    },
    "peer_messages": {
        "content": EncryptedColumn("encrypted_content"),
    },
    "group_messages": {
        "content": EncryptedColumn("encrypted_content"),
    },
    "peer_feedback": {
        "feedback": EncryptedColumn("encrypted_feedback"),
    },
    "ai_insights": {
        "content": EncryptedColumn("encrypted_content"),
    },
    "pattern_analysis": {
        "description": EncryptedColumn("encrypted_description"),
    },
    "profiles": {
        "display_name": EncryptedColumn("encrypted_display_name"),
        "emergency_contact": EncryptedColumn("encrypted_emergency_contact"),
    },
    "risk_assessments": {
        "recommendations": EncryptedColumn("encrypted_recommendations"),
    },
}


class PrincipalScope(NamedTuple):
    prefix: str
    owns_ciphertext: bool


PRINCIPAL_SCOPES: dict[str, tuple[PrincipalScope, ...]] = {
    "mood_entries": (PrincipalScope("", True),),
    "mood_streaks": (PrincipalScope("", True),),
    "tool_usage": (PrincipalScope("", True),),
    "safety_plans": (PrincipalScope("", True),),
    "peer_supporters": (PrincipalScope("", True),),
    "group_memberships": (PrincipalScope("", True),),
    "peer_matches": (PrincipalScope("seeker_", True), PrincipalScope("supporter_", False)),
    "peer_messages": (PrincipalScope("sender_", True),),
    "group_messages": (PrincipalScope("sender_", True),),
    "peer_feedback": (PrincipalScope("reviewer_", True),),
    "ai_insights": (PrincipalScope("", True),),
    "pattern_analysis": (PrincipalScope("", True),),
    "risk_assessments": (PrincipalScope("", True),),
}

__all__ = [
    # Base
    "Base",
    # Mood
    "MoodEntry",
    "MoodStreak",
    # Coping
    "CopingTool",
    "CrisisResource",
    "SafetyPlan",
    "ToolUsage",
    "SAFETY_PLAN_SECTIONS",
    # Peer
    "GroupMembership",
    "GroupMessage",
    "PeerFeedback",
    "PeerMatch",
    "PeerMessage",
    "PeerSupporter",
    "SupportGroup",
    # Insight
    "AIInsight",
    "PatternAnalysis",
    "RiskAssessment",
    # Profile
    "Profile",
    # Registries
    "ENCRYPTED_COLUMNS",
    "EncryptedColumn",
    "PRINCIPAL_SCOPES",
    "PrincipalScope",
]
