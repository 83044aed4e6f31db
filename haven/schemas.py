"""
Pydantic input schemas for Haven's domain services.

Every create/save operation validates its input through one of these
models before anything is encrypted or written. Invalid input becomes a
VALIDATION_ERROR ServiceResult listing the offending fields.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def _score() -> Any:
    return Field(None, ge=1, le=10)


# =============================================================================
# Mood
# =============================================================================


class MoodEntryCreate(BaseModel):
    """Request schema for a mood check-in."""

    mood_score: int = Field(..., ge=1, le=10)
    energy_level: int | None = _score()
    anxiety_level: int | None = _score()
    sleep_quality: int | None = _score()
    notes: str | None = Field(None, max_length=5000)
    triggers: list[str] | None = None
    gratitude: str | None = Field(None, max_length=2000)
    check_in_type: Literal["quick", "detailed"] = "quick"

    @field_validator("triggers")
    @classmethod
    def drop_blank_triggers(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return None
        cleaned = [t.strip() for t in v if t and t.strip()]
        return cleaned or None


# =============================================================================
# Coping tools
# =============================================================================


class ToolUsageCreate(BaseModel):
    tool_id: str = Field(..., min_length=1)
    mood_before: int | None = _score()
    mood_after: int | None = _score()
    effectiveness_rating: int | None = Field(None, ge=1, le=5)
    notes: str | None = Field(None, max_length=5000)
    duration_used: int | None = Field(None, ge=0)
    completed: bool = False


class SafetyPlanSave(BaseModel):
    """All six sections are optional; an omitted section is cleared on save."""

    warning_signs: str | None = None
    coping_strategies: str | None = None
    support_contacts: str | None = None
    professional_contacts: str | None = None
    environment_safety: str | None = None
    reasons_to_live: str | None = None


# =============================================================================
# Peer support
# =============================================================================

SupporterLevel = Literal["community", "experienced", "certified"]
MatchType = Literal["one-time", "ongoing", "crisis"]


class SupporterProfileCreate(BaseModel):
    supporter_level: SupporterLevel = "community"
    experience_months: int = Field(0, ge=0)
    specializations: list[str] = Field(default_factory=list)
    availability_hours: dict[str, Any] | None = None
    max_concurrent_matches: int = Field(3, ge=1, le=20)
    is_active: bool = True


class SupporterProfileUpdate(BaseModel):
    """Partial update. Counters and ratings are not client-writable."""

    supporter_level: SupporterLevel | None = None
    experience_months: int | None = Field(None, ge=0)
    specializations: list[str] | None = None
    availability_hours: dict[str, Any] | None = None
    max_concurrent_matches: int | None = Field(None, ge=1, le=20)
    is_active: bool | None = None


class MatchRequest(BaseModel):
    match_type: MatchType = "one-time"
    specializations: list[str] | None = None
    supporter_level: SupporterLevel | None = None
    reason: str | None = Field(None, max_length=2000)


class PeerMessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    message_type: Literal["text", "system", "safety_check"] = "text"


class GroupMessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    message_type: Literal["text", "system", "announcement"] = "text"


class FeedbackCreate(BaseModel):
    match_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    feedback: str | None = Field(None, max_length=2000)
    feedback_type: Literal["supporter", "seeker"] = "supporter"


class FlagRequest(BaseModel):
    message_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


# =============================================================================
# Profile
# =============================================================================


PrivacyLevel = Literal["anonymous", "email", "enhanced"]


class ProfileCreate(BaseModel):
    privacy_level: PrivacyLevel = "email"
    display_name: str | None = Field(None, max_length=100)
    emergency_contact: str | None = Field(None, max_length=500)
    data_retention_days: int = Field(730, ge=30, le=3650)


class ProfileUpdate(BaseModel):
    """Partial update of the profile details. privacy_level has its own operation."""

    display_name: str | None = Field(None, max_length=100)
    emergency_contact: str | None = Field(None, max_length=500)
    data_retention_days: int | None = Field(None, ge=30, le=3650)


class PrivacyLevelChange(BaseModel):
    privacy_level: PrivacyLevel


__all__ = [
    "FeedbackCreate",
    "FlagRequest",
    "MatchRequest",
    "GroupMessageCreate",
    "PeerMessageCreate",
    "PrivacyLevelChange",
    "ProfileCreate",
    "ProfileUpdate",
    "MoodEntryCreate",
    "SafetyPlanSave",
    "SupporterProfileCreate",
    "SupporterProfileUpdate",
    "ToolUsageCreate",
]
