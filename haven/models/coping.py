"""
Coping tools, tool usage, safety plans and crisis resources.

coping_tools and crisis_resources are a public catalogue (plaintext, no
principal). tool_usage and safety_plans are principal-owned.

Data Classification:
- tool_usage.notes: SENSITIVE (ciphertext only)
- safety_plans: all six sections SENSITIVE, each encrypted independently
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from haven.models.base import (
    Base,
    PrincipalOwned,
    created_at_column,
    id_column,
    principal_check,
    updated_at_column,
)

SAFETY_PLAN_SECTIONS = (
    "warning_signs",
    "coping_strategies",
    "support_contacts",
    "professional_contacts",
    "environment_safety",
    "reasons_to_live",
)


class CopingTool(Base):
    __tablename__ = "coping_tools"

    id = id_column()
    name = Column(String(200), nullable=False)
    category = Column(String(20), nullable=False, index=True)  # cbt | dbt | mindfulness | ...
    description = Column(Text, nullable=False, default="")
    instructions = Column(Text, nullable=False, default="")
    duration_minutes = Column(Integer, nullable=False, default=5)
    difficulty_level = Column(String(20), nullable=False, default="beginner")
    evidence_base = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    is_crisis_tool = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()
    updated_at = updated_at_column()


class ToolUsage(PrincipalOwned, Base):
    __tablename__ = "tool_usage"

    id = id_column()
    tool_id = Column(String(36), ForeignKey("coping_tools.id", ondelete="CASCADE"), nullable=False, index=True)
    mood_before = Column(Integer, nullable=True)
    mood_after = Column(Integer, nullable=True)
    effectiveness_rating = Column(Integer, nullable=True)  # 1-5
    encrypted_notes = Column(Text, nullable=True)
    duration_used = Column(Integer, nullable=True)
    completed = Column(Boolean, nullable=False, default=False)
    created_at = created_at_column()

    __table_args__ = (
        principal_check("tool_usage"),
        CheckConstraint(
            "effectiveness_rating IS NULL OR effectiveness_rating BETWEEN 1 AND 5",
            name="ck_tool_usage_effectiveness",
        ),
    )


class SafetyPlan(PrincipalOwned, Base):
    """Singleton per principal. Inserted on first save, updated in place afterwards."""

    __tablename__ = "safety_plans"

    id = id_column()
    encrypted_warning_signs = Column(Text, nullable=True)
    encrypted_coping_strategies = Column(Text, nullable=True)
    encrypted_support_contacts = Column(Text, nullable=True)
    encrypted_professional_contacts = Column(Text, nullable=True)
    encrypted_environment_safety = Column(Text, nullable=True)
    encrypted_reasons_to_live = Column(Text, nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (
        principal_check("safety_plans"),
        UniqueConstraint("user_id", name="uq_safety_plans_user"),
        UniqueConstraint("anonymous_id", name="uq_safety_plans_anon"),
    )


class CrisisResource(Base):
    __tablename__ = "crisis_resources"

    id = id_column()
    name = Column(String(200), nullable=False)
    type = Column(String(20), nullable=False, index=True)  # hotline | chat | text | emergency | website
    phone_number = Column(String(40), nullable=True)
    website_url = Column(String(500), nullable=True)
    description = Column(Text, nullable=False, default="")
    availability = Column(String(100), nullable=False, default="24/7")
    country_code = Column(String(2), nullable=False, default="US")
    language_support = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = created_at_column()
