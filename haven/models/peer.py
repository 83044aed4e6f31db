"""
Peer support tables: supporters, matches, messages, groups, feedback.

A match and its messages involve two principals. Columns are prefixed
with the role (seeker_, supporter_, sender_, reviewer_) and each role
pair carries its own exactly-one CHECK constraint.

Data Classification:
- match reason / seeker preferences: SENSITIVE, encrypted by the seeker
- message content: SENSITIVE, encrypted by the sender
- feedback text: SENSITIVE, encrypted by the reviewer
- flagged_reason: plaintext (moderation must read it without a key)
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
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
    utc_now,
)


class PeerSupporter(PrincipalOwned, Base):
    """
    Supporter profile, one per principal.

    current_matches counts pending + active matches and never exceeds
    max_concurrent_matches.
    """

    __tablename__ = "peer_supporters"

    id = id_column()
    supporter_level = Column(String(20), nullable=False, default="community")  # community | experienced | certified
    experience_months = Column(Integer, nullable=False, default=0)
    specializations = Column(JSON, nullable=False, default=list)
    availability_hours = Column(JSON, nullable=True)
    max_concurrent_matches = Column(Integer, nullable=False, default=3)
    current_matches = Column(Integer, nullable=False, default=0)
    total_sessions = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    last_active = Column(DateTime(timezone=True), nullable=True, default=utc_now)
    last_assigned_at = Column(DateTime(timezone=True), nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (
        principal_check("peer_supporters"),
        UniqueConstraint("user_id", name="uq_peer_supporters_user"),
        UniqueConstraint("anonymous_id", name="uq_peer_supporters_anon"),
        CheckConstraint("current_matches >= 0", name="ck_peer_supporters_matches"),
    )


class PeerMatch(Base):
    __tablename__ = "peer_matches"

    id = id_column()
    seeker_user_id = Column(String(64), nullable=True, index=True)
    seeker_anonymous_id = Column(String(16), nullable=True, index=True)
    supporter_user_id = Column(String(64), nullable=True, index=True)
    supporter_anonymous_id = Column(String(16), nullable=True, index=True)
    supporter_id = Column(String(36), ForeignKey("peer_supporters.id", ondelete="SET NULL"), nullable=True)
    match_type = Column(String(20), nullable=False, default="one-time")  # one-time | ongoing | crisis
    status = Column(String(20), nullable=False, default="pending")  # pending | active | completed | cancelled
    encrypted_match_reason = Column(Text, nullable=True)
    encrypted_seeker_preferences = Column(Text, nullable=True)
    session_count = Column(Integer, nullable=False, default=0)
    last_interaction = Column(DateTime(timezone=True), nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (
        principal_check("peer_matches", "seeker_"),
        principal_check("peer_matches", "supporter_"),
    )


class PeerMessage(Base):
    __tablename__ = "peer_messages"

    id = id_column()
    match_id = Column(String(36), ForeignKey("peer_matches.id", ondelete="CASCADE"), nullable=False)
    sender_user_id = Column(String(64), nullable=True)
    sender_anonymous_id = Column(String(16), nullable=True)
    encrypted_content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")  # text | system | safety_check
    is_flagged = Column(Boolean, nullable=False, default=False)
    flagged_reason = Column(Text, nullable=True)
    created_at = created_at_column()

    __table_args__ = (
        principal_check("peer_messages", "sender_"),
        Index("idx_peer_messages_match_created", "match_id", "created_at"),
    )


class SupportGroup(Base):
    """Public group catalogue. current_members never exceeds max_members."""

    __tablename__ = "support_groups"

    id = id_column()
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String(20), nullable=False, default="general")  # anxiety | depression | trauma | ...
    max_members = Column(Integer, nullable=False, default=20)
    current_members = Column(Integer, nullable=False, default=0)
    is_moderated = Column(Boolean, nullable=False, default=True)
    meeting_schedule = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = created_at_column()
    updated_at = updated_at_column()


class GroupMembership(PrincipalOwned, Base):
    __tablename__ = "group_memberships"

    id = id_column()
    group_id = Column(String(36), ForeignKey("support_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")  # member | moderator
    joined_at = created_at_column()
    last_active = Column(DateTime(timezone=True), nullable=True, default=utc_now)

    __table_args__ = (
        principal_check("group_memberships"),
        UniqueConstraint("group_id", "user_id", name="uq_group_memberships_user"),
        UniqueConstraint("group_id", "anonymous_id", name="uq_group_memberships_anon"),
    )


class GroupMessage(Base):
    __tablename__ = "group_messages"

    id = id_column()
    group_id = Column(String(36), ForeignKey("support_groups.id", ondelete="CASCADE"), nullable=False)
    sender_user_id = Column(String(64), nullable=True)
    sender_anonymous_id = Column(String(16), nullable=True)
    encrypted_content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="text")  # text | system | announcement
    is_flagged = Column(Boolean, nullable=False, default=False)
    flagged_reason = Column(Text, nullable=True)
    created_at = created_at_column()

    __table_args__ = (
        principal_check("group_messages", "sender_"),
        Index("idx_group_messages_group_created", "group_id", "created_at"),
    )


class PeerFeedback(Base):
    __tablename__ = "peer_feedback"

    id = id_column()
    match_id = Column(String(36), ForeignKey("peer_matches.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_user_id = Column(String(64), nullable=True)
    reviewer_anonymous_id = Column(String(16), nullable=True)
    rating = Column(Integer, nullable=False)
    encrypted_feedback = Column(Text, nullable=True)
    feedback_type = Column(String(20), nullable=False, default="supporter")  # supporter | seeker
    created_at = created_at_column()

    __table_args__ = (
        principal_check("peer_feedback", "reviewer_"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_peer_feedback_rating"),
    )
