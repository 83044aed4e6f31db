"""
Mood tracking tables for Haven.

Data Classification: SENSITIVE
- notes, triggers (JSON list), gratitude: AES-256-GCM ciphertext only
- scores and check-in type: plaintext (needed for server-side ordering
  and for analysis without a key)
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
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
)


class MoodEntry(PrincipalOwned, Base):
    """
    One check-in.

    Attributes:
        mood_score: 1-10, required
        energy_level, anxiety_level, sleep_quality: optional 1-10
        encrypted_notes: ciphertext of free-text notes
        encrypted_triggers: ciphertext of a JSON array of strings
        encrypted_gratitude: ciphertext of the gratitude line
        check_in_type: quick | detailed
    """

    __tablename__ = "mood_entries"

    id = id_column()
    mood_score = Column(Integer, nullable=False)
    energy_level = Column(Integer, nullable=True)
    anxiety_level = Column(Integer, nullable=True)
    sleep_quality = Column(Integer, nullable=True)
    encrypted_notes = Column(Text, nullable=True)
    encrypted_triggers = Column(Text, nullable=True)
    encrypted_gratitude = Column(Text, nullable=True)
    check_in_type = Column(String(16), default="quick", nullable=False)
    created_at = created_at_column()

    __table_args__ = (
        principal_check("mood_entries"),
        CheckConstraint("mood_score BETWEEN 1 AND 10", name="ck_mood_entries_score"),
        Index("idx_mood_entries_user_created", "user_id", "created_at"),
        Index("idx_mood_entries_anon_created", "anonymous_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<MoodEntry(id={self.id}, mood_score={self.mood_score})>"


class MoodStreak(PrincipalOwned, Base):
    """Consecutive-day check-in counter, one row per principal."""

    __tablename__ = "mood_streaks"

    id = id_column()
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_check_in = Column(DateTime(timezone=True), nullable=True)
    total_check_ins = Column(Integer, default=0, nullable=False)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (
        principal_check("mood_streaks"),
        UniqueConstraint("user_id", name="uq_mood_streaks_user"),
        UniqueConstraint("anonymous_id", name="uq_mood_streaks_anon"),
    )
