"""
User profile table for Haven.

One row per authenticated user, created at sign-up. Anonymous principals
have no profile.

Data Classification: SENSITIVE
- display_name, emergency_contact: AES-256-GCM ciphertext only
- privacy_level, data_retention_days: plaintext settings
"""

from sqlalchemy import CheckConstraint, Column, Integer, String, Text

from haven.models.base import Base, created_at_column, id_column, updated_at_column


class Profile(Base):
    """
    Account-level settings.

    Attributes:
        user_id: authenticated user id, unique
        privacy_level: anonymous | email | enhanced
        data_retention_days: how long records are kept, 730 by default
    """

    __tablename__ = "profiles"

    id = id_column()
    user_id = Column(String(64), nullable=False, unique=True)
    privacy_level = Column(String(16), nullable=False, default="email")
    encrypted_display_name = Column(Text, nullable=True)
    encrypted_emergency_contact = Column(Text, nullable=True)
    data_retention_days = Column(Integer, nullable=False, default=730)
    created_at = created_at_column()
    updated_at = updated_at_column()

    __table_args__ = (
        CheckConstraint(
            "privacy_level IN ('anonymous', 'email', 'enhanced')",
            name="ck_profiles_privacy_level",
        ),
    )
