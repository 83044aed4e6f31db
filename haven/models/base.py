"""
SQLAlchemy Base for Haven.

Declarative base and shared column helpers for every record-store table.

Principal scoping: each principal-owned row carries a pair of nullable
columns, `<prefix>user_id` and `<prefix>anonymous_id`, and a CHECK
constraint that exactly one of them is set.

Usage:
    from haven.models.base import Base, PrincipalOwned, principal_check

    class MyRecord(PrincipalOwned, Base):
        __tablename__ = "my_records"
        __table_args__ = (principal_check("my_records"),)
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, Column, DateTime, String
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(UTC)


def principal_check(table: str, prefix: str = "") -> CheckConstraint:
    """CHECK that exactly one of `<prefix>user_id` / `<prefix>anonymous_id` is set."""
    user_col = f"{prefix}user_id"
    anon_col = f"{prefix}anonymous_id"
    return CheckConstraint(
        f"({user_col} IS NOT NULL AND {anon_col} IS NULL) OR "
        f"({user_col} IS NULL AND {anon_col} IS NOT NULL)",
        name=f"ck_{table}_{prefix}principal",
    )


def id_column() -> Column:
    return Column(String(36), primary_key=True, default=new_id)


def created_at_column() -> Column:
    return Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)


def updated_at_column() -> Column:
    return Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class PrincipalOwned:
    """Mixin for tables scoped by plain `user_id` / `anonymous_id`."""

    user_id = Column(String(64), nullable=True, index=True)
    anonymous_id = Column(String(16), nullable=True, index=True)


__all__ = [
    "Base",
    "PrincipalOwned",
    "created_at_column",
    "id_column",
    "new_id",
    "principal_check",
    "updated_at_column",
    "utc_now",
]
