"""
Profile Service for Haven.

Account-level settings of an authenticated user and account deletion.

- create_profile: called once after sign-up, privacy_level defaults to email
- update_privacy_level / update_profile: change the stored settings
- delete_account: erase every record the user owns, then the profile, then
  the provider account; the context is closed afterwards

Anonymous principals have no profile; the profile operations reject them
with INVALID_TRANSITION.

Erasure order (each step is its own store call, a failure stops the run
and the report lists what was already removed):
1. matches the user is seeker or supporter in, with their messages and
   feedback; open matches give the supporter's slot back
2. group seats (current_members is decremented per membership)
3. every principal-owned table in PRINCIPAL_SCOPES
4. the profile row
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from haven.core.identity import SessionProvider
from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.core.store import Query, RecordStore
from haven.lib import errors
from haven.lib.exceptions import HavenError, InvalidTransition, KeyNotInitialized
from haven.models import PRINCIPAL_SCOPES
from haven.schemas import PrivacyLevelChange, ProfileCreate, ProfileUpdate
from haven.services.base import RecordService
from haven.services.peer_support import (
    FEEDBACK,
    GROUPS,
    MATCHES,
    MEMBERSHIPS,
    MESSAGES,
    OPEN_MATCH_STATUSES,
    SUPPORTERS,
)

logger = logging.getLogger(__name__)

PROFILES = "profiles"


@dataclass
class ProfileView:
    id: str
    user_id: str
    privacy_level: str
    data_retention_days: int
    created_at: datetime
    updated_at: datetime
    display_name: str | None = None
    emergency_contact: str | None = None
    decryption_failed: bool = False


@dataclass
class ErasureReport:
    """Rows deleted per table by delete_account()."""

    tables: dict[str, int] = field(default_factory=dict)

    def add(self, table: str, count: int) -> None:
        if count:
            self.tables[table] = self.tables.get(table, 0) + count

    @property
    def total(self) -> int:
        return sum(self.tables.values())


class ProfileService(RecordService):
    """
    Profile operations for the authenticated principal.

    Args:
        store: Record store
        provider: Session provider; delete_account() removes the provider
            account through it when given
    """

    def __init__(self, store: RecordStore, provider: SessionProvider | None = None) -> None:
        super().__init__(store)
        self._provider = provider

    @staticmethod
    def _require_user(ctx: PrincipalContext | None) -> PrincipalContext:
        ctx = RecordService.require_principal(ctx)
        if not ctx.is_active:
            raise KeyNotInitialized("Principal context has been closed")
        if ctx.identity.is_anonymous:
            raise InvalidTransition("Anonymous principals have no account")
        return ctx

    def _view(self, ctx: PrincipalContext, row: dict[str, Any]) -> ProfileView:
        plain, failed = self.decrypt_fields(ctx, PROFILES, row)
        return ProfileView(
            id=row["id"],
            user_id=row["user_id"],
            privacy_level=row["privacy_level"],
            data_retention_days=row["data_retention_days"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            decryption_failed=failed,
            **plain,
        )

    async def _own_row(self, ctx: PrincipalContext) -> dict[str, Any] | None:
        return await self._store.select_single(PROFILES, Query().eq("user_id", ctx.identity.id))

    async def create_profile(
        self,
        ctx: PrincipalContext | None,
        profile: ProfileCreate | dict[str, Any] | None = None,
    ) -> ServiceResult[ProfileView]:
        """Create the user's profile. A second call fails with ALREADY_EXISTS."""
        try:
            ctx = self._require_user(ctx)
            data = ProfileCreate.model_validate(profile or {})
            if await self._own_row(ctx) is not None:
                return ServiceResult.failure(errors.ALREADY_EXISTS)
            row = await self._store.insert(
                PROFILES,
                {
                    "user_id": ctx.identity.id,
                    "privacy_level": data.privacy_level,
                    "data_retention_days": data.data_retention_days,
                    **self.encrypt_fields(
                        ctx,
                        PROFILES,
                        {
                            "display_name": data.display_name or None,
                            "emergency_contact": data.emergency_contact or None,
                        },
                    ),
                },
            )
            logger.info(
                "profile_created",
                extra={"principal": ctx.identity.log_id, "privacy_level": data.privacy_level},
            )
            return ServiceResult.success(self._view(ctx, row))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def get_profile(self, ctx: PrincipalContext | None) -> ServiceResult[ProfileView]:
        """The user's profile; data=None without a principal, when anonymous or when none exists."""
        if ctx is None or ctx.identity.is_anonymous:
            return ServiceResult.success(None)
        try:
            row = await self._own_row(ctx)
            return ServiceResult.success(self._view(ctx, row) if row else None)
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def update_privacy_level(
        self,
        ctx: PrincipalContext | None,
        privacy_level: str,
    ) -> ServiceResult[ProfileView]:
        try:
            ctx = self._require_user(ctx)
            data = PrivacyLevelChange(privacy_level=privacy_level)
            rows = await self._store.update(
                PROFILES, Query().eq("user_id", ctx.identity.id), {"privacy_level": data.privacy_level}
            )
            if not rows:
                return ServiceResult.failure(errors.NOT_FOUND)
            logger.info(
                "privacy_level_changed",
                extra={"principal": ctx.identity.log_id, "privacy_level": data.privacy_level},
            )
            return ServiceResult.success(self._view(ctx, rows[0]))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def update_profile(
        self,
        ctx: PrincipalContext | None,
        changes: ProfileUpdate | dict[str, Any],
    ) -> ServiceResult[ProfileView]:
        """Partial update; only the fields present in `changes` are written."""
        try:
            ctx = self._require_user(ctx)
            data = ProfileUpdate.model_validate(changes)
            provided = data.model_dump(exclude_unset=True)
            values: dict[str, Any] = {}
            if "data_retention_days" in provided and provided["data_retention_days"] is not None:
                values["data_retention_days"] = provided["data_retention_days"]
            sensitive = {
                name: provided[name] or None for name in ("display_name", "emergency_contact") if name in provided
            }
            values.update(self.encrypt_fields(ctx, PROFILES, sensitive))
            if not values:
                row = await self._own_row(ctx)
                if row is None:
                    return ServiceResult.failure(errors.NOT_FOUND)
                return ServiceResult.success(self._view(ctx, row))
            rows = await self._store.update(PROFILES, Query().eq("user_id", ctx.identity.id), values)
            if not rows:
                return ServiceResult.failure(errors.NOT_FOUND)
            return ServiceResult.success(self._view(ctx, rows[0]))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Account deletion
    # -------------------------------------------------------------------------

    async def _erase_matches(self, ctx: PrincipalContext, report: ErasureReport) -> None:
        identity = ctx.identity
        matches = await self._store.select(
            MATCHES,
            Query().any_of(
                {identity.column("seeker_"): identity.id, identity.column("supporter_"): identity.id}
            ),
        )
        for match in matches:
            if (
                match["status"] in OPEN_MATCH_STATUSES
                and match.get("supporter_id")
                and identity.owns(match, "seeker_")
            ):
                await self._store.increment(
                    SUPPORTERS,
                    Query().eq("id", match["supporter_id"]).gte("current_matches", 1),
                    "current_matches",
                    -1,
                )
            report.add(MESSAGES, await self._store.delete(MESSAGES, Query().eq("match_id", match["id"])))
            report.add(FEEDBACK, await self._store.delete(FEEDBACK, Query().eq("match_id", match["id"])))
            report.add(MATCHES, await self._store.delete(MATCHES, Query().eq("id", match["id"])))

    async def _leave_groups(self, ctx: PrincipalContext) -> None:
        for membership in await self._store.select(MEMBERSHIPS, Query().match(ctx.identity.scope())):
            await self._store.increment(
                GROUPS,
                Query().eq("id", membership["group_id"]).gte("current_members", 1),
                "current_members",
                -1,
            )

    async def delete_account(self, ctx: PrincipalContext | None) -> ServiceResult[ErasureReport]:
        """
        Erase everything the user owns, the profile and the provider account.

        The context is closed on success; when the provider ends the
        session a listening SessionManager moves to SIGNED_OUT.
        """
        report = ErasureReport()
        try:
            ctx = self._require_user(ctx)
            await self._erase_matches(ctx, report)
            await self._leave_groups(ctx)
            for table, scopes in PRINCIPAL_SCOPES.items():
                for scope in scopes:
                    deleted = await self._store.delete(table, Query().match(ctx.identity.scope(scope.prefix)))
                    report.add(table, deleted)
            report.add(PROFILES, await self._store.delete(PROFILES, Query().eq("user_id", ctx.identity.id)))
            if self._provider is not None:
                await self._provider.delete_user(ctx.identity.id)
        except HavenError as e:
            logger.error(
                "account_deletion_failed",
                extra={"error": type(e).__name__, "deleted": report.tables},
            )
            return ServiceResult.from_exception(e)
        logger.info("account_deleted", extra={"principal": ctx.identity.log_id, "rows": report.total})
        ctx.close()
        return ServiceResult.success(report)


__all__ = ["ErasureReport", "PROFILES", "ProfileService", "ProfileView"]
