"""
Peer Support Service for Haven.

Supporter profiles, seeker/supporter matching, one-to-one and group chat,
feedback, moderation flags and real-time message subscriptions.

Capacity invariants:
- a supporter's current_matches (pending + active matches) never exceeds
  max_concurrent_matches
- a group's current_members never exceeds max_members

Both counters are claimed with a compare-and-set update (the update only
matches while the counter still has the value that was read), so two
concurrent claims cannot both take the last slot.

Match lifecycle:
    pending -> active -> completed
    pending -> cancelled
Completing or cancelling frees the supporter's slot.

Messages are encrypted with the sender's key. A participant reading the
other side's messages gets them flagged decryption_failed.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from haven.config.settings import MatchPolicy, Settings, get_settings
from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.core.store import Query, RecordStore, Subscription
from haven.lib import errors
from haven.lib.exceptions import CapacityReached, HavenError
from haven.schemas import (
    FeedbackCreate,
    FlagRequest,
    GroupMessageCreate,
    MatchRequest,
    PeerMessageCreate,
    SupporterProfileCreate,
    SupporterProfileUpdate,
)
from haven.services.base import RecordService

logger = logging.getLogger(__name__)

SUPPORTERS = "peer_supporters"
MATCHES = "peer_matches"
MESSAGES = "peer_messages"
GROUPS = "support_groups"
MEMBERSHIPS = "group_memberships"
GROUP_MESSAGES = "group_messages"
FEEDBACK = "peer_feedback"

# Allowed match status changes
MATCH_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "cancelled"}),
    "active": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}
OPEN_MATCH_STATUSES = frozenset({"pending", "active"})

# Compare-and-set attempts before giving up on a contended counter
CLAIM_ATTEMPTS = 3

MessageCallback = Callable[[Any], Awaitable[None] | None]


# =============================================================================
# Views
# =============================================================================


@dataclass
class SupporterProfileView:
    id: str
    supporter_level: str
    experience_months: int
    specializations: list[str]
    max_concurrent_matches: int
    current_matches: int
    total_sessions: int
    average_rating: float
    is_active: bool
    availability_hours: dict[str, Any] | None = None
    last_assigned_at: datetime | None = None
    user_id: str | None = None
    anonymous_id: str | None = None


@dataclass
class PeerMatchView:
    id: str
    match_type: str
    status: str
    session_count: int
    created_at: datetime
    last_interaction: datetime | None = None
    match_reason: str | None = None
    seeker_preferences: dict[str, Any] | None = None
    supporter_id: str | None = None
    is_seeker: bool = False
    decryption_failed: bool = False


@dataclass
class PeerMessageView:
    id: str
    match_id: str
    message_type: str
    created_at: datetime
    content: str | None = None
    is_flagged: bool = False
    flagged_reason: str | None = None
    is_own: bool = False
    decryption_failed: bool = False


@dataclass
class SupportGroupView:
    id: str
    name: str
    description: str
    category: str
    max_members: int
    current_members: int
    is_moderated: bool
    meeting_schedule: dict[str, Any] | None = None


@dataclass
class GroupMembershipView:
    id: str
    group_id: str
    role: str
    joined_at: datetime
    group: SupportGroupView | None = None


@dataclass
class GroupMessageView:
    id: str
    group_id: str
    message_type: str
    created_at: datetime
    content: str | None = None
    is_flagged: bool = False
    flagged_reason: str | None = None
    is_own: bool = False
    decryption_failed: bool = False


@dataclass
class PeerFeedbackView:
    id: str
    match_id: str
    rating: int
    feedback_type: str
    created_at: datetime
    feedback: str | None = None
    decryption_failed: bool = False


@dataclass
class MatchSubscription:
    """Handle returned by the subscribe_* operations."""

    subscription: Subscription
    channel: str = field(init=False)

    def __post_init__(self) -> None:
        self.channel = self.subscription.channel

    def unsubscribe(self) -> None:
        self.subscription.unsubscribe()


def _supporter_view(row: dict[str, Any]) -> SupporterProfileView:
    return SupporterProfileView(
        id=row["id"],
        supporter_level=row["supporter_level"],
        experience_months=row["experience_months"],
        specializations=list(row.get("specializations") or []),
        max_concurrent_matches=row["max_concurrent_matches"],
        current_matches=row["current_matches"],
        total_sessions=row["total_sessions"],
        average_rating=row["average_rating"],
        is_active=bool(row["is_active"]),
        availability_hours=row.get("availability_hours"),
        last_assigned_at=row.get("last_assigned_at"),
        user_id=row.get("user_id"),
        anonymous_id=row.get("anonymous_id"),
    )


def _group_view(row: dict[str, Any]) -> SupportGroupView:
    return SupportGroupView(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        category=row["category"],
        max_members=row["max_members"],
        current_members=row["current_members"],
        is_moderated=bool(row["is_moderated"]),
        meeting_schedule=row.get("meeting_schedule"),
    )


def select_supporter(candidates: list[dict[str, Any]], policy: MatchPolicy) -> list[dict[str, Any]]:
    """
    Order available supporters by preference.

    HIGHEST_RATED: average_rating descending; ties keep store order.
    LEAST_RECENTLY_ASSIGNED: never-assigned first, then oldest
    last_assigned_at, then rating.
    """
    available = [c for c in candidates if c["current_matches"] < c["max_concurrent_matches"]]
    if policy == MatchPolicy.LEAST_RECENTLY_ASSIGNED:
        never = datetime.min.replace(tzinfo=UTC)
        return sorted(
            available,
            key=lambda c: (c.get("last_assigned_at") or never, -c["average_rating"]),
        )
    return sorted(available, key=lambda c: c["average_rating"], reverse=True)


class PeerSupportService(RecordService):
    """Peer support operations scoped to the active principal."""

    def __init__(self, store: RecordStore, settings: Settings | None = None) -> None:
        super().__init__(store)
        self._settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Supporter profile
    # -------------------------------------------------------------------------

    async def become_supporter(
        self,
        ctx: PrincipalContext | None,
        profile: SupporterProfileCreate | dict[str, Any],
    ) -> ServiceResult[SupporterProfileView]:
        try:
            ctx = self.require_principal(ctx)
            data = SupporterProfileCreate.model_validate(profile)
            scope = Query().match(ctx.identity.scope())
            if await self._store.select_single(SUPPORTERS, scope) is not None:
                return ServiceResult.failure(errors.ALREADY_EXISTS)
            row = await self._store.insert(SUPPORTERS, {**data.model_dump(), **ctx.identity.owner_values()})
            logger.info("supporter_registered", extra={"principal": ctx.identity.log_id})
            return ServiceResult.success(_supporter_view(row))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def update_supporter_profile(
        self,
        ctx: PrincipalContext | None,
        updates: SupporterProfileUpdate | dict[str, Any],
    ) -> ServiceResult[SupporterProfileView]:
        try:
            ctx = self.require_principal(ctx)
            data = SupporterProfileUpdate.model_validate(updates)
            changes = data.model_dump(exclude_unset=True, exclude_none=True)
            scope = Query().match(ctx.identity.scope())
            if not changes:
                row = await self._store.select_single(SUPPORTERS, scope)
                rows = [row] if row else []
            else:
                rows = await self._store.update(SUPPORTERS, scope, changes)
            if not rows:
                return ServiceResult.failure(errors.NOT_FOUND)
            return ServiceResult.success(_supporter_view(rows[0]))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def get_supporter_profile(self, ctx: PrincipalContext | None) -> ServiceResult[SupporterProfileView]:
        if ctx is None:
            return ServiceResult.success(None)
        try:
            row = await self._store.select_single(SUPPORTERS, Query().match(ctx.identity.scope()))
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(_supporter_view(row) if row else None)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def _match_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> PeerMatchView:
        plain, failed = self.decrypt_fields(ctx, MATCHES, row)
        return PeerMatchView(
            id=row["id"],
            match_type=row["match_type"],
            status=row["status"],
            session_count=row["session_count"],
            created_at=row["created_at"],
            last_interaction=row.get("last_interaction"),
            supporter_id=row.get("supporter_id"),
            is_seeker=ctx.identity.owns(row, "seeker_"),
            decryption_failed=failed,
            **plain,
        )

    async def _claim_supporter_slot(self, supporter: dict[str, Any]) -> dict[str, Any] | None:
        """Take one match slot from `supporter`; None when it filled up meanwhile."""
        current = supporter
        for _ in range(CLAIM_ATTEMPTS):
            if current["current_matches"] >= current["max_concurrent_matches"]:
                return None
            rows = await self._store.update(
                SUPPORTERS,
                Query().eq("id", current["id"]).eq("current_matches", current["current_matches"]),
                {
                    "current_matches": current["current_matches"] + 1,
                    "last_assigned_at": datetime.now(UTC),
                },
            )
            if rows:
                return rows[0]
            current = await self._store.select_single(SUPPORTERS, Query().eq("id", supporter["id"]))
            if current is None:
                return None
        return None

    async def _release_supporter_slot(self, supporter_id: str, completed: bool = False) -> None:
        for _ in range(CLAIM_ATTEMPTS):
            row = await self._store.select_single(SUPPORTERS, Query().eq("id", supporter_id))
            if row is None:
                return
            changes: dict[str, Any] = {"current_matches": max(0, row["current_matches"] - 1)}
            if completed:
                changes["total_sessions"] = row["total_sessions"] + 1
            rows = await self._store.update(
                SUPPORTERS,
                Query().eq("id", supporter_id).eq("current_matches", row["current_matches"]),
                changes,
            )
            if rows:
                return
        logger.warning("supporter_slot_release_contended", extra={"supporter_id": supporter_id})

    async def find_peer_supporter(
        self,
        ctx: PrincipalContext | None,
        request: MatchRequest | dict[str, Any],
    ) -> ServiceResult[PeerMatchView]:
        """
        Pick an available supporter per HAVEN_MATCH_POLICY and open a pending match.

        The seeker's own supporter profile is never picked.
        """
        try:
            ctx = self.require_principal(ctx)
            data = MatchRequest.model_validate(request)
            query = Query().eq("is_active", True)
            if data.supporter_level:
                query.eq("supporter_level", data.supporter_level)
            candidates = [
                row for row in await self._store.select(SUPPORTERS, query) if not ctx.identity.owns(row)
            ]

            supporter = None
            for candidate in select_supporter(candidates, self._settings.match_policy):
                supporter = await self._claim_supporter_slot(candidate)
                if supporter is not None:
                    break
            if supporter is None:
                logger.info("no_supporter_available", extra={"principal": ctx.identity.log_id})
                return ServiceResult.failure(errors.NO_SUPPORTER_AVAILABLE)

            preferences = (
                data.model_dump(exclude={"reason"}, exclude_none=True) if data.specializations else None
            )
            values = {
                "match_type": data.match_type,
                "status": "pending",
                "supporter_id": supporter["id"],
                "supporter_user_id": supporter.get("user_id"),
                "supporter_anonymous_id": supporter.get("anonymous_id"),
                **ctx.identity.owner_values("seeker_"),
                **self.encrypt_fields(
                    ctx, MATCHES, {"match_reason": data.reason, "seeker_preferences": preferences}
                ),
            }
            try:
                row = await self._store.insert(MATCHES, values)
            except HavenError:
                await self._release_supporter_slot(supporter["id"])
                raise
            logger.info(
                "peer_match_created",
                extra={"principal": ctx.identity.log_id, "match_type": data.match_type},
            )
            return ServiceResult.success(self._match_view(ctx, row))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    def _participant_query(self, ctx: PrincipalContext) -> Query:
        return Query().any_of(
            {ctx.identity.column("seeker_"): ctx.identity.id, ctx.identity.column("supporter_"): ctx.identity.id}
        )

    async def _get_own_match(self, ctx: PrincipalContext, match_id: str) -> dict[str, Any] | None:
        return await self._store.select_single(MATCHES, self._participant_query(ctx).eq("id", match_id))

    async def list_my_matches(self, ctx: PrincipalContext | None) -> ServiceResult[list[PeerMatchView]]:
        """Matches where the principal is seeker or supporter, newest first."""
        if ctx is None:
            return ServiceResult.success([])
        try:
            rows = await self._store.select(
                MATCHES, self._participant_query(ctx).order("created_at", ascending=False)
            )
            return ServiceResult.success([self._match_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def update_match_status(
        self,
        ctx: PrincipalContext | None,
        match_id: str,
        status: str,
    ) -> ServiceResult[PeerMatchView]:
        try:
            ctx = self.require_principal(ctx)
            match = await self._get_own_match(ctx, match_id)
            if match is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            if status not in MATCH_TRANSITIONS.get(match["status"], frozenset()):
                return ServiceResult.failure(
                    errors.INVALID_TRANSITION,
                    details={"from": match["status"], "to": status},
                )
            rows = await self._store.update(
                MATCHES,
                Query().eq("id", match_id).eq("status", match["status"]),
                {"status": status},
            )
            if not rows:
                return ServiceResult.failure(errors.INVALID_TRANSITION)
            if status not in OPEN_MATCH_STATUSES and match.get("supporter_id"):
                await self._release_supporter_slot(match["supporter_id"], completed=status == "completed")
            logger.info("peer_match_status_changed", extra={"from": match["status"], "to": status})
            return ServiceResult.success(self._match_view(ctx, rows[0]))
        except HavenError as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # One-to-one messages
    # -------------------------------------------------------------------------

    def _message_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> PeerMessageView:
        plain, failed = self.decrypt_fields(ctx, MESSAGES, row)
        return PeerMessageView(
            id=row["id"],
            match_id=row["match_id"],
            message_type=row["message_type"],
            created_at=row["created_at"],
            content=plain["content"],
            is_flagged=bool(row["is_flagged"]),
            flagged_reason=row.get("flagged_reason"),
            is_own=ctx.identity.owns(row, "sender_"),
            decryption_failed=failed,
        )

    async def send_message(
        self,
        ctx: PrincipalContext | None,
        match_id: str,
        content: str,
        message_type: str = "text",
    ) -> ServiceResult[PeerMessageView]:
        """Send into an open match; bumps session_count and last_interaction."""
        try:
            ctx = self.require_principal(ctx)
            data = PeerMessageCreate(content=content, message_type=message_type)
            match = await self._get_own_match(ctx, match_id)
            if match is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            if match["status"] not in OPEN_MATCH_STATUSES:
                return ServiceResult.failure(errors.INVALID_TRANSITION)
            row = await self._store.insert(
                MESSAGES,
                {
                    "match_id": match_id,
                    "message_type": data.message_type,
                    **ctx.identity.owner_values("sender_"),
                    **self.encrypt_fields(ctx, MESSAGES, {"content": data.content}),
                },
            )
            await self._store.increment(
                MATCHES,
                Query().eq("id", match_id),
                "session_count",
                values={"last_interaction": row["created_at"]},
            )
            return ServiceResult.success(self._message_view(ctx, row))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def list_messages(
        self,
        ctx: PrincipalContext | None,
        match_id: str,
        limit: int = 50,
    ) -> ServiceResult[list[PeerMessageView]]:
        """Oldest-first messages of a match the principal takes part in."""
        if ctx is None:
            return ServiceResult.success([])
        try:
            if await self._get_own_match(ctx, match_id) is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            rows = await self._store.select(
                MESSAGES, Query().eq("match_id", match_id).order("created_at").limit(limit)
            )
            return ServiceResult.success([self._message_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def list_support_groups(self, category: str | None = None) -> ServiceResult[list[SupportGroupView]]:
        query = Query().eq("is_active", True).order("current_members", ascending=False)
        if category:
            query.eq("category", category)
        try:
            rows = await self._store.select(GROUPS, query)
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success([_group_view(row) for row in rows])

    async def _claim_group_seat(self, group: dict[str, Any]) -> None:
        """Take one seat in `group`. Raises CapacityReached when it is full."""
        current = group
        for _ in range(CLAIM_ATTEMPTS):
            if current["current_members"] >= current["max_members"]:
                break
            rows = await self._store.update(
                GROUPS,
                Query().eq("id", current["id"]).eq("current_members", current["current_members"]),
                {"current_members": current["current_members"] + 1},
            )
            if rows:
                return
            current = await self._store.select_single(GROUPS, Query().eq("id", group["id"]))
            if current is None:
                break
        raise CapacityReached(f"Support group {group['id']} has no free seat")

    async def _release_group_seat(self, group_id: str) -> None:
        await self._store.increment(GROUPS, Query().eq("id", group_id).gte("current_members", 1), "current_members", -1)

    async def join_support_group(
        self,
        ctx: PrincipalContext | None,
        group_id: str,
    ) -> ServiceResult[GroupMembershipView]:
        """Join a group. Rejected without a membership row when the group is full."""
        try:
            ctx = self.require_principal(ctx)
            group = await self._store.select_single(GROUPS, Query().eq("id", group_id).eq("is_active", True))
            if group is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            existing = await self._store.select_single(
                MEMBERSHIPS, Query().eq("group_id", group_id).match(ctx.identity.scope())
            )
            if existing is not None:
                return ServiceResult.failure(errors.ALREADY_EXISTS)
            try:
                await self._claim_group_seat(group)
            except CapacityReached:
                logger.info("support_group_full", extra={"group_id": group_id})
                raise
            try:
                row = await self._store.insert(
                    MEMBERSHIPS,
                    {"group_id": group_id, "role": "member", **ctx.identity.owner_values()},
                )
            except HavenError:
                await self._release_group_seat(group_id)
                raise
            refreshed = await self._store.select_single(GROUPS, Query().eq("id", group_id))
            return ServiceResult.success(
                GroupMembershipView(
                    id=row["id"],
                    group_id=group_id,
                    role=row["role"],
                    joined_at=row["joined_at"],
                    group=_group_view(refreshed or group),
                )
            )
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def list_my_groups(self, ctx: PrincipalContext | None) -> ServiceResult[list[GroupMembershipView]]:
        if ctx is None:
            return ServiceResult.success([])
        try:
            memberships = await self._store.select(
                MEMBERSHIPS, Query().match(ctx.identity.scope()).order("joined_at", ascending=False)
            )
            groups = {row["id"]: row for row in await self._store.select(GROUPS)} if memberships else {}
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(
            [
                GroupMembershipView(
                    id=m["id"],
                    group_id=m["group_id"],
                    role=m["role"],
                    joined_at=m["joined_at"],
                    group=_group_view(groups[m["group_id"]]) if m["group_id"] in groups else None,
                )
                for m in memberships
            ]
        )

    def _group_message_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> GroupMessageView:
        plain, failed = self.decrypt_fields(ctx, GROUP_MESSAGES, row)
        return GroupMessageView(
            id=row["id"],
            group_id=row["group_id"],
            message_type=row["message_type"],
            created_at=row["created_at"],
            content=plain["content"],
            is_flagged=bool(row["is_flagged"]),
            flagged_reason=row.get("flagged_reason"),
            is_own=ctx.identity.owns(row, "sender_"),
            decryption_failed=failed,
        )

    async def send_group_message(
        self,
        ctx: PrincipalContext | None,
        group_id: str,
        content: str,
        message_type: str = "text",
    ) -> ServiceResult[GroupMessageView]:
        try:
            ctx = self.require_principal(ctx)
            data = GroupMessageCreate(content=content, message_type=message_type)
            member = await self._store.select_single(
                MEMBERSHIPS, Query().eq("group_id", group_id).match(ctx.identity.scope())
            )
            if member is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            row = await self._store.insert(
                GROUP_MESSAGES,
                {
                    "group_id": group_id,
                    "message_type": data.message_type,
                    **ctx.identity.owner_values("sender_"),
                    **self.encrypt_fields(ctx, GROUP_MESSAGES, {"content": data.content}),
                },
            )
            await self._store.update(MEMBERSHIPS, Query().eq("id", member["id"]), {"last_active": row["created_at"]})
            return ServiceResult.success(self._group_message_view(ctx, row))
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def list_group_messages(
        self,
        ctx: PrincipalContext | None,
        group_id: str,
        limit: int = 50,
    ) -> ServiceResult[list[GroupMessageView]]:
        """Oldest-first messages of a group the principal is a member of."""
        if ctx is None:
            return ServiceResult.success([])
        try:
            member = await self._store.select_single(
                MEMBERSHIPS, Query().eq("group_id", group_id).match(ctx.identity.scope())
            )
            if member is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            rows = await self._store.select(
                GROUP_MESSAGES, Query().eq("group_id", group_id).order("created_at").limit(limit)
            )
            return ServiceResult.success([self._group_message_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Feedback and moderation
    # -------------------------------------------------------------------------

    async def submit_feedback(
        self,
        ctx: PrincipalContext | None,
        feedback: FeedbackCreate | dict[str, Any],
    ) -> ServiceResult[PeerFeedbackView]:
        """Rate a match. Supporter ratings refresh the supporter's average_rating."""
        try:
            ctx = self.require_principal(ctx)
            data = FeedbackCreate.model_validate(feedback)
            match = await self._get_own_match(ctx, data.match_id)
            if match is None:
                return ServiceResult.failure(errors.NOT_FOUND)
            row = await self._store.insert(
                FEEDBACK,
                {
                    "match_id": data.match_id,
                    "rating": data.rating,
                    "feedback_type": data.feedback_type,
                    **ctx.identity.owner_values("reviewer_"),
                    **self.encrypt_fields(ctx, FEEDBACK, {"feedback": data.feedback}),
                },
            )
            if data.feedback_type == "supporter" and match.get("supporter_id"):
                await self._refresh_supporter_rating(match["supporter_id"])
            plain, failed = self.decrypt_fields(ctx, FEEDBACK, row)
            return ServiceResult.success(
                PeerFeedbackView(
                    id=row["id"],
                    match_id=row["match_id"],
                    rating=row["rating"],
                    feedback_type=row["feedback_type"],
                    created_at=row["created_at"],
                    feedback=plain["feedback"],
                    decryption_failed=failed,
                )
            )
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    async def _refresh_supporter_rating(self, supporter_id: str) -> None:
        match_ids = {row["id"] for row in await self._store.select(MATCHES, Query().eq("supporter_id", supporter_id))}
        ratings = [
            row["rating"]
            for row in await self._store.select(FEEDBACK, Query().eq("feedback_type", "supporter"))
            if row["match_id"] in match_ids
        ]
        if ratings:
            await self._store.update(
                SUPPORTERS,
                Query().eq("id", supporter_id),
                {"average_rating": round(sum(ratings) / len(ratings), 2)},
            )

    async def flag_message(
        self,
        ctx: PrincipalContext | None,
        message_id: str,
        reason: str,
        group: bool = False,
    ) -> ServiceResult[None]:
        """Mark a message flagged with a plaintext reason. Re-flagging overwrites the reason."""
        try:
            self.require_principal(ctx)
            data = FlagRequest(message_id=message_id, reason=reason)
            table = GROUP_MESSAGES if group else MESSAGES
            rows = await self._store.update(
                table,
                Query().eq("id", data.message_id),
                {"is_flagged": True, "flagged_reason": data.reason},
            )
            if not rows:
                return ServiceResult.failure(errors.NOT_FOUND)
            logger.info("message_flagged", extra={"table": table, "message_id": message_id})
            return ServiceResult.success(None)
        except (HavenError, ValidationError) as e:
            return ServiceResult.from_exception(e)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _subscribe(
        self,
        ctx: PrincipalContext | None,
        channel: str,
        table: str,
        filters: dict[str, Any],
        to_view: Callable[[PrincipalContext, dict[str, Any]], Any],
        callback: MessageCallback,
    ) -> ServiceResult[MatchSubscription]:
        if ctx is None:
            return ServiceResult.failure(errors.NO_ACTIVE_PRINCIPAL)

        async def deliver(row: dict[str, Any]) -> None:
            if not ctx.is_active:
                logger.debug("subscription_event_dropped", extra={"channel": channel})
                return
            outcome = callback(to_view(ctx, row))
            if inspect.isawaitable(outcome):
                await outcome

        try:
            subscription = self._store.subscribe(channel, table, filters, deliver)
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success(MatchSubscription(subscription))

    def subscribe_to_match_messages(
        self,
        ctx: PrincipalContext | None,
        match_id: str,
        callback: MessageCallback,
    ) -> ServiceResult[MatchSubscription]:
        """Push each new message of the match, decrypted, to `callback`."""
        return self._subscribe(
            ctx, f"match-{match_id}", MESSAGES, {"match_id": match_id}, self._message_view, callback
        )

    def subscribe_to_group_messages(
        self,
        ctx: PrincipalContext | None,
        group_id: str,
        callback: MessageCallback,
    ) -> ServiceResult[MatchSubscription]:
        return self._subscribe(
            ctx, f"group-{group_id}", GROUP_MESSAGES, {"group_id": group_id}, self._group_message_view, callback
        )


__all__ = [
    "GroupMembershipView",
    "GroupMessageView",
    "MATCH_TRANSITIONS",
    "MatchSubscription",
    "PeerFeedbackView",
    "PeerMatchView",
    "PeerMessageView",
    "PeerSupportService",
    "SupportGroupView",
    "SupporterProfileView",
    "select_supporter",
]
