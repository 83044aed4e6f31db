"""
Mood Service for Haven.

Mood check-ins, the per-principal check-in streak, and summary stats.

Data Classification: SENSITIVE
- notes, triggers, gratitude are encrypted before they reach the store
- mood/energy/anxiety/sleep scores are plaintext

Streak rules (UTC calendar days):
- first check-in: streak 1
- another check-in on the same day: streak unchanged
- check-in on the day after the last one: streak + 1
- any longer gap: streak resets to 1
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import ValidationError

from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.core.store import Query, RecordStore
from haven.lib.exceptions import HavenError, StoreError
from haven.models.base import utc_now
from haven.schemas import MoodEntryCreate
from haven.services.base import RecordService

logger = logging.getLogger(__name__)

ENTRIES = "mood_entries"
STREAKS = "mood_streaks"

# Difference between recent and previous weekly averages that counts as a trend
TREND_THRESHOLD = 0.5

MoodTrend = Literal["improving", "declining", "stable"]


@dataclass
class MoodEntryView:
    """Decrypted mood entry."""

    id: str
    mood_score: int
    created_at: datetime
    check_in_type: str = "quick"
    energy_level: int | None = None
    anxiety_level: int | None = None
    sleep_quality: int | None = None
    notes: str | None = None
    triggers: list[str] | None = None
    gratitude: str | None = None
    user_id: str | None = None
    anonymous_id: str | None = None
    decryption_failed: bool = False


@dataclass
class MoodStreakView:
    current_streak: int = 0
    longest_streak: int = 0
    total_check_ins: int = 0
    last_check_in: datetime | None = None
    id: str | None = None


@dataclass
class MoodStats:
    average_mood: float = 0.0
    mood_trend: MoodTrend = "stable"
    total_entries: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_check_in: datetime | None = None
    flagged_entries: int = field(default=0)


def next_streak(
    streak: dict[str, Any] | None,
    check_in: datetime,
) -> dict[str, Any]:
    """Compute the streak counters after a check-in at `check_in`."""
    if streak is None or streak.get("last_check_in") is None:
        current = 1
        longest = 1
        total = 1
    else:
        last_day = streak["last_check_in"].date()
        today = check_in.date()
        if today == last_day:
            current = streak["current_streak"]
        elif today - last_day == timedelta(days=1):
            current = streak["current_streak"] + 1
        else:
            current = 1
        longest = max(streak["longest_streak"], current)
        total = streak["total_check_ins"] + 1
    return {
        "current_streak": current,
        "longest_streak": longest,
        "total_check_ins": total,
        "last_check_in": check_in,
    }


class MoodService(RecordService):
    """Mood entries and streaks scoped to the active principal."""

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(store)
        self._clock = clock

    def _to_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> MoodEntryView:
        plain, failed = self.decrypt_fields(ctx, ENTRIES, row)
        return MoodEntryView(
            id=row["id"],
            mood_score=row["mood_score"],
            created_at=row["created_at"],
            check_in_type=row["check_in_type"],
            energy_level=row.get("energy_level"),
            anxiety_level=row.get("anxiety_level"),
            sleep_quality=row.get("sleep_quality"),
            notes=plain["notes"],
            triggers=plain["triggers"],
            gratitude=plain["gratitude"],
            user_id=row.get("user_id"),
            anonymous_id=row.get("anonymous_id"),
            decryption_failed=failed,
        )

    async def create_entry(
        self,
        ctx: PrincipalContext | None,
        entry: MoodEntryCreate | dict[str, Any],
    ) -> ServiceResult[MoodEntryView]:
        """Validate, encrypt and store a check-in, then advance the streak."""
        try:
            ctx = self.require_principal(ctx)
            data = MoodEntryCreate.model_validate(entry)
            values = {
                "mood_score": data.mood_score,
                "energy_level": data.energy_level,
                "anxiety_level": data.anxiety_level,
                "sleep_quality": data.sleep_quality,
                "check_in_type": data.check_in_type,
                **ctx.identity.owner_values(),
                **self.encrypt_fields(
                    ctx,
                    ENTRIES,
                    {"notes": data.notes, "triggers": data.triggers, "gratitude": data.gratitude},
                ),
            }
            row = await self._store.insert(ENTRIES, values)
        except (HavenError, ValidationError) as e:
            logger.warning("mood_entry_create_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

        try:
            await self._advance_streak(ctx, row["created_at"])
        except StoreError:
            # The entry itself is stored; the streak catches up on the next check-in
            logger.exception("mood_streak_update_failed", extra={"principal": ctx.identity.log_id})

        logger.info("mood_entry_created", extra={"principal": ctx.identity.log_id})
        return ServiceResult.success(self._to_view(ctx, row))

    async def _advance_streak(self, ctx: PrincipalContext, check_in: datetime) -> None:
        scope = Query().match(ctx.identity.scope())
        existing = await self._store.select_single(STREAKS, scope)
        values = next_streak(existing, check_in)
        if existing is None:
            await self._store.insert(STREAKS, {**values, **ctx.identity.owner_values()})
        else:
            await self._store.update(STREAKS, Query().eq("id", existing["id"]), values)

    async def list_entries(
        self,
        ctx: PrincipalContext | None,
        limit: int = 30,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ServiceResult[list[MoodEntryView]]:
        """Newest-first entries, optionally bounded to [since, until)."""
        if ctx is None:
            return ServiceResult.success([])
        query = Query().match(ctx.identity.scope())
        if since is not None:
            query.gte("created_at", since)
        if until is not None:
            query.lt("created_at", until)
        query.order("created_at", ascending=False).limit(limit)
        try:
            rows = await self._store.select(ENTRIES, query)
            return ServiceResult.success([self._to_view(ctx, row) for row in rows])
        except HavenError as e:
            logger.warning("mood_entries_list_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def get_todays_entry(self, ctx: PrincipalContext | None) -> ServiceResult[MoodEntryView]:
        """Latest entry created today (UTC), or data=None."""
        if ctx is None:
            return ServiceResult.success(None)
        now = self._clock()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        result = await self.list_entries(ctx, limit=1, since=start, until=start + timedelta(days=1))
        if not result.ok:
            return ServiceResult(error=result.error)
        return ServiceResult.success(result.data[0] if result.data else None)

    async def get_streak(self, ctx: PrincipalContext | None) -> ServiceResult[MoodStreakView]:
        if ctx is None:
            return ServiceResult.success(None)
        try:
            row = await self._store.select_single(STREAKS, Query().match(ctx.identity.scope()))
        except HavenError as e:
            return ServiceResult.from_exception(e)
        if row is None:
            return ServiceResult.success(None)
        return ServiceResult.success(
            MoodStreakView(
                id=row["id"],
                current_streak=row["current_streak"],
                longest_streak=row["longest_streak"],
                total_check_ins=row["total_check_ins"],
                last_check_in=row["last_check_in"],
            )
        )

    async def get_stats(self, ctx: PrincipalContext | None) -> ServiceResult[MoodStats]:
        """Average, weekly trend and streak figures over the last 30 entries."""
        entries_result = await self.list_entries(ctx, limit=30)
        if not entries_result.ok:
            return ServiceResult(error=entries_result.error)
        streak_result = await self.get_streak(ctx)
        if not streak_result.ok:
            return ServiceResult(error=streak_result.error)

        entries = entries_result.data or []
        streak = streak_result.data
        if not entries:
            return ServiceResult.success(MoodStats())

        average = sum(e.mood_score for e in entries) / len(entries)
        return ServiceResult.success(
            MoodStats(
                average_mood=round(average, 1),
                mood_trend=weekly_trend([e.mood_score for e in entries]),
                total_entries=streak.total_check_ins if streak and streak.total_check_ins else len(entries),
                current_streak=streak.current_streak if streak else 0,
                longest_streak=streak.longest_streak if streak else 0,
                last_check_in=entries[0].created_at,
                flagged_entries=sum(1 for e in entries if e.decryption_failed),
            )
        )


def weekly_trend(scores: list[int]) -> MoodTrend:
    """Compare the 7 most recent scores with the 7 before them (newest first)."""
    recent, previous = scores[:7], scores[7:14]
    if not recent or not previous:
        return "stable"
    difference = sum(recent) / len(recent) - sum(previous) / len(previous)
    if difference > TREND_THRESHOLD:
        return "improving"
    if difference < -TREND_THRESHOLD:
        return "declining"
    return "stable"


__all__ = [
    "MoodEntryView",
    "MoodService",
    "MoodStats",
    "MoodStreakView",
    "next_streak",
    "weekly_trend",
]
