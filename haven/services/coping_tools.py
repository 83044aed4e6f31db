"""
Coping Tools Service for Haven.

- Public catalogues (plaintext, no principal): coping tools, crisis resources
- Principal-owned: tool usage history (encrypted notes) and the safety plan
  (six independently encrypted sections, one plan per principal)

Safety plan saves are get-then-update-or-insert with no version check, so
concurrent saves are last-write-wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from haven.core.result import ServiceResult
from haven.core.session import PrincipalContext
from haven.core.store import Query
from haven.lib import errors
from haven.lib.exceptions import HavenError
from haven.models import SAFETY_PLAN_SECTIONS
from haven.schemas import SafetyPlanSave, ToolUsageCreate
from haven.services.base import RecordService

logger = logging.getLogger(__name__)

TOOLS = "coping_tools"
USAGE = "tool_usage"
SAFETY_PLANS = "safety_plans"
CRISIS_RESOURCES = "crisis_resources"


@dataclass
class CopingToolView:
    id: str
    name: str
    category: str
    description: str
    instructions: str
    duration_minutes: int
    difficulty_level: str
    tags: list[str] = field(default_factory=list)
    is_crisis_tool: bool = False
    evidence_base: str | None = None


@dataclass
class ToolUsageView:
    id: str
    tool_id: str
    created_at: datetime
    completed: bool = False
    mood_before: int | None = None
    mood_after: int | None = None
    effectiveness_rating: int | None = None
    duration_used: int | None = None
    notes: str | None = None
    decryption_failed: bool = False


@dataclass
class ToolEffectiveness:
    """Per-tool aggregate over usages that carry an effectiveness rating."""

    tool_id: str
    tool_name: str | None
    category: str | None
    usage_count: int
    avg_effectiveness: float
    avg_mood_improvement: float


@dataclass
class SafetyPlanView:
    id: str
    created_at: datetime
    updated_at: datetime
    warning_signs: str | None = None
    coping_strategies: str | None = None
    support_contacts: str | None = None
    professional_contacts: str | None = None
    environment_safety: str | None = None
    reasons_to_live: str | None = None
    decryption_failed: bool = False


@dataclass
class CrisisResourceView:
    id: str
    name: str
    type: str
    description: str
    availability: str
    country_code: str
    phone_number: str | None = None
    website_url: str | None = None
    language_support: list[str] = field(default_factory=list)


def _tool_view(row: dict[str, Any]) -> CopingToolView:
    return CopingToolView(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        description=row["description"],
        instructions=row["instructions"],
        duration_minutes=row["duration_minutes"],
        difficulty_level=row["difficulty_level"],
        tags=list(row.get("tags") or []),
        is_crisis_tool=bool(row["is_crisis_tool"]),
        evidence_base=row.get("evidence_base"),
    )


def _resource_view(row: dict[str, Any]) -> CrisisResourceView:
    return CrisisResourceView(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        description=row["description"],
        availability=row["availability"],
        country_code=row["country_code"],
        phone_number=row.get("phone_number"),
        website_url=row.get("website_url"),
        language_support=list(row.get("language_support") or []),
    )


class CopingToolsService(RecordService):
    """Coping tool catalogue, usage tracking, safety plan and crisis resources."""

    # -------------------------------------------------------------------------
    # Catalogue
    # -------------------------------------------------------------------------

    async def list_tools(
        self,
        category: str | None = None,
        is_crisis: bool | None = None,
    ) -> ServiceResult[list[CopingToolView]]:
        query = Query().order("name")
        if category:
            query.eq("category", category)
        if is_crisis is not None:
            query.eq("is_crisis_tool", is_crisis)
        try:
            rows = await self._store.select(TOOLS, query)
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success([_tool_view(row) for row in rows])

    async def get_tool(self, tool_id: str) -> ServiceResult[CopingToolView]:
        try:
            row = await self._store.select_single(TOOLS, Query().eq("id", tool_id))
        except HavenError as e:
            return ServiceResult.from_exception(e)
        if row is None:
            return ServiceResult.failure(errors.NOT_FOUND)
        return ServiceResult.success(_tool_view(row))

    async def list_crisis_resources(self, type: str | None = None) -> ServiceResult[list[CrisisResourceView]]:
        query = Query().eq("is_active", True).order("name")
        if type:
            query.eq("type", type)
        try:
            rows = await self._store.select(CRISIS_RESOURCES, query)
        except HavenError as e:
            return ServiceResult.from_exception(e)
        return ServiceResult.success([_resource_view(row) for row in rows])

    # -------------------------------------------------------------------------
    # Usage
    # -------------------------------------------------------------------------

    def _usage_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> ToolUsageView:
        plain, failed = self.decrypt_fields(ctx, USAGE, row)
        return ToolUsageView(
            id=row["id"],
            tool_id=row["tool_id"],
            created_at=row["created_at"],
            completed=bool(row["completed"]),
            mood_before=row.get("mood_before"),
            mood_after=row.get("mood_after"),
            effectiveness_rating=row.get("effectiveness_rating"),
            duration_used=row.get("duration_used"),
            notes=plain["notes"],
            decryption_failed=failed,
        )

    async def record_usage(
        self,
        ctx: PrincipalContext | None,
        usage: ToolUsageCreate | dict[str, Any],
    ) -> ServiceResult[ToolUsageView]:
        try:
            ctx = self.require_principal(ctx)
            data = ToolUsageCreate.model_validate(usage)
            values = {
                **data.model_dump(exclude={"notes"}),
                **ctx.identity.owner_values(),
                **self.encrypt_fields(ctx, USAGE, {"notes": data.notes}),
            }
            row = await self._store.insert(USAGE, values)
            return ServiceResult.success(self._usage_view(ctx, row))
        except (HavenError, ValidationError) as e:
            logger.warning("tool_usage_record_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)

    async def list_usage_history(
        self,
        ctx: PrincipalContext | None,
        limit: int = 20,
    ) -> ServiceResult[list[ToolUsageView]]:
        if ctx is None:
            return ServiceResult.success([])
        query = Query().match(ctx.identity.scope()).order("created_at", ascending=False).limit(limit)
        try:
            rows = await self._store.select(USAGE, query)
            return ServiceResult.success([self._usage_view(ctx, row) for row in rows])
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def get_tool_effectiveness(
        self,
        ctx: PrincipalContext | None,
    ) -> ServiceResult[list[ToolEffectiveness]]:
        """
        Aggregate rated usages per tool.

        avg_mood_improvement divides by all rated usages, counting usages
        without both mood scores as zero improvement.
        """
        if ctx is None:
            return ServiceResult.success([])
        query = Query().match(ctx.identity.scope()).not_null("effectiveness_rating")
        try:
            rows = await self._store.select(USAGE, query)
            tools = {row["id"]: row for row in await self._store.select(TOOLS)} if rows else {}
        except HavenError as e:
            return ServiceResult.from_exception(e)

        totals: dict[str, dict[str, float]] = {}
        for row in rows:
            stats = totals.setdefault(row["tool_id"], {"count": 0, "effectiveness": 0.0, "improvement": 0.0})
            stats["count"] += 1
            stats["effectiveness"] += row["effectiveness_rating"]
            if row.get("mood_before") and row.get("mood_after"):
                stats["improvement"] += row["mood_after"] - row["mood_before"]

        result = []
        for tool_id, stats in totals.items():
            tool = tools.get(tool_id, {})
            count = int(stats["count"])
            result.append(
                ToolEffectiveness(
                    tool_id=tool_id,
                    tool_name=tool.get("name"),
                    category=tool.get("category"),
                    usage_count=count,
                    avg_effectiveness=stats["effectiveness"] / count,
                    avg_mood_improvement=stats["improvement"] / count,
                )
            )
        result.sort(key=lambda item: item.avg_effectiveness, reverse=True)
        return ServiceResult.success(result)

    # -------------------------------------------------------------------------
    # Safety plan
    # -------------------------------------------------------------------------

    def _plan_view(self, ctx: PrincipalContext, row: dict[str, Any]) -> SafetyPlanView:
        plain, failed = self.decrypt_fields(ctx, SAFETY_PLANS, row)
        return SafetyPlanView(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            decryption_failed=failed,
            **plain,
        )

    async def get_safety_plan(self, ctx: PrincipalContext | None) -> ServiceResult[SafetyPlanView]:
        """The principal's safety plan, or data=None when none has been saved."""
        if ctx is None:
            return ServiceResult.success(None)
        try:
            row = await self._store.select_single(SAFETY_PLANS, Query().match(ctx.identity.scope()))
            return ServiceResult.success(self._plan_view(ctx, row) if row else None)
        except HavenError as e:
            return ServiceResult.from_exception(e)

    async def save_safety_plan(
        self,
        ctx: PrincipalContext | None,
        plan: SafetyPlanSave | dict[str, Any],
    ) -> ServiceResult[SafetyPlanView]:
        """Insert the plan on first save, update it in place afterwards."""
        try:
            ctx = self.require_principal(ctx)
            data = SafetyPlanSave.model_validate(plan)
            sections = {name: getattr(data, name) or None for name in SAFETY_PLAN_SECTIONS}
            encrypted = self.encrypt_fields(ctx, SAFETY_PLANS, sections)

            existing = await self._store.select_single(SAFETY_PLANS, Query().match(ctx.identity.scope()))
            if existing is None:
                row = await self._store.insert(SAFETY_PLANS, {**encrypted, **ctx.identity.owner_values()})
            else:
                rows = await self._store.update(SAFETY_PLANS, Query().eq("id", existing["id"]), encrypted)
                if not rows:
                    return ServiceResult.failure(errors.NOT_FOUND)
                row = rows[0]
            logger.info(
                "safety_plan_saved",
                extra={"principal": ctx.identity.log_id, "created": existing is None},
            )
            return ServiceResult.success(self._plan_view(ctx, row))
        except (HavenError, ValidationError) as e:
            logger.warning("safety_plan_save_failed", extra={"error": type(e).__name__})
            return ServiceResult.from_exception(e)


__all__ = [
    "CopingToolView",
    "CopingToolsService",
    "CrisisResourceView",
    "SafetyPlanView",
    "ToolEffectiveness",
    "ToolUsageView",
]
