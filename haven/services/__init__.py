"""
Domain services for Haven.

Every service operation takes the active PrincipalContext (or None) as its
first argument and returns a ServiceResult.

Services:
    - MoodService: check-ins, streaks, stats
    - CopingToolsService: tool catalogue, usage, safety plan, crisis resources
    - PeerSupportService: supporters, matching, chat, groups, feedback
    - InsightRecordService: stored insights, patterns, risk assessments
    - InsightEngine: trend/trigger/sleep analyses and risk assessment
    - AnonymousDataMigrator: anonymous -> authenticated upgrade
    - ProfileService: profile, privacy level, account deletion
"""

from .coping_tools import CopingToolsService
from .insight_engine import AnalysisResult, InsightEngine
from .insight_records import Insight, InsightRecordService, Pattern, Risk
from .migration import AnonymousDataMigrator, MigrationReport
from .mood_service import MoodService
from .peer_support import PeerSupportService
from .profiles import ErasureReport, ProfileService
from .text_generation import TextGenerationClient

__all__ = [
    "AnalysisResult",
    "AnonymousDataMigrator",
    "CopingToolsService",
    "ErasureReport",
    "Insight",
    "InsightEngine",
    "InsightRecordService",
    "MigrationReport",
    "MoodService",
    "Pattern",
    "PeerSupportService",
    "ProfileService",
    "Risk",
    "TextGenerationClient",
]
