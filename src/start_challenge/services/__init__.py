# src/start_challenge/services/__init__.py
"""Business logic services for the F1 Start Challenge application."""

from .audit import ValidationAuditLog
from .challenge import ChallengeService
from .leaderboard import LeaderboardService
from .plausibility import PlausibilityPipeline
from .scoring import ScoreSubmissionService
from .session import UserSessionService
from .storage import StorageEngine

__all__ = [
    "ChallengeService",
    "LeaderboardService",
    "PlausibilityPipeline",
    "ScoreSubmissionService",
    "StorageEngine",
    "UserSessionService",
    "ValidationAuditLog",
]
