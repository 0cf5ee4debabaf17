"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data and of the JSON records kept in
storage, for serialization and validation.
"""

from .challenge import (
    Challenge,
    ChallengeAttempt,
    ChallengeCreateRequest,
    ChallengeCreateResponse,
    ChallengeResult,
    ChallengeSession,
    ChallengeStats,
    ChallengeSubmitRequest,
    DeterministicSession,
    ReplayValidationRequest,
    ReplayValidationResponse,
)
from .leaderboard import (
    LeaderboardData,
    LeaderboardEntry,
    LeaderboardStats,
    ScoreSubmitRequest,
    ScoreSubmitResponse,
)
from .replay import ReplayData
from .session import UserSession
from .validation import DeviceCapabilities

__all__ = [
    "Challenge", "ChallengeAttempt",
    "ChallengeCreateRequest", "ChallengeCreateResponse",
    "ChallengeResult", "ChallengeSession", "ChallengeStats", "ChallengeSubmitRequest",
    "DeterministicSession",
    "ReplayValidationRequest", "ReplayValidationResponse",
    "LeaderboardData", "LeaderboardEntry", "LeaderboardStats",
    "ScoreSubmitRequest", "ScoreSubmitResponse",
    "ReplayData",
    "UserSession",
    "DeviceCapabilities",
]
