"""Leaderboard and score-submission Pydantic schemas."""

from typing import Final, Literal

from pydantic import BaseModel, ConfigDict, Field

from .validation import DeviceCapabilities

Period = Literal["daily", "weekly", "alltime"]
PERIODS: Final[tuple[Period, ...]] = ("daily", "weekly", "alltime")

SCOPE_PATTERN: Final[str] = r"^[a-z0-9_-]{1,32}$"


class LeaderboardEntry(BaseModel):
    """One ranked result inside a leaderboard aggregate."""

    user_id: str
    username: str
    reaction_time: float
    timestamp: int
    scope: str = "global"
    period: Period = "alltime"
    flagged: bool = False


class LeaderboardData(BaseModel):
    """Stored aggregate: entries sorted ascending by reaction time."""

    entries: list[LeaderboardEntry] = Field(default_factory=list)
    last_updated: int = 0


class SubmissionResult(BaseModel):
    rank: int | None
    total_entries: int


class LeaderboardStats(BaseModel):
    total_entries: int
    average_time: float
    best_time: float
    worst_time: float
    median_time: float


class LeaderboardResponse(BaseModel):
    scope: str
    period: Period
    entries: list[LeaderboardEntry]


class UserRankResponse(BaseModel):
    user_id: str
    scope: str
    period: Period
    rank: int | None
    personal_best: LeaderboardEntry | None = None


class PercentileResponse(BaseModel):
    reaction_time: float
    percentile: int


class ScoreSubmitRequest(BaseModel):
    """Schema for submitting a finished game to the leaderboards."""

    model_config = ConfigDict(allow_inf_nan=False)

    reaction_time: float = Field(..., gt=0, le=60_000, description="Reaction time in ms")
    scope: str = Field(default="global", pattern=SCOPE_PATTERN)
    device: DeviceCapabilities | None = None


class ScoreSubmitResponse(BaseModel):
    action: Literal["accept", "flag"]
    confidence: float
    flags: list[str]
    severity: Literal["low", "medium", "high", "critical"]
    rating: str
    rank: int | None
    total_entries: int
    ranks: dict[str, int | None]
