"""Challenge-related Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from start_challenge.core.sequence import GameConfig

from .replay import ReplayData
from .validation import DeviceCapabilities

RatingName = Literal["perfect", "excellent", "good", "fair", "slow"]


class ChallengeAttempt(BaseModel):
    """One opponent's result; at most one per user and challenge."""

    user_id: str
    username: str
    reaction_time: float
    rating: RatingName
    completed_at: int


class Challenge(BaseModel):
    """Stored challenge record. Only ``attempts`` changes after creation."""

    id: str
    creator_id: str
    creator_name: str
    creator_time: float
    creator_rating: RatingName
    seed: int
    created_at: int
    expires_at: int
    game_config: GameConfig = Field(default_factory=GameConfig)
    flagged: bool = False
    attempts: list[ChallengeAttempt] = Field(default_factory=list)


class ChallengeCreateRequest(BaseModel):
    """Schema for creating a challenge from a finished game."""

    model_config = ConfigDict(allow_inf_nan=False)

    reaction_time: float = Field(..., gt=0, description="Creator reaction time in ms")
    rating: RatingName | None = None
    game_config: GameConfig | None = None


class ChallengeCreateResponse(BaseModel):
    challenge_id: str
    challenge_url: str
    expires_at: int


class GhostTiming(BaseModel):
    """Creator's run replayed alongside the opponent."""

    reaction_time: float
    random_delay: float
    light_timings: list[float]
    lights_out_at: float


class OpponentData(BaseModel):
    user_id: str
    username: str
    reaction_time: float
    rating: RatingName


class ChallengeSession(BaseModel):
    """Ephemeral view handed to a player accepting a challenge."""

    challenge: Challenge
    seed: int
    ghost_timing: GhostTiming
    is_active: bool
    opponent_data: OpponentData
    session_key: str


class ChallengeSubmitRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    reaction_time: float = Field(..., gt=0, description="Opponent reaction time in ms")
    rating: RatingName | None = None
    device: DeviceCapabilities | None = None
    replay_data: ReplayData | None = None


class ChallengeResult(BaseModel):
    challenge_id: str
    user_time: float
    opponent_time: float
    winner: Literal["user", "opponent", "tie"]
    margin_of_victory: int
    user_rating: RatingName
    opponent_rating: RatingName


class ReplayValidationRequest(BaseModel):
    replay_data: ReplayData


class ReplayValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str]
    confidence: float


class DeterministicSession(BaseModel):
    """Reference envelope stored when a player accepts a challenge."""

    challenge_id: str
    user_id: str
    seed: int
    config: GameConfig
    random_delay: float
    light_timings: list[float]
    lights_out_at: float
    sequence_hash: str
    created_at: int
    validation: ReplayValidationResponse | None = None


class CleanupResponse(BaseModel):
    removed: int


class ChallengeStats(BaseModel):
    total_active: int
    total_expired: int
    average_attempts: float
    most_popular_challenge: str | None = None
