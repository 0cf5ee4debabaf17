"""Rate-limit Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field

TrustLevelName = Literal["verified", "moderator", "admin"]


class WindowCounts(BaseModel):
    """One number per sliding window."""

    minute: int
    hour: int
    day: int


class RateLimitStatus(BaseModel):
    """Current usage of one action against the caller's effective limits."""

    action: str
    limits: WindowCounts
    usage: WindowCounts
    remaining: WindowCounts
    reset_times: WindowCounts
    is_limited: bool
    penalty_level: int = 0
    banned_until: int | None = None
    whitelist_level: TrustLevelName | None = None


class SuspiciousActivity(BaseModel):
    user_id: str
    suspicion_score: float
    flags: list[str]
    is_suspicious: bool
    recommendation: Literal["allow", "monitor", "block"]
    timestamp: int


class WhitelistRequest(BaseModel):
    level: TrustLevelName
    reason: str = Field(..., min_length=1, max_length=200)


class WhitelistEntry(BaseModel):
    user_id: str
    level: TrustLevelName
    reason: str
    added_at: int
    added_by: str
