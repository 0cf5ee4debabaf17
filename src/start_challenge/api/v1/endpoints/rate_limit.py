# src/start_challenge/api/v1/endpoints/rate_limit.py
"""Rate-limit status and administration endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status

from start_challenge.schemas.rate_limit import (
    RateLimitStatus,
    SuspiciousActivity,
    WhitelistEntry,
    WhitelistRequest,
)
from start_challenge.services.rate_limit import RateLimitAction

from ..dependencies import AdminPlayerDep, CurrentPlayerDep, RateLimiterDep

router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


@router.get("/status", response_model=RateLimitStatus)
def get_status(
    player: CurrentPlayerDep,
    limiter: RateLimiterDep,
    action: Annotated[RateLimitAction, Query()] = RateLimitAction.SCORE_SUBMISSION,
) -> RateLimitStatus:
    """Return the caller's usage of one action against their effective limits."""
    return limiter.status(player.user_id, action)


@router.get("/activity", response_model=SuspiciousActivity)
def get_own_activity(player: CurrentPlayerDep, limiter: RateLimiterDep) -> SuspiciousActivity:
    return limiter.detect_suspicious_activity(player.user_id)


@router.get("/activity/{user_id}", response_model=SuspiciousActivity)
def get_activity(user_id: str, _admin: AdminPlayerDep, limiter: RateLimiterDep) -> SuspiciousActivity:
    return limiter.detect_suspicious_activity(user_id)


@router.post("/whitelist/{user_id}", response_model=WhitelistEntry)
def add_to_whitelist(
    user_id: str,
    payload: WhitelistRequest,
    admin: AdminPlayerDep,
    limiter: RateLimiterDep,
) -> WhitelistEntry:
    """Raise a player's limits by the multiplier of the requested trust level."""
    return limiter.add_to_whitelist(user_id, payload.level, payload.reason, added_by=admin.user_id)


@router.delete("/whitelist/{user_id}")
def remove_from_whitelist(
    user_id: str, _admin: AdminPlayerDep, limiter: RateLimiterDep
) -> dict[str, Any]:
    if not limiter.remove_from_whitelist(user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Player is not whitelisted",
        )
    return {"user_id": user_id, "removed": True}


@router.post("/reset/{user_id}")
def reset_limits(user_id: str, _admin: AdminPlayerDep, limiter: RateLimiterDep) -> dict[str, Any]:
    """Clear counters, violations and any active ban for one player."""
    return {"user_id": user_id, "removed_keys": limiter.reset(user_id)}
