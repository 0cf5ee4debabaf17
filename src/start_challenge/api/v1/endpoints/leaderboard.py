# src/start_challenge/api/v1/endpoints/leaderboard.py
"""Leaderboard read endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Path, Query

from start_challenge.schemas.leaderboard import (
    SCOPE_PATTERN,
    LeaderboardResponse,
    LeaderboardStats,
    PercentileResponse,
    Period,
    UserRankResponse,
)

from ..dependencies import CurrentPlayerDep, LeaderboardServiceDep

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])

ScopePath = Annotated[str, Path(pattern=SCOPE_PATTERN)]
PeriodQuery = Annotated[Period, Query()]


@router.get("/{scope}", response_model=LeaderboardResponse)
def get_leaderboard(
    scope: ScopePath,
    leaderboard: LeaderboardServiceDep,
    period: PeriodQuery = "alltime",
    limit: Annotated[int, Query(ge=1, le=100)] = 25,
) -> LeaderboardResponse:
    """Return the fastest entries of a scope for the requested period."""
    entries = leaderboard.get_leaderboard(scope, period, limit)
    return LeaderboardResponse(scope=scope, period=period, entries=entries)


@router.get("/{scope}/stats", response_model=LeaderboardStats)
def get_leaderboard_stats(
    scope: ScopePath,
    leaderboard: LeaderboardServiceDep,
    period: PeriodQuery = "alltime",
) -> LeaderboardStats:
    return leaderboard.get_leaderboard_stats(scope, period)


@router.get("/{scope}/rank", response_model=UserRankResponse)
def get_my_rank(
    scope: ScopePath,
    player: CurrentPlayerDep,
    leaderboard: LeaderboardServiceDep,
    period: PeriodQuery = "alltime",
) -> UserRankResponse:
    """Return the caller's rank and personal best in a scope."""
    return UserRankResponse(
        user_id=player.user_id,
        scope=scope,
        period=period,
        rank=leaderboard.get_user_rank(player.user_id, scope, period),
        personal_best=leaderboard.get_user_personal_best(player.user_id, scope),
    )


@router.get("/{scope}/percentile", response_model=PercentileResponse)
def get_percentile(
    scope: ScopePath,
    leaderboard: LeaderboardServiceDep,
    reaction_time: Annotated[float, Query(gt=0, allow_inf_nan=False)],
    period: PeriodQuery = "alltime",
) -> PercentileResponse:
    return PercentileResponse(
        reaction_time=reaction_time,
        percentile=leaderboard.get_user_percentile(reaction_time, scope, period),
    )


@router.delete("/{scope}/{period}/me")
def remove_my_entries(
    scope: ScopePath,
    period: Period,
    player: CurrentPlayerDep,
    leaderboard: LeaderboardServiceDep,
) -> dict[str, int]:
    """Withdraw the caller's entries from one leaderboard."""
    return {"removed": leaderboard.remove_entry(scope, period, player.user_id)}
