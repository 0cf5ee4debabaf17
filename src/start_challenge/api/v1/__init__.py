# src/start_challenge/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import (
    challenges_router,
    game_router,
    leaderboard_router,
    rate_limit_router,
    scores_router,
    system_router,
)

__all__ = [
    "challenges_router",
    "game_router",
    "leaderboard_router",
    "rate_limit_router",
    "scores_router",
    "system_router",
]
