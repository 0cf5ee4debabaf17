# src/start_challenge/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .challenges import router as challenges_router
from .game import router as game_router
from .leaderboard import router as leaderboard_router
from .rate_limit import router as rate_limit_router
from .scores import router as scores_router
from .system import router as system_router

__all__ = [
    "challenges_router",
    "game_router",
    "leaderboard_router",
    "rate_limit_router",
    "scores_router",
    "system_router",
]
