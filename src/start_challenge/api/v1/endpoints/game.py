# src/start_challenge/api/v1/endpoints/game.py
"""Game lifecycle endpoints that feed the session-integrity checks."""

from __future__ import annotations

from fastapi import APIRouter

from start_challenge.schemas.session import UserSession

from ..dependencies import CurrentPlayerDep, SessionServiceDep

router = APIRouter(prefix="/game", tags=["game"])


@router.post("/init", response_model=UserSession)
def init_session(player: CurrentPlayerDep, sessions: SessionServiceDep) -> UserSession:
    """Open (or refresh) the player's server-side session."""
    return sessions.start_session(player.user_id)


@router.post("/start", response_model=UserSession)
def start_game(player: CurrentPlayerDep, sessions: SessionServiceDep) -> UserSession:
    """Mark the moment the player's next lights-out sequence began."""
    return sessions.mark_game_started(player.user_id)
