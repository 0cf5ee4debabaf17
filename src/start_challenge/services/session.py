"""Server-side player sessions feeding the session-integrity checks."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from start_challenge.schemas.session import UserSession
from start_challenge.services import keys
from start_challenge.services.storage import StorageEngine
from start_challenge.utils.timing import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionTiming:
    """Session measurements in milliseconds at submission time."""

    session_age_ms: float | None
    game_duration_ms: float | None
    games_played: int


class UserSessionService:
    """Tracks when a player's session and current game started."""

    def __init__(
        self,
        storage: StorageEngine,
        *,
        ttl_seconds: int = 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def _touch(self, user_id: str, mutate: Callable[[dict[str, Any], int], None]) -> UserSession:
        timestamp = now_ms(self._clock)

        def transform(current: Any) -> dict[str, Any]:
            session = dict(current or {"user_id": user_id, "started_at": timestamp})
            session["last_activity"] = timestamp
            mutate(session, timestamp)
            return session

        stored = self._storage.atomic_update(
            keys.user_session(user_id), transform, ttl=self._ttl_seconds
        )
        return UserSession.model_validate(stored)

    def start_session(self, user_id: str) -> UserSession:
        """Open a session, or refresh the one already running."""
        return self._touch(user_id, lambda session, _: None)

    def mark_game_started(self, user_id: str) -> UserSession:
        def mutate(session: dict[str, Any], timestamp: int) -> None:
            session["game_started_at"] = timestamp

        return self._touch(user_id, mutate)

    def record_game_completed(self, user_id: str) -> UserSession:
        def mutate(session: dict[str, Any], _: int) -> None:
            session["games_played"] = int(session.get("games_played", 0)) + 1
            session["game_started_at"] = None

        return self._touch(user_id, mutate)

    def get_session(self, user_id: str) -> UserSession | None:
        raw = self._storage.get(keys.user_session(user_id))
        return UserSession.model_validate(raw) if raw else None

    def timing(self, user_id: str) -> SessionTiming:
        """Measure the current session; games played includes the one being submitted."""
        session = self.get_session(user_id)
        if session is None:
            logger.info("No active session for %s", user_id)
            return SessionTiming(session_age_ms=None, game_duration_ms=None, games_played=1)
        current = now_ms(self._clock)
        game_duration = (
            float(current - session.game_started_at)
            if session.game_started_at is not None
            else None
        )
        return SessionTiming(
            session_age_ms=float(current - session.started_at),
            game_duration_ms=game_duration,
            games_played=session.games_played + 1,
        )
