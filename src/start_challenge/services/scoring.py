"""Score submission orchestration.

A submission passes, in order: basic entry validation, duplicate detection
against the player's recent history, and the plausibility pipeline. The
duplicate check and the history append happen in one atomic update, so two
concurrent submissions cannot both pass it. Rejected submissions are released
from the history and never reach a leaderboard; flagged ones are inserted
marked as flagged for review.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from start_challenge.core.sequence import GameConfig
from start_challenge.schemas.leaderboard import PERIODS, LeaderboardEntry
from start_challenge.schemas.validation import DeviceCapabilities
from start_challenge.services import keys
from start_challenge.services.leaderboard import (
    InvalidSubmissionError,
    LeaderboardService,
    check_duplicate_submission,
)
from start_challenge.services.plausibility import (
    PlausibilityOutcome,
    PlausibilityPipeline,
    SubmissionContext,
    ValidationAction,
)
from start_challenge.services.session import UserSessionService
from start_challenge.services.storage import StorageEngine, StorageError
from start_challenge.utils.timing import Rating, now_ms, rate_reaction_time

logger = logging.getLogger(__name__)


class SubmissionError(RuntimeError):
    """Base exception raised when a score cannot be accepted."""


class DuplicateSubmissionError(SubmissionError):
    """Raised when the same player resubmits too quickly or the same score."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class SubmissionRejectedError(SubmissionError):
    """Raised when the plausibility pipeline rejects a submission."""

    def __init__(self, outcome: PlausibilityOutcome) -> None:
        self.outcome = outcome
        self.flags = sorted(outcome.result.flags)
        self.confidence = outcome.result.confidence
        super().__init__(f"Submission rejected: {', '.join(self.flags) or 'low confidence'}")


@dataclass(frozen=True)
class ScoreOutcome:
    entry: LeaderboardEntry
    plausibility: PlausibilityOutcome
    rating: Rating
    ranks: dict[str, int | None]
    total_entries: int

    @property
    def rank(self) -> int | None:
        return self.ranks.get("alltime")


def _reserve_submission(record: dict[str, Any], limit: int) -> Callable[[Any], list[Any]]:
    """Append ``record`` to the history unless it duplicates a recent submission."""

    def transform(current: Any) -> list[Any]:
        history = [item for item in (current or []) if item != record]
        duplicate = check_duplicate_submission(
            history, record["reaction_time"], record["timestamp"]
        )
        if duplicate.is_duplicate:
            raise DuplicateSubmissionError(duplicate.message)
        history.append(record)
        return history[-limit:]

    return transform


def _release_submission(record: dict[str, Any]) -> Callable[[Any], list[Any]]:
    def transform(current: Any) -> list[Any]:
        return [item for item in (current or []) if item != record]

    return transform


def _mark_flagged(record: dict[str, Any]) -> Callable[[Any], list[Any]]:
    def transform(current: Any) -> list[Any]:
        return [{**item, "flagged": True} if item == record else item for item in current or []]

    return transform


class ScoreSubmissionService:
    """Screens submissions and feeds accepted ones into every leaderboard period."""

    def __init__(
        self,
        storage: StorageEngine,
        leaderboard: LeaderboardService,
        pipeline: PlausibilityPipeline,
        sessions: UserSessionService,
        *,
        history_limit: int = 100,
        history_ttl_seconds: int = 30 * 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._leaderboard = leaderboard
        self._pipeline = pipeline
        self._sessions = sessions
        self._history_limit = history_limit
        self._history_ttl_seconds = history_ttl_seconds
        self._clock = clock

    def load_history(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._storage.get(keys.user_history(user_id), default=[]) or [])

    def _release(self, history_key: str, record: dict[str, Any]) -> None:
        try:
            self._storage.atomic_update(
                history_key, _release_submission(record), ttl=self._history_ttl_seconds
            )
        except StorageError as exc:
            logger.warning("Could not release rejected submission on %s: %s", history_key, exc)

    def build_context(
        self,
        user_id: str,
        reaction_time: float,
        *,
        device: DeviceCapabilities | None = None,
        config: GameConfig | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> SubmissionContext:
        if history is None:
            history = self.load_history(user_id)
        timing = self._sessions.timing(user_id)
        return SubmissionContext(
            user_id=user_id,
            reaction_time=reaction_time,
            session_age_ms=timing.session_age_ms,
            game_duration_ms=timing.game_duration_ms,
            games_played=timing.games_played,
            device=device,
            history=tuple(float(item["reaction_time"]) for item in history),
            config=config or GameConfig(),
        )

    def screen(
        self,
        user_id: str,
        reaction_time: float,
        *,
        device: DeviceCapabilities | None = None,
        config: GameConfig | None = None,
    ) -> PlausibilityOutcome:
        """Run the plausibility pipeline; raises ``SubmissionRejectedError`` on reject."""
        outcome = self._pipeline.evaluate(
            self.build_context(user_id, reaction_time, device=device, config=config)
        )
        if outcome.action is ValidationAction.REJECT:
            raise SubmissionRejectedError(outcome)
        return outcome

    def submit(
        self,
        user_id: str,
        username: str,
        reaction_time: float,
        *,
        scope: str = "global",
        device: DeviceCapabilities | None = None,
    ) -> ScoreOutcome:
        timestamp = now_ms(self._clock)
        entry = LeaderboardEntry(
            user_id=user_id,
            username=username,
            reaction_time=reaction_time,
            timestamp=timestamp,
            scope=scope,
        )
        verdict = self._leaderboard.validate_submission(entry)
        if not verdict.is_valid:
            raise InvalidSubmissionError(verdict.flags)

        # Concurrent submissions from one player serialize on the history key
        record = {
            "submission_id": secrets.token_hex(8),
            "reaction_time": reaction_time,
            "timestamp": timestamp,
            "flagged": False,
        }
        history_key = keys.user_history(user_id)
        try:
            reserved = self._storage.atomic_update(
                history_key,
                _reserve_submission(record, self._history_limit),
                ttl=self._history_ttl_seconds,
            )
        except DuplicateSubmissionError as exc:
            logger.info("Duplicate submission from %s: %s", user_id, exc.message)
            raise
        history = [item for item in reserved if item != record]

        outcome = self._pipeline.evaluate(
            self.build_context(user_id, reaction_time, device=device, history=history)
        )
        if outcome.action is ValidationAction.REJECT:
            self._release(history_key, record)
            raise SubmissionRejectedError(outcome)

        flagged = outcome.action is ValidationAction.FLAG or verdict.action is ValidationAction.FLAG
        if flagged:
            self._storage.atomic_update(
                history_key, _mark_flagged(record), ttl=self._history_ttl_seconds
            )
        ranks: dict[str, int | None] = {}
        total_entries = 0
        for period in PERIODS:
            result = self._leaderboard.submit_score(
                entry.model_copy(update={"period": period, "flagged": flagged})
            )
            ranks[period] = result.rank
            if period == "alltime":
                total_entries = result.total_entries

        try:
            self._sessions.record_game_completed(user_id)
        except StorageError as exc:
            logger.warning("Could not update session for %s: %s", user_id, exc)

        return ScoreOutcome(
            entry=entry.model_copy(update={"flagged": flagged}),
            plausibility=outcome,
            rating=rate_reaction_time(reaction_time),
            ranks=ranks,
            total_entries=total_entries,
        )
