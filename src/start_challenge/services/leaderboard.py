"""Leaderboard services: bounded, sorted score aggregates per scope and period."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Final

from start_challenge.schemas.leaderboard import (
    PERIODS,
    LeaderboardData,
    LeaderboardEntry,
    LeaderboardStats,
    Period,
    SubmissionResult,
)
from start_challenge.services import keys
from start_challenge.services.plausibility import ValidationResult
from start_challenge.services.storage import StorageEngine
from start_challenge.utils.timing import now_ms

logger = logging.getLogger(__name__)

DAY_MS: Final[int] = 86_400_000
PERIOD_WINDOWS_MS: Final[dict[str, int]] = {"daily": DAY_MS, "weekly": 7 * DAY_MS}

MAX_FUTURE_SKEW_MS: Final[int] = 5_000
STALE_SUBMISSION_MS: Final[int] = 60_000

RAPID_WINDOW_MS: Final[int] = 500
SIMILAR_WINDOW_MS: Final[int] = 2_000
TOO_RAPID_MESSAGE: Final[str] = "Submissions too rapid - please wait a moment between games"
SIMILAR_SCORE_MESSAGE: Final[str] = "Similar score submitted recently"


class LeaderboardError(RuntimeError):
    """Base exception raised for leaderboard failures."""


class InvalidSubmissionError(LeaderboardError, ValueError):
    """Raised when an entry fails basic submission validation."""

    def __init__(self, flags: Iterable[str]) -> None:
        self.flags = sorted(flags)
        super().__init__(f"Submission validation failed: {', '.join(self.flags)}")


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    message: str
    existing: Mapping[str, Any] | None = None


def check_duplicate_submission(
    recent: Iterable[Mapping[str, Any]], reaction_time: float, now: int
) -> DuplicateCheck:
    """Detect resubmissions against a player's recent ``{reaction_time, timestamp}`` records.

    Any earlier submission inside the rapid window blocks first; otherwise an
    identical time within 2s, or a near-identical one within 500ms, counts as a
    duplicate.
    """
    records = [record for record in recent if now - int(record["timestamp"]) >= 0]
    for record in records:
        if now - int(record["timestamp"]) <= RAPID_WINDOW_MS:
            return DuplicateCheck(True, TOO_RAPID_MESSAGE, record)

    for record in records:
        gap = now - int(record["timestamp"])
        difference = abs(float(record["reaction_time"]) - reaction_time)
        if (difference <= 1 and gap <= SIMILAR_WINDOW_MS) or (
            difference <= 3 and gap <= RAPID_WINDOW_MS
        ):
            return DuplicateCheck(True, SIMILAR_SCORE_MESSAGE, record)

    return DuplicateCheck(False, "No duplicate found")


def _insert_entry(
    entry: LeaderboardEntry, max_entries: int, timestamp: int
) -> Callable[[Any], dict[str, Any]]:
    window = PERIOD_WINDOWS_MS.get(entry.period)
    cutoff = None if window is None else timestamp - window

    def transform(current: Any) -> dict[str, Any]:
        board = LeaderboardData.model_validate(current) if current else LeaderboardData()
        # Re-applying the same submission replaces it instead of duplicating it
        entries = [
            existing
            for existing in board.entries
            if not (existing.user_id == entry.user_id and existing.timestamp == entry.timestamp)
            and (cutoff is None or existing.timestamp >= cutoff)
        ]
        entries.append(entry)
        entries.sort(key=lambda item: (item.reaction_time, item.timestamp))
        return LeaderboardData(
            entries=entries[:max_entries], last_updated=timestamp
        ).model_dump(mode="json")

    return transform


def _remove_entries(
    user_id: str, timestamp: int | None, timestamp_now: int
) -> Callable[[Any], dict[str, Any]]:
    def transform(current: Any) -> dict[str, Any]:
        board = LeaderboardData.model_validate(current) if current else LeaderboardData()
        entries = [
            entry
            for entry in board.entries
            if not (
                entry.user_id == user_id
                and (timestamp is None or entry.timestamp == timestamp)
            )
        ]
        return LeaderboardData(entries=entries, last_updated=timestamp_now).model_dump(mode="json")

    return transform


class LeaderboardService:
    """Ranked leaderboards stored as capped, sorted aggregates."""

    def __init__(
        self,
        storage: StorageEngine,
        *,
        max_entries: int = 100,
        ttl_seconds: int = 30 * 86_400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def validate_submission(self, entry: LeaderboardEntry) -> ValidationResult:
        """Sanity-check an entry before it may touch a leaderboard."""
        if not entry.user_id or not entry.username:
            return ValidationResult.from_confidence(0.0, ["MISSING_FIELDS"], reject=True)
        if not math.isfinite(entry.reaction_time) or entry.reaction_time <= 0:
            return ValidationResult.from_confidence(
                0.0, ["INVALID_REACTION_TIME"], reject=True
            )
        current = now_ms(self._clock)
        if entry.timestamp > current + MAX_FUTURE_SKEW_MS:
            return ValidationResult.from_confidence(0.0, ["FUTURE_TIMESTAMP"], reject=True)
        if current - entry.timestamp > STALE_SUBMISSION_MS:
            return ValidationResult.from_confidence(0.7, ["STALE_SUBMISSION"])
        return ValidationResult.from_confidence(1.0)

    def submit_score(self, entry: LeaderboardEntry) -> SubmissionResult:
        """Insert ``entry`` into its ``(scope, period)`` board and report its rank."""
        verdict = self.validate_submission(entry)
        if not verdict.is_valid:
            raise InvalidSubmissionError(verdict.flags)

        stored = self._storage.atomic_update(
            keys.leaderboard(entry.scope, entry.period),
            _insert_entry(entry, self._max_entries, now_ms(self._clock)),
            ttl=self._ttl_seconds,
        )
        board = LeaderboardData.model_validate(stored)
        rank = next(
            (
                index
                for index, existing in enumerate(board.entries, start=1)
                if existing.user_id == entry.user_id and existing.timestamp == entry.timestamp
            ),
            None,
        )
        return SubmissionResult(rank=rank, total_entries=len(board.entries))

    def _load(self, scope: str, period: Period) -> list[LeaderboardEntry]:
        raw = self._storage.get(keys.leaderboard(scope, period), default=None)
        if not raw:
            return []
        entries = LeaderboardData.model_validate(raw).entries
        window = PERIOD_WINDOWS_MS.get(period)
        if window is None:
            return entries
        cutoff = now_ms(self._clock) - window
        return [entry for entry in entries if entry.timestamp >= cutoff]

    def get_leaderboard(
        self, scope: str, period: Period, limit: int | None = 25
    ) -> list[LeaderboardEntry]:
        entries = self._load(scope, period)
        return entries if limit is None else entries[:limit]

    def get_user_rank(self, user_id: str, scope: str, period: Period) -> int | None:
        for index, entry in enumerate(self._load(scope, period), start=1):
            if entry.user_id == user_id:
                return index
        return None

    def get_user_personal_best(self, user_id: str, scope: str) -> LeaderboardEntry | None:
        best: LeaderboardEntry | None = None
        for period in PERIODS:
            for entry in self._load(scope, period):
                if entry.user_id == user_id and (
                    best is None or entry.reaction_time < best.reaction_time
                ):
                    best = entry
        return best

    def get_leaderboard_stats(self, scope: str, period: Period) -> LeaderboardStats:
        times = sorted(entry.reaction_time for entry in self._load(scope, period))
        if not times:
            return LeaderboardStats(
                total_entries=0, average_time=0.0, best_time=0.0, worst_time=0.0, median_time=0.0
            )
        return LeaderboardStats(
            total_entries=len(times),
            average_time=sum(times) / len(times),
            best_time=times[0],
            worst_time=times[-1],
            median_time=times[len(times) // 2],
        )

    def get_user_percentile(self, reaction_time: float, scope: str, period: Period) -> int:
        """Percentile of ``reaction_time`` (higher is better), clamped to 1..100."""
        times = [entry.reaction_time for entry in self._load(scope, period)]
        if len(times) <= 1:
            return 100
        better = sum(1 for value in times if value > reaction_time)
        equal = sum(1 for value in times if value == reaction_time)
        percentile = (better + 0.5 * equal) / len(times) * 100
        return round(max(1.0, min(100.0, percentile)))

    def remove_entry(
        self, scope: str, period: Period, user_id: str, timestamp: int | None = None
    ) -> int:
        """Remove a player's entries (or one of them); returns how many were dropped."""
        key = keys.leaderboard(scope, period)
        raw = self._storage.get(key, default=None)
        if not raw:
            return 0
        before = len(LeaderboardData.model_validate(raw).entries)
        stored = self._storage.atomic_update(
            key,
            _remove_entries(user_id, timestamp, now_ms(self._clock)),
            ttl=self._ttl_seconds,
        )
        after = len(LeaderboardData.model_validate(stored).entries)
        removed = max(0, before - after)
        if removed:
            logger.info("Removed %d %s/%s entries for %s", removed, scope, period, user_id)
        return removed
