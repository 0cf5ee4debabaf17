# tests/test_leaderboard.py
"""Tests for leaderboard aggregates and duplicate detection."""

from __future__ import annotations

import pytest

from start_challenge.schemas.leaderboard import LeaderboardEntry
from start_challenge.services.leaderboard import (
    SIMILAR_SCORE_MESSAGE,
    TOO_RAPID_MESSAGE,
    InvalidSubmissionError,
    check_duplicate_submission,
)
from start_challenge.services.plausibility import ValidationAction
from start_challenge.utils.timing import now_ms


def _entry(clock, user_id: str, reaction_time: float, **overrides) -> LeaderboardEntry:
    values = {
        "user_id": user_id,
        "username": user_id.title(),
        "reaction_time": reaction_time,
        "timestamp": now_ms(clock),
    }
    values.update(overrides)
    return LeaderboardEntry(**values)


def test_entries_sorted_ascending(leaderboard, clock) -> None:
    for user_id, reaction_time in (("c", 310.5), ("a", 190.2), ("b", 250.8)):
        leaderboard.submit_score(_entry(clock, user_id, reaction_time))
        clock.advance(1)
    board = leaderboard.get_leaderboard("global", "alltime")
    assert [entry.user_id for entry in board] == ["a", "b", "c"]


def test_rank_reported_on_submit(leaderboard, clock) -> None:
    leaderboard.submit_score(_entry(clock, "a", 200.1))
    result = leaderboard.submit_score(_entry(clock, "b", 150.3))
    assert result.rank == 1
    assert result.total_entries == 2


def test_board_capped_at_max_entries(leaderboard, clock) -> None:
    for index in range(120):
        leaderboard.submit_score(_entry(clock, f"user{index}", 150.0 + index))
        clock.advance_ms(10)
    board = leaderboard.get_leaderboard("global", "alltime", limit=None)
    assert len(board) == leaderboard.max_entries == 100
    times = [entry.reaction_time for entry in board]
    assert times == sorted(times)
    assert times[-1] == 249.0


def test_entry_too_slow_for_full_board_is_not_ranked(leaderboard, clock) -> None:
    for index in range(100):
        leaderboard.submit_score(_entry(clock, f"user{index}", 150.0 + index))
    result = leaderboard.submit_score(_entry(clock, "late", 900.4))
    assert result.rank is None
    assert result.total_entries == 100


def test_resubmitting_same_entry_is_idempotent(leaderboard, clock) -> None:
    entry = _entry(clock, "a", 200.7)
    leaderboard.submit_score(entry)
    leaderboard.submit_score(entry)
    assert len(leaderboard.get_leaderboard("global", "alltime")) == 1


def test_scopes_are_isolated(leaderboard, clock) -> None:
    leaderboard.submit_score(_entry(clock, "a", 200.7, scope="friends"))
    assert leaderboard.get_leaderboard("global", "alltime") == []
    assert len(leaderboard.get_leaderboard("friends", "alltime")) == 1


def test_daily_board_drops_old_entries(leaderboard, clock) -> None:
    for period in ("daily", "weekly", "alltime"):
        leaderboard.submit_score(_entry(clock, "a", 200.7, period=period))
    clock.advance(2 * 86_400)
    assert leaderboard.get_leaderboard("global", "daily") == []
    assert len(leaderboard.get_leaderboard("global", "weekly")) == 1
    assert len(leaderboard.get_leaderboard("global", "alltime")) == 1


def test_full_daily_board_makes_room_after_window(leaderboard, clock, engine) -> None:
    for index in range(100):
        leaderboard.submit_score(_entry(clock, f"user{index}", 150.0 + index, period="daily"))
    clock.advance(2 * 86_400)

    result = leaderboard.submit_score(_entry(clock, "late", 300.5, period="daily"))
    assert result.rank == 1
    assert result.total_entries == 1
    assert [entry.user_id for entry in leaderboard.get_leaderboard("global", "daily")] == ["late"]
    stored = engine.get("leaderboard:global:daily")
    assert len(stored["entries"]) == 1


def test_alltime_board_keeps_old_entries(leaderboard, clock) -> None:
    leaderboard.submit_score(_entry(clock, "early", 180.4))
    clock.advance(400 * 86_400)
    result = leaderboard.submit_score(_entry(clock, "late", 220.6))
    assert result.rank == 2
    assert result.total_entries == 2


def test_stats(leaderboard, clock) -> None:
    assert leaderboard.get_leaderboard_stats("global", "alltime").total_entries == 0
    for user_id, reaction_time in (("a", 200.0), ("b", 400.0), ("c", 300.0)):
        leaderboard.submit_score(_entry(clock, user_id, reaction_time))
    stats = leaderboard.get_leaderboard_stats("global", "alltime")
    assert stats.total_entries == 3
    assert stats.average_time == pytest.approx(300.0)
    assert stats.best_time == 200.0
    assert stats.worst_time == 400.0
    assert stats.median_time == 300.0


def test_percentile_higher_is_better(leaderboard, clock) -> None:
    assert leaderboard.get_user_percentile(250.0, "global", "alltime") == 100
    for index, reaction_time in enumerate((150.0, 200.0, 250.0, 300.0)):
        leaderboard.submit_score(_entry(clock, f"u{index}", reaction_time))
    assert leaderboard.get_user_percentile(100.0, "global", "alltime") == 100
    assert leaderboard.get_user_percentile(250.0, "global", "alltime") == 38
    assert leaderboard.get_user_percentile(1000.0, "global", "alltime") == 1


def test_user_rank_and_personal_best(leaderboard, clock) -> None:
    leaderboard.submit_score(_entry(clock, "a", 180.2))
    leaderboard.submit_score(_entry(clock, "b", 210.9))
    clock.advance(1)
    leaderboard.submit_score(_entry(clock, "b", 160.4, period="daily"))
    assert leaderboard.get_user_rank("b", "global", "alltime") == 2
    assert leaderboard.get_user_rank("nobody", "global", "alltime") is None
    best = leaderboard.get_user_personal_best("b", "global")
    assert best is not None
    assert best.reaction_time == 160.4


def test_remove_entry(leaderboard, clock) -> None:
    assert leaderboard.remove_entry("global", "alltime", "a") == 0
    leaderboard.submit_score(_entry(clock, "a", 180.2))
    clock.advance(1)
    leaderboard.submit_score(_entry(clock, "a", 190.2))
    leaderboard.submit_score(_entry(clock, "b", 200.2))
    assert leaderboard.remove_entry("global", "alltime", "a") == 2
    assert [entry.user_id for entry in leaderboard.get_leaderboard("global", "alltime")] == ["b"]


def test_validate_submission(leaderboard, clock) -> None:
    assert leaderboard.validate_submission(_entry(clock, "a", 200.1)).action is ValidationAction.ACCEPT

    stale = leaderboard.validate_submission(_entry(clock, "a", 200.1, timestamp=now_ms(clock) - 120_000))
    assert stale.action is ValidationAction.FLAG
    assert "STALE_SUBMISSION" in stale.flags

    future = _entry(clock, "a", 200.1, timestamp=now_ms(clock) + 60_000)
    with pytest.raises(InvalidSubmissionError) as excinfo:
        leaderboard.submit_score(future)
    assert excinfo.value.flags == ["FUTURE_TIMESTAMP"]

    invalid = leaderboard.validate_submission(_entry(clock, "a", -5.0))
    assert invalid.flags == {"INVALID_REACTION_TIME"}


def test_duplicate_rapid_resubmission() -> None:
    recent = [{"reaction_time": 250.0, "timestamp": 10_000}]
    check = check_duplicate_submission(recent, 400.0, 10_300)
    assert check.is_duplicate
    assert check.message == TOO_RAPID_MESSAGE


def test_duplicate_similar_score() -> None:
    recent = [{"reaction_time": 250.0, "timestamp": 10_000}]
    check = check_duplicate_submission(recent, 250.6, 11_500)
    assert check.is_duplicate
    assert check.message == SIMILAR_SCORE_MESSAGE


def test_not_duplicate_after_window() -> None:
    recent = [{"reaction_time": 250.0, "timestamp": 10_000}]
    assert not check_duplicate_submission(recent, 250.0, 13_000).is_duplicate
    assert not check_duplicate_submission(recent, 262.0, 11_000).is_duplicate
    assert not check_duplicate_submission([], 250.0, 10_000).is_duplicate
