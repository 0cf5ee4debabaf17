# tests/test_scoring.py
"""End-to-end tests for score submission through sessions, validation and leaderboards."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from start_challenge.services.leaderboard import TOO_RAPID_MESSAGE, InvalidSubmissionError
from start_challenge.services.plausibility import Severity, ValidationAction
from start_challenge.services.scoring import DuplicateSubmissionError, SubmissionRejectedError


def _play(sessions, clock, user_id: str, duration_ms: float = 7000) -> None:
    sessions.start_session(user_id)
    sessions.mark_game_started(user_id)
    clock.advance_ms(duration_ms)


def test_plausible_time_is_accepted_and_ranked(scoring, sessions, leaderboard, clock) -> None:
    _play(sessions, clock, "alice")
    outcome = scoring.submit("alice", "Alice", 180.0)

    assert outcome.plausibility.action is ValidationAction.ACCEPT
    assert outcome.rating == "perfect"
    assert outcome.rank == 1
    assert outcome.ranks == {"daily": 1, "weekly": 1, "alltime": 1}
    assert not outcome.entry.flagged
    for period in ("daily", "weekly", "alltime"):
        board = leaderboard.get_leaderboard("global", period)
        assert [entry.user_id for entry in board] == ["alice"]


def test_impossible_time_is_rejected(scoring, sessions, leaderboard, clock) -> None:
    _play(sessions, clock, "alice")
    with pytest.raises(SubmissionRejectedError) as excinfo:
        scoring.submit("alice", "Alice", 40.0)
    assert "PHYSICALLY_IMPOSSIBLE" in excinfo.value.flags
    assert excinfo.value.outcome.severity is Severity.CRITICAL
    assert leaderboard.get_leaderboard("global", "alltime") == []


def test_rapid_resubmission_is_blocked(scoring, sessions, clock) -> None:
    _play(sessions, clock, "alice")
    scoring.submit("alice", "Alice", 231.7)
    clock.advance_ms(300)
    with pytest.raises(DuplicateSubmissionError) as excinfo:
        scoring.submit("alice", "Alice", 245.2)
    assert excinfo.value.message == TOO_RAPID_MESSAGE


def test_missing_session_is_flagged_not_rejected(scoring, leaderboard) -> None:
    outcome = scoring.submit("ghost", "Ghost", 234.7)
    assert outcome.plausibility.action is ValidationAction.FLAG
    assert "MISSING_SESSION_DATA" in outcome.plausibility.result.flags
    assert outcome.entry.flagged
    board = leaderboard.get_leaderboard("global", "alltime")
    assert board[0].flagged


def test_history_feeds_outlier_check(scoring, sessions, clock) -> None:
    for reaction_time in (251.3, 262.8, 244.1, 258.6):
        _play(sessions, clock, "bob")
        scoring.submit("bob", "Bob", reaction_time)
    assert len(scoring.load_history("bob")) == 4

    _play(sessions, clock, "bob")
    outcome = scoring.submit("bob", "Bob", 131.2)
    assert "STATISTICAL_OUTLIER" in outcome.plausibility.result.flags
    assert outcome.entry.flagged


def test_game_completion_updates_session(scoring, sessions, clock) -> None:
    _play(sessions, clock, "carol")
    scoring.submit("carol", "Carol", 301.9)
    session = sessions.get_session("carol")
    assert session.games_played == 1
    assert session.game_started_at is None


def test_entry_without_username_rejected(scoring) -> None:
    with pytest.raises(InvalidSubmissionError):
        scoring.submit("dave", "", 250.1)


def test_audit_log_records_verdicts(scoring, sessions, audit_log, clock) -> None:
    _play(sessions, clock, "erin")
    scoring.submit("erin", "Erin", 227.4)
    clock.advance_ms(3000)
    with pytest.raises(SubmissionRejectedError):
        scoring.submit("erin", "Erin", 12.3)

    log = audit_log.get_user_log("erin")
    assert [entry["result"]["action"] for entry in log] == ["accept", "reject"]
    metrics = audit_log.get_hourly_metrics()
    assert metrics["total"] == 2
    assert metrics["by_action"]["reject"] == 1
    assert metrics["top_flags"]["PHYSICALLY_IMPOSSIBLE"] == 1

    record = audit_log.get_flag_record("erin")
    assert record is not None
    assert record["flag_count"] == 1
    assert "PHYSICALLY_IMPOSSIBLE" in record["last_flags"]


def test_concurrent_identical_submissions_admit_one(scoring, sessions, leaderboard, clock) -> None:
    _play(sessions, clock, "dup")
    barrier = threading.Barrier(2)

    def submit(_: int) -> str:
        barrier.wait()
        try:
            scoring.submit("dup", "Dup", 187.3)
        except DuplicateSubmissionError as exc:
            return exc.message
        return "ok"

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = sorted(pool.map(submit, range(2)))

    assert results == sorted(["ok", TOO_RAPID_MESSAGE])
    assert len(scoring.load_history("dup")) == 1
    assert [entry.user_id for entry in leaderboard.get_leaderboard("global", "alltime")] == ["dup"]


def test_rejected_submission_is_released_from_history(scoring, sessions, clock) -> None:
    _play(sessions, clock, "frank")
    with pytest.raises(SubmissionRejectedError):
        scoring.submit("frank", "Frank", 31.4)
    assert scoring.load_history("frank") == []

    clock.advance_ms(200)
    outcome = scoring.submit("frank", "Frank", 241.8)
    assert outcome.plausibility.action is ValidationAction.ACCEPT


def test_flagged_submission_is_marked_in_history(scoring) -> None:
    scoring.submit("ghost", "Ghost", 238.1)
    history = scoring.load_history("ghost")
    assert len(history) == 1
    assert history[0]["flagged"] is True
