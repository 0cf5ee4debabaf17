# tests/test_plausibility.py
"""Tests for the plausibility validation pipeline."""

from __future__ import annotations

import pytest

from start_challenge.schemas.validation import DeviceCapabilities
from start_challenge.services.plausibility import (
    Flag,
    PlausibilityPipeline,
    Severity,
    SubmissionContext,
    ValidationAction,
    ValidationResult,
    assess_severity,
    check_bounds,
    check_device_capabilities,
    check_session_integrity,
    check_statistical_outlier,
    combine_results,
    default_checks,
)

HEALTHY_SESSION = {"session_age_ms": 6000.0, "game_duration_ms": 6000.0, "games_played": 1}


def _ctx(reaction_time: float, **overrides) -> SubmissionContext:
    values = {"user_id": "player", "reaction_time": reaction_time, **HEALTHY_SESSION}
    values.update(overrides)
    return SubmissionContext(**values)


@pytest.mark.parametrize("reaction_time", [0.1, 12.5, 49.9])
def test_physically_impossible_times_rejected(reaction_time: float) -> None:
    outcome = PlausibilityPipeline(default_checks()).evaluate(_ctx(reaction_time))
    assert outcome.action is ValidationAction.REJECT
    assert Flag.PHYSICALLY_IMPOSSIBLE.value in outcome.result.flags
    assert outcome.severity is Severity.CRITICAL


@pytest.mark.parametrize("reaction_time", [123.4, 187.3, 251.7, 399.2])
def test_human_times_with_healthy_session_accepted(reaction_time: float) -> None:
    outcome = PlausibilityPipeline(default_checks()).evaluate(_ctx(reaction_time))
    assert outcome.action is ValidationAction.ACCEPT
    assert outcome.result.flags == frozenset()
    assert outcome.severity is Severity.LOW


def test_superhuman_band_is_flagged_not_rejected() -> None:
    result = check_bounds(_ctx(87.3))
    assert result.action is ValidationAction.FLAG
    assert result.flags == {Flag.SUPERHUMAN.value}
    assert result.confidence == pytest.approx(0.1)


def test_suspicious_band() -> None:
    result = check_bounds(_ctx(113.7))
    assert result.flags == {Flag.SUSPICIOUS.value}
    assert result.confidence == pytest.approx(0.3)


def test_unusually_slow_still_accepted() -> None:
    result = check_bounds(_ctx(1234.5))
    assert Flag.UNUSUALLY_SLOW.value in result.flags
    assert result.action is ValidationAction.ACCEPT


def test_round_number_penalty() -> None:
    result = check_bounds(_ctx(180))
    assert result.flags == {Flag.SUSPICIOUS_ROUND_NUMBER.value}
    assert result.confidence == pytest.approx(0.9)
    assert result.action is ValidationAction.ACCEPT


def test_repeating_digits_penalty() -> None:
    result = check_bounds(_ctx(222.25))
    assert Flag.REPEATING_DIGIT_PATTERN.value in result.flags
    assert result.confidence == pytest.approx(0.6)


def test_missing_session_data_flags() -> None:
    result = check_session_integrity(
        _ctx(200.3, session_age_ms=None, game_duration_ms=None)
    )
    assert result.flags == {Flag.MISSING_SESSION_DATA.value}
    assert result.action is ValidationAction.FLAG


def test_instant_submission_rejected() -> None:
    result = check_session_integrity(_ctx(200.3, session_age_ms=300.0))
    assert result.action is ValidationAction.REJECT
    assert Flag.INSTANT_SUBMISSION.value in result.flags
    assert assess_severity(result) is Severity.CRITICAL


def test_quick_submission_and_short_game() -> None:
    result = check_session_integrity(
        _ctx(200.3, session_age_ms=1500.0, game_duration_ms=1000.0)
    )
    assert result.flags == {
        Flag.VERY_QUICK_SUBMISSION.value,
        Flag.GAME_DURATION_TOO_SHORT.value,
    }
    assert result.confidence == pytest.approx(0.1)


def test_skipped_light_sequence() -> None:
    result = check_session_integrity(_ctx(200.3, game_duration_ms=3000.0))
    assert result.flags == {Flag.SKIPPED_LIGHT_SEQUENCE_SUSPECTED.value}
    assert result.confidence == pytest.approx(0.3)


def test_excessive_submission_rate() -> None:
    result = check_session_integrity(
        _ctx(200.3, session_age_ms=3_600_000.0, games_played=150), max_games_per_hour=100
    )
    assert result.flags == {Flag.EXCESSIVE_SUBMISSION_RATE.value}
    assert result.confidence == pytest.approx(0.4)


def test_device_check_skipped_without_capabilities() -> None:
    assert check_device_capabilities(_ctx(150.1)) is None


def test_mobile_device_superhuman() -> None:
    result = check_device_capabilities(
        _ctx(95.3, device=DeviceCapabilities(is_mobile=True, high_resolution_time=True, performance_api=True))
    )
    assert result is not None
    assert Flag.MOBILE_SUPERHUMAN.value in result.flags
    assert result.confidence == pytest.approx(0.2)


def test_device_without_high_resolution_timer() -> None:
    device = DeviceCapabilities(high_resolution_time=False, performance_api=True)
    result = check_device_capabilities(_ctx(140.2, device=device))
    assert result is not None
    assert result.flags == {Flag.NO_HIGH_RESOLUTION_TIMING.value}


def test_legacy_browser_never_rejects() -> None:
    device = DeviceCapabilities(
        high_resolution_time=True,
        performance_api=True,
        user_agent="Mozilla/5.0 (Windows NT 6.1; Trident/7.0; rv:11.0)",
    )
    result = check_device_capabilities(_ctx(240.6, device=device))
    assert result is not None
    assert result.action is ValidationAction.FLAG
    assert Flag.LEGACY_BROWSER.value in result.flags


def test_statistical_outlier_needs_history() -> None:
    assert check_statistical_outlier(_ctx(150.3, history=(250.0, 260.0))) is None


def test_statistical_outlier_detected() -> None:
    history = (250.1, 262.4, 241.9, 255.3, 248.8)
    result = check_statistical_outlier(_ctx(130.2, history=history))
    assert result is not None
    assert Flag.STATISTICAL_OUTLIER.value in result.flags
    assert result.confidence < 0.3


def test_slower_than_usual_is_not_an_outlier() -> None:
    history = (250.1, 262.4, 241.9, 255.3, 248.8)
    result = check_statistical_outlier(_ctx(480.7, history=history))
    assert result is not None
    assert result.flags == frozenset()


def test_machine_like_consistency() -> None:
    history = tuple(200.0 + (index % 3) * 0.5 for index in range(12))
    result = check_statistical_outlier(_ctx(200.5, history=history))
    assert result is not None
    assert Flag.MACHINE_LIKE_CONSISTENCY.value in result.flags
    assert result.confidence == pytest.approx(0.5)


def test_combine_takes_weakest_link() -> None:
    combined = combine_results(
        [
            ValidationResult.from_confidence(0.9, ["A"]),
            ValidationResult.from_confidence(0.5, ["B"]),
            ValidationResult.from_confidence(1.0),
        ]
    )
    assert combined.confidence == pytest.approx(0.5)
    assert combined.flags == {"A", "B"}
    assert combined.action is ValidationAction.FLAG


def test_combine_reject_wins() -> None:
    combined = combine_results(
        [
            ValidationResult.from_confidence(1.0),
            ValidationResult.from_confidence(0.9, ["X"], reject=True),
        ]
    )
    assert combined.action is ValidationAction.REJECT
    assert not combined.is_valid


def test_combine_empty_accepts() -> None:
    combined = combine_results([])
    assert combined.action is ValidationAction.ACCEPT
    assert combined.confidence == 1.0


def test_pipeline_records_audit(mocker) -> None:
    audit = mocker.Mock()
    pipeline = PlausibilityPipeline(default_checks(), audit=audit)
    ctx = _ctx(33.0)
    outcome = pipeline.evaluate(ctx)
    audit.record.assert_called_once_with(ctx, outcome)


def test_result_to_dict() -> None:
    result = ValidationResult.from_confidence(0.55, [Flag.SUSPICIOUS])
    assert result.to_dict() == {
        "is_valid": True,
        "confidence": 0.55,
        "flags": ["SUSPICIOUS"],
        "action": "flag",
    }
