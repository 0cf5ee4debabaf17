# tests/test_replay.py
"""Tests for replay integrity validation."""

from __future__ import annotations

import pytest

from start_challenge.core.sequence import GameConfig, build_sequence_plan
from start_challenge.services.replay import (
    MismatchCode,
    ReplayMismatchError,
    build_reference_replay,
    build_replay_data,
    ensure_valid_replay,
    hash_replay,
    replay_confidence,
    validate_replay,
)

SEED = 424242


@pytest.fixture()
def reference():
    return build_reference_replay(SEED)


def _rebuilt(reference, **changes):
    """Build a correctly hashed replay with some fields replaced."""
    fields = {
        "seed": reference.seed,
        "trace": reference.random_sequence_trace,
        "light_timings": reference.light_timings,
        "total_duration": reference.total_duration,
        "config": reference.config,
        "random_delay": reference.random_delay,
    }
    fields.update(changes)
    return build_replay_data(**fields)


def test_reference_validates_against_itself(reference) -> None:
    validation = validate_replay(reference, reference)
    assert validation.is_valid
    assert validation.errors == []
    assert replay_confidence(validation) == 1.0
    ensure_valid_replay(reference, reference)


def test_reference_is_reproducible() -> None:
    assert build_reference_replay(SEED) == build_reference_replay(SEED)
    assert build_reference_replay(SEED).sequence_hash != build_reference_replay(SEED + 1).sequence_hash


def test_reference_matches_sequence_plan(reference) -> None:
    plan = build_sequence_plan(SEED)
    assert reference.light_timings == list(plan.light_timings)
    assert reference.total_duration == plan.lights_out_at
    assert reference.random_delay == plan.random_delay


def test_hash_ignores_sub_millisecond_noise(reference) -> None:
    noisy = reference.model_copy(
        update={"light_timings": [value + 0.2 for value in reference.light_timings]}
    )
    assert hash_replay(noisy) == reference.sequence_hash


def test_wrong_seed_detected(reference) -> None:
    candidate = reference.model_copy(update={"seed": SEED + 1})
    validation = validate_replay(candidate, reference)
    assert validation.codes == {MismatchCode.SEED}
    assert replay_confidence(validation) == 0.3


def test_tampered_trace_breaks_trace_and_hash(reference) -> None:
    trace = list(reference.random_sequence_trace)
    trace[0] = trace[0] / 2
    candidate = reference.model_copy(update={"random_sequence_trace": trace})
    validation = validate_replay(candidate, reference)
    assert validation.codes == {MismatchCode.TRACE, MismatchCode.HASH}
    assert replay_confidence(validation) == pytest.approx(0.24)


def test_tiny_trace_drift_is_tolerated(reference) -> None:
    trace = [value + 1e-12 for value in reference.random_sequence_trace]
    candidate = _rebuilt(reference, trace=trace)
    assert validate_replay(candidate, reference).is_valid


def test_missing_light_detected(reference) -> None:
    candidate = _rebuilt(reference, light_timings=reference.light_timings[:4])
    validation = validate_replay(candidate, reference)
    assert MismatchCode.LIGHT_COUNT in validation.codes
    assert MismatchCode.INTERVAL not in validation.codes


def test_interval_jitter_within_tolerance(reference) -> None:
    jittered = [value + offset for value, offset in zip(
        reference.light_timings, (12.0, -20.0, 25.0, 0.0, -10.0), strict=True
    )]
    candidate = _rebuilt(reference, light_timings=jittered)
    assert validate_replay(candidate, reference).is_valid


def test_interval_outside_tolerance(reference) -> None:
    shifted = list(reference.light_timings)
    shifted[2] += 100.0
    candidate = _rebuilt(reference, light_timings=shifted)
    validation = validate_replay(candidate, reference)
    assert validation.codes == {MismatchCode.INTERVAL}
    # Light 3 arrives late and light 4 correspondingly early
    assert len(validation.mismatches) == 2
    assert replay_confidence(validation) == 0.7


def test_duration_drift(reference) -> None:
    within = _rebuilt(reference, total_duration=reference.total_duration + 15)
    assert validate_replay(within, reference).is_valid

    beyond = _rebuilt(reference, total_duration=reference.total_duration + 30)
    validation = validate_replay(beyond, reference)
    assert validation.codes == {MismatchCode.DURATION}
    assert replay_confidence(validation) == 0.6


def test_forged_hash_detected(reference) -> None:
    candidate = reference.model_copy(update={"sequence_hash": "0" * 64})
    validation = validate_replay(candidate, reference)
    assert validation.codes == {MismatchCode.HASH}
    assert replay_confidence(validation) == 0.8


def test_tampered_delay_breaks_hash(reference) -> None:
    candidate = reference.model_copy(update={"random_delay": reference.random_delay + 50})
    assert validate_replay(candidate, reference).codes == {MismatchCode.HASH}


def test_config_is_part_of_hash(reference) -> None:
    candidate = reference.model_copy(update={"config": GameConfig(difficulty_mode="hard")})
    assert MismatchCode.HASH in validate_replay(candidate, reference).codes


def test_missing_session_halves_confidence(reference) -> None:
    validation = validate_replay(reference, reference)
    assert replay_confidence(validation, session_missing=True) == 0.5


def test_errors_are_reported_in_check_order(reference) -> None:
    trace = list(reference.random_sequence_trace)
    trace[0] += 0.1
    candidate = reference.model_copy(
        update={"seed": SEED + 7, "random_sequence_trace": trace}
    )
    validation = validate_replay(candidate, reference)
    assert [mismatch.code for mismatch in validation.mismatches] == [
        MismatchCode.SEED,
        MismatchCode.TRACE,
        MismatchCode.HASH,
    ]
    assert validation.errors[0].startswith("seed:")


def test_ensure_valid_replay_raises(reference) -> None:
    candidate = reference.model_copy(update={"sequence_hash": "bad"})
    with pytest.raises(ReplayMismatchError) as excinfo:
        ensure_valid_replay(candidate, reference)
    assert "hash" in str(excinfo.value)
