"""Replay integrity services for challenge runs.

A replay binds one light-sequence run to a hash over its canonically rounded
fields. Validation compares a candidate replay with the deterministic reference
regenerated from the challenge seed. Wall-clock jitter between two machines is
tolerated per field; a wrong seed, trace or hash is not.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Final

from start_challenge.core.sequence import LIGHT_COUNT, GameConfig, build_sequence_plan
from start_challenge.schemas.replay import ReplayData
from start_challenge.utils.hash import canonical_hexdigest
from start_challenge.utils.timing import quantize_trace_value, round_ms

logger = logging.getLogger(__name__)

TRACE_EPSILON: Final[float] = 1e-10
INTERVAL_TOLERANCE_MS: Final[float] = 50.0
DURATION_TOLERANCE_MS: Final[float] = 20.0


class MismatchCode(str, Enum):
    SEED = "seed"
    TRACE = "trace"
    LIGHT_COUNT = "light_count"
    INTERVAL = "interval"
    DURATION = "duration"
    HASH = "hash"


# Confidence multiplier applied once per mismatch class
MISMATCH_PENALTIES: Final[dict[MismatchCode, float]] = {
    MismatchCode.SEED: 0.3,
    MismatchCode.TRACE: 0.3,
    MismatchCode.LIGHT_COUNT: 0.4,
    MismatchCode.INTERVAL: 0.7,
    MismatchCode.DURATION: 0.6,
    MismatchCode.HASH: 0.8,
}
MISSING_SESSION_PENALTY: Final[float] = 0.5


@dataclass(frozen=True)
class ReplayMismatch:
    """One violated replay rule."""

    code: MismatchCode
    message: str
    expected: Any = None
    actual: Any = None

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass(frozen=True)
class ReplayValidation:
    mismatches: tuple[ReplayMismatch, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.mismatches

    @property
    def errors(self) -> list[str]:
        return [str(mismatch) for mismatch in self.mismatches]

    @property
    def codes(self) -> set[MismatchCode]:
        return {mismatch.code for mismatch in self.mismatches}


class ReplayMismatchError(ValueError):
    """Raised when a replay does not match its deterministic reference."""

    def __init__(self, mismatches: Sequence[ReplayMismatch]) -> None:
        self.mismatches = tuple(mismatches)
        summary = "; ".join(str(mismatch) for mismatch in self.mismatches)
        super().__init__(f"Replay rejected: {summary}")


def _resolve_delay(
    trace: Sequence[float], config: GameConfig, random_delay: float | None
) -> float:
    if random_delay is not None:
        return random_delay
    if not trace:
        return 0.0
    return config.min_random_delay + trace[0] * (
        config.max_random_delay - config.min_random_delay
    )


def compute_sequence_hash(
    *,
    trace: Sequence[float],
    light_timings: Sequence[float],
    random_delay: float,
    total_duration: float,
    config: GameConfig,
) -> str:
    """Hash the canonically rounded run.

    Trace values are rounded half-up to 6 decimals and every millisecond value
    to a whole millisecond before serialization.
    """
    payload = {
        "config": config.model_dump(mode="json"),
        "delay": round_ms(random_delay),
        "light_timings": [round_ms(value) for value in light_timings],
        "total_duration": round_ms(total_duration),
        "trace": [quantize_trace_value(value) for value in trace],
    }
    return canonical_hexdigest(payload)


def hash_replay(replay: ReplayData) -> str:
    """Recompute the sequence hash from the replay's own fields."""
    return compute_sequence_hash(
        trace=replay.random_sequence_trace,
        light_timings=replay.light_timings,
        random_delay=_resolve_delay(
            replay.random_sequence_trace, replay.config, replay.random_delay
        ),
        total_duration=replay.total_duration,
        config=replay.config,
    )


def build_replay_data(
    seed: int,
    trace: Sequence[float],
    light_timings: Sequence[float],
    total_duration: float,
    config: GameConfig | None = None,
    random_delay: float | None = None,
) -> ReplayData:
    """Package a completed run and its integrity hash."""
    config = config or GameConfig()
    delay = _resolve_delay(trace, config, random_delay)
    return ReplayData(
        seed=seed,
        random_sequence_trace=list(trace),
        light_timings=list(light_timings),
        total_duration=total_duration,
        random_delay=delay,
        config=config,
        sequence_hash=compute_sequence_hash(
            trace=trace,
            light_timings=light_timings,
            random_delay=delay,
            total_duration=total_duration,
            config=config,
        ),
    )


def build_reference_replay(seed: int, config: GameConfig | None = None) -> ReplayData:
    """Regenerate the ideal replay for ``seed`` from the deterministic plan."""
    plan = build_sequence_plan(seed, config)
    return build_replay_data(
        seed,
        plan.trace,
        plan.light_timings,
        plan.lights_out_at,
        plan.config,
        plan.random_delay,
    )


def _check_trace(candidate: ReplayData, reference: ReplayData) -> ReplayMismatch | None:
    expected = reference.random_sequence_trace
    actual = candidate.random_sequence_trace
    if len(expected) != len(actual):
        return ReplayMismatch(
            MismatchCode.TRACE,
            f"trace has {len(actual)} values, expected {len(expected)}",
            expected=len(expected),
            actual=len(actual),
        )
    for index, (want, got) in enumerate(zip(expected, actual, strict=True)):
        if abs(want - got) > TRACE_EPSILON:
            return ReplayMismatch(
                MismatchCode.TRACE,
                f"trace value {index} diverges",
                expected=want,
                actual=got,
            )
    return None


def _check_intervals(candidate: ReplayData, light_interval: int) -> list[ReplayMismatch]:
    mismatches: list[ReplayMismatch] = []
    previous = 0.0
    for index, offset in enumerate(candidate.light_timings):
        interval = offset - previous
        if abs(interval - light_interval) > INTERVAL_TOLERANCE_MS:
            mismatches.append(
                ReplayMismatch(
                    MismatchCode.INTERVAL,
                    f"light {index + 1} interval {interval:.1f}ms outside "
                    f"{light_interval}±{INTERVAL_TOLERANCE_MS:.0f}ms",
                    expected=light_interval,
                    actual=interval,
                )
            )
        previous = offset
    return mismatches


def validate_replay(candidate: ReplayData, reference: ReplayData) -> ReplayValidation:
    """Compare ``candidate`` against ``reference`` and collect every violation.

    Checks run in a fixed order: seed, trace, light count, per-light interval,
    total duration, and finally the candidate's own hash.
    """
    mismatches: list[ReplayMismatch] = []

    if candidate.seed != reference.seed:
        mismatches.append(
            ReplayMismatch(
                MismatchCode.SEED,
                "seed does not match challenge",
                expected=reference.seed,
                actual=candidate.seed,
            )
        )

    trace_mismatch = _check_trace(candidate, reference)
    if trace_mismatch is not None:
        mismatches.append(trace_mismatch)

    count = len(candidate.light_timings)
    if count != LIGHT_COUNT or count != len(reference.light_timings):
        mismatches.append(
            ReplayMismatch(
                MismatchCode.LIGHT_COUNT,
                f"expected {LIGHT_COUNT} light timings, got {count}",
                expected=LIGHT_COUNT,
                actual=count,
            )
        )
    else:
        mismatches.extend(_check_intervals(candidate, reference.config.light_interval))

    drift = abs(candidate.total_duration - reference.total_duration)
    if drift > DURATION_TOLERANCE_MS:
        mismatches.append(
            ReplayMismatch(
                MismatchCode.DURATION,
                f"total duration off by {drift:.1f}ms",
                expected=reference.total_duration,
                actual=candidate.total_duration,
            )
        )

    recomputed = hash_replay(candidate)
    if recomputed != candidate.sequence_hash:
        mismatches.append(
            ReplayMismatch(
                MismatchCode.HASH,
                "sequence hash does not match replay contents",
                expected=recomputed,
                actual=candidate.sequence_hash,
            )
        )

    if mismatches:
        logger.info(
            "Replay for seed %s failed %d checks: %s",
            candidate.seed,
            len(mismatches),
            ", ".join(sorted({mismatch.code.value for mismatch in mismatches})),
        )
    return ReplayValidation(tuple(mismatches))


def ensure_valid_replay(candidate: ReplayData, reference: ReplayData) -> None:
    """Raise ``ReplayMismatchError`` unless ``candidate`` validates."""
    validation = validate_replay(candidate, reference)
    if not validation.is_valid:
        raise ReplayMismatchError(validation.mismatches)


def replay_confidence(validation: ReplayValidation, *, session_missing: bool = False) -> float:
    """Multiply the penalty of each violated rule class into a [0, 1] confidence."""
    confidence = 1.0
    for code in validation.codes:
        confidence *= MISMATCH_PENALTIES[code]
    if session_missing:
        confidence *= MISSING_SESSION_PENALTY
    return round(confidence, 4)
