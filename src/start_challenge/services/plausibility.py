"""Plausibility validation pipeline for submitted reaction times.

Each check is a pure function of a ``SubmissionContext`` returning a
``ValidationResult`` (or None when it has nothing to say). ``combine_results``
reduces them with a weakest-link policy: the lowest confidence wins, flags are
unioned, and one reject rejects the whole submission.
"""

from __future__ import annotations

import logging
import math
import re
import statistics
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Final

from start_challenge.core.sequence import GameConfig
from start_challenge.schemas.validation import DeviceCapabilities

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from start_challenge.services.audit import ValidationAuditLog

logger = logging.getLogger(__name__)

ACCEPT_CONFIDENCE: Final[float] = 0.8

# Absolute bounds in milliseconds
PHYSICALLY_IMPOSSIBLE_MS: Final[float] = 50.0
SUPERHUMAN_MS: Final[float] = 100.0
SUSPICIOUS_MS: Final[float] = 120.0
UNUSUALLY_SLOW_MS: Final[float] = 1000.0

INSTANT_SUBMISSION_MS: Final[float] = 500.0
QUICK_SUBMISSION_MS: Final[float] = 2000.0
MIN_GAME_DURATION_MS: Final[float] = 1500.0

MIN_HISTORY_SAMPLES: Final[int] = 3
OUTLIER_Z_SCORE: Final[float] = 3.0
OUTLIER_CONFIDENCE: Final[float] = 0.7
CONSISTENCY_MIN_SAMPLES: Final[int] = 10
CONSISTENCY_MAX_CV: Final[float] = 0.03

_REPEATING_DIGITS = re.compile(r"(\d)\1\1")


class Flag(str, Enum):
    PHYSICALLY_IMPOSSIBLE = "PHYSICALLY_IMPOSSIBLE"
    SUPERHUMAN = "SUPERHUMAN"
    SUSPICIOUS = "SUSPICIOUS"
    UNUSUALLY_SLOW = "UNUSUALLY_SLOW"
    SUSPICIOUS_ROUND_NUMBER = "SUSPICIOUS_ROUND_NUMBER"
    REPEATING_DIGIT_PATTERN = "REPEATING_DIGIT_PATTERN"
    INSTANT_SUBMISSION = "INSTANT_SUBMISSION"
    VERY_QUICK_SUBMISSION = "VERY_QUICK_SUBMISSION"
    GAME_DURATION_TOO_SHORT = "GAME_DURATION_TOO_SHORT"
    SKIPPED_LIGHT_SEQUENCE_SUSPECTED = "SKIPPED_LIGHT_SEQUENCE_SUSPECTED"
    EXCESSIVE_SUBMISSION_RATE = "EXCESSIVE_SUBMISSION_RATE"
    MISSING_SESSION_DATA = "MISSING_SESSION_DATA"
    NO_HIGH_RESOLUTION_TIMING = "NO_HIGH_RESOLUTION_TIMING"
    NO_PERFORMANCE_API = "NO_PERFORMANCE_API"
    CAPABILITIES_UNKNOWN = "CAPABILITIES_UNKNOWN"
    MOBILE_SUPERHUMAN = "MOBILE_SUPERHUMAN"
    MOBILE_FAST = "MOBILE_FAST"
    LOW_REFRESH_RATE = "LOW_REFRESH_RATE"
    SAFARI_TIMING_ANOMALY = "SAFARI_TIMING_ANOMALY"
    LEGACY_BROWSER = "LEGACY_BROWSER"
    FIREFOX_TIMING_ANOMALY = "FIREFOX_TIMING_ANOMALY"
    COARSE_TIMER_PRECISION = "COARSE_TIMER_PRECISION"
    STATISTICAL_OUTLIER = "STATISTICAL_OUTLIER"
    MACHINE_LIKE_CONSISTENCY = "MACHINE_LIKE_CONSISTENCY"


CRITICAL_FLAGS: Final[frozenset[str]] = frozenset(
    {Flag.PHYSICALLY_IMPOSSIBLE.value, Flag.INSTANT_SUBMISSION.value}
)


class ValidationAction(str, Enum):
    ACCEPT = "accept"
    FLAG = "flag"
    REJECT = "reject"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of one check, or of the whole pipeline after combining."""

    is_valid: bool
    confidence: float
    flags: frozenset[str] = frozenset()
    action: ValidationAction = ValidationAction.ACCEPT

    @classmethod
    def from_confidence(
        cls, confidence: float, flags: Iterable[str] = (), *, reject: bool = False
    ) -> ValidationResult:
        """Build a result whose action follows from ``confidence`` unless ``reject``."""
        confidence = min(1.0, max(0.0, confidence))
        if reject or confidence <= 0.0:
            action = ValidationAction.REJECT
        elif confidence >= ACCEPT_CONFIDENCE:
            action = ValidationAction.ACCEPT
        else:
            action = ValidationAction.FLAG
        return cls(
            is_valid=action is not ValidationAction.REJECT,
            confidence=confidence,
            flags=frozenset(str(getattr(flag, "value", flag)) for flag in flags),
            action=action,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "is_valid": self.is_valid,
            "confidence": round(self.confidence, 4),
            "flags": sorted(self.flags),
            "action": self.action.value,
        }


@dataclass(frozen=True)
class SubmissionContext:
    """Everything the checks may look at for one submission.

    Durations are milliseconds. ``history`` holds the player's earlier
    reaction times, oldest first.
    """

    user_id: str
    reaction_time: float
    session_age_ms: float | None = None
    game_duration_ms: float | None = None
    games_played: int = 0
    device: DeviceCapabilities | None = None
    history: tuple[float, ...] = ()
    config: GameConfig = field(default_factory=GameConfig)


Checker = Callable[[SubmissionContext], "ValidationResult | None"]


@dataclass(frozen=True)
class PlausibilityOutcome:
    result: ValidationResult
    severity: Severity

    @property
    def action(self) -> ValidationAction:
        return self.result.action


def _digit_string(value: float) -> str:
    rendered = f"{value:.3f}".rstrip("0").rstrip(".")
    return rendered.replace(".", "").lstrip("-")


def check_bounds(ctx: SubmissionContext) -> ValidationResult:
    """Absolute human limits plus mechanically clean values."""
    t = ctx.reaction_time
    if not math.isfinite(t) or t < PHYSICALLY_IMPOSSIBLE_MS:
        return ValidationResult.from_confidence(
            0.0, [Flag.PHYSICALLY_IMPOSSIBLE], reject=True
        )

    flags: list[Flag] = []
    confidence = 1.0
    if t < SUPERHUMAN_MS:
        flags.append(Flag.SUPERHUMAN)
        confidence = 0.1
    elif t < SUSPICIOUS_MS:
        flags.append(Flag.SUSPICIOUS)
        confidence = 0.3
    elif t > UNUSUALLY_SLOW_MS:
        flags.append(Flag.UNUSUALLY_SLOW)
        confidence = min(confidence, 0.8)

    if float(t).is_integer() and int(t) % 10 == 0 and t < 300:
        flags.append(Flag.SUSPICIOUS_ROUND_NUMBER)
        confidence *= 0.9

    digits = _digit_string(t)
    if len(digits) >= 4 and _REPEATING_DIGITS.search(digits):
        flags.append(Flag.REPEATING_DIGIT_PATTERN)
        confidence *= 0.6

    return ValidationResult.from_confidence(confidence, flags)


def check_session_integrity(
    ctx: SubmissionContext, *, max_games_per_hour: int = 100
) -> ValidationResult:
    """Detect submissions that arrive faster than a real game can be played."""
    if ctx.session_age_ms is None and ctx.game_duration_ms is None:
        return ValidationResult.from_confidence(0.5, [Flag.MISSING_SESSION_DATA])

    if ctx.session_age_ms is not None and ctx.session_age_ms < INSTANT_SUBMISSION_MS:
        return ValidationResult.from_confidence(0.0, [Flag.INSTANT_SUBMISSION], reject=True)

    flags: list[Flag] = []
    confidence = 1.0
    if ctx.session_age_ms is not None and ctx.session_age_ms < QUICK_SUBMISSION_MS:
        flags.append(Flag.VERY_QUICK_SUBMISSION)
        confidence = min(confidence, 0.2)

    if ctx.game_duration_ms is None:
        flags.append(Flag.MISSING_SESSION_DATA)
        confidence = min(confidence, 0.5)
    else:
        if ctx.game_duration_ms < MIN_GAME_DURATION_MS:
            flags.append(Flag.GAME_DURATION_TOO_SHORT)
            confidence = min(confidence, 0.1)
        elif ctx.game_duration_ms < ctx.config.minimum_sequence_ms:
            flags.append(Flag.SKIPPED_LIGHT_SEQUENCE_SUSPECTED)
            confidence = min(confidence, 0.3)

    if ctx.session_age_ms is not None and ctx.games_played > 0:
        session_hours = max(1.0, ctx.session_age_ms / 3_600_000)
        if ctx.games_played / session_hours > max_games_per_hour:
            flags.append(Flag.EXCESSIVE_SUBMISSION_RATE)
            confidence = min(confidence, 0.4)

    return ValidationResult.from_confidence(confidence, flags)


def check_device_capabilities(ctx: SubmissionContext) -> ValidationResult | None:
    """Cross-check fast times against what the device can actually measure.

    Never rejects; unknown capability fields only lower the ceiling.
    """
    device = ctx.device
    if device is None:
        return None

    t = ctx.reaction_time
    flags: list[Flag] = []
    confidence = 1.0

    def cap(value: float, flag: Flag) -> None:
        nonlocal confidence
        confidence = min(confidence, value)
        flags.append(flag)

    if device.high_resolution_time is False and t < 150:
        cap(0.4, Flag.NO_HIGH_RESOLUTION_TIMING)
    if device.performance_api is False and t < 120:
        cap(0.3, Flag.NO_PERFORMANCE_API)
    if (device.high_resolution_time is None or device.performance_api is None) and t < 150:
        cap(0.85, Flag.CAPABILITIES_UNKNOWN)

    if device.is_mobile:
        if t < 100:
            cap(0.2, Flag.MOBILE_SUPERHUMAN)
        elif t < 120:
            cap(0.6, Flag.MOBILE_FAST)

    if device.refresh_rate is not None and device.refresh_rate < 60 and t < 120:
        cap(0.5, Flag.LOW_REFRESH_RATE)

    agent = (device.user_agent or "").lower()
    if "safari" in agent and "chrome" not in agent and t < 100:
        cap(0.6, Flag.SAFARI_TIMING_ANOMALY)
    if "trident" in agent or "msie" in agent:
        cap(0.7, Flag.LEGACY_BROWSER)
    if "firefox" in agent and t < 90:
        cap(0.7, Flag.FIREFOX_TIMING_ANOMALY)

    if device.timing_precision is not None:
        if device.timing_precision > 5 and t < 100:
            cap(0.5, Flag.COARSE_TIMER_PRECISION)
        elif device.timing_precision > 1 and t < 80:
            cap(0.3, Flag.COARSE_TIMER_PRECISION)

    return ValidationResult.from_confidence(confidence, flags)


def check_statistical_outlier(ctx: SubmissionContext) -> ValidationResult | None:
    """Compare the new time with the player's own distribution."""
    history = [value for value in ctx.history if math.isfinite(value)]
    if len(history) < MIN_HISTORY_SAMPLES:
        return None

    t = ctx.reaction_time
    mean = statistics.fmean(history)
    spread = statistics.pstdev(history)
    flags: list[Flag] = []
    confidence = 1.0

    # Directional: only results better than usual are suspicious
    if spread == 0:
        z_score = math.inf if t < mean else 0.0
    else:
        z_score = (mean - t) / spread
    outlier_confidence = min(0.95, max(0.1, z_score / 4)) if z_score > 0 else 0.0
    if z_score > OUTLIER_Z_SCORE and outlier_confidence > OUTLIER_CONFIDENCE:
        flags.append(Flag.STATISTICAL_OUTLIER)
        confidence = 1.0 - outlier_confidence

    samples = [*history, t]
    if len(samples) >= CONSISTENCY_MIN_SAMPLES:
        sample_mean = statistics.fmean(samples)
        if sample_mean > 0 and statistics.pstdev(samples) / sample_mean < CONSISTENCY_MAX_CV:
            flags.append(Flag.MACHINE_LIKE_CONSISTENCY)
            confidence = min(confidence, 0.5)

    return ValidationResult.from_confidence(confidence, flags)


def combine_results(results: Iterable[ValidationResult]) -> ValidationResult:
    """Reduce check results: min confidence, union of flags, strongest action."""
    collected = list(results)
    if not collected:
        return ValidationResult.from_confidence(1.0)

    confidence = min(result.confidence for result in collected)
    flags = frozenset().union(*(result.flags for result in collected))
    if any(result.action is ValidationAction.REJECT for result in collected):
        action = ValidationAction.REJECT
    elif (
        any(result.action is ValidationAction.FLAG for result in collected)
        or confidence < ACCEPT_CONFIDENCE
    ):
        action = ValidationAction.FLAG
    else:
        action = ValidationAction.ACCEPT
    return ValidationResult(
        is_valid=action is not ValidationAction.REJECT,
        confidence=confidence,
        flags=flags,
        action=action,
    )


def assess_severity(result: ValidationResult) -> Severity:
    if result.flags & CRITICAL_FLAGS or result.confidence <= 0.0:
        return Severity.CRITICAL
    if result.action is ValidationAction.REJECT or result.confidence < 0.3:
        return Severity.HIGH
    if result.action is ValidationAction.FLAG:
        return Severity.MEDIUM
    return Severity.LOW


def default_checks(max_games_per_hour: int = 100) -> list[Checker]:
    """Return the standard check order."""
    return [
        check_bounds,
        partial(check_session_integrity, max_games_per_hour=max_games_per_hour),
        check_device_capabilities,
        check_statistical_outlier,
    ]


class PlausibilityPipeline:
    """Runs the ordered checks and records every verdict in the audit log."""

    def __init__(
        self,
        checks: Sequence[Checker] | None = None,
        audit: ValidationAuditLog | None = None,
    ) -> None:
        self._checks = list(checks) if checks is not None else default_checks()
        self._audit = audit

    @property
    def checks(self) -> list[Checker]:
        return list(self._checks)

    def run_checks(self, ctx: SubmissionContext) -> ValidationResult:
        results = [result for check in self._checks if (result := check(ctx)) is not None]
        return combine_results(results)

    def evaluate(self, ctx: SubmissionContext) -> PlausibilityOutcome:
        result = self.run_checks(ctx)
        outcome = PlausibilityOutcome(result=result, severity=assess_severity(result))
        if result.action is not ValidationAction.ACCEPT:
            logger.info(
                "Submission by %s (%.1fms) %s with confidence %.2f: %s",
                ctx.user_id,
                ctx.reaction_time,
                result.action.value,
                result.confidence,
                ", ".join(sorted(result.flags)) or "low confidence",
            )
        if self._audit is not None:
            self._audit.record(ctx, outcome)
        return outcome
