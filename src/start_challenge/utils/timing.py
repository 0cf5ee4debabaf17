"""Canonical rounding and time helpers.

Every reaction time and timestamp that takes part in hashing or in tie
comparison goes through the same half-up rounding so two machines never
disagree on a boundary value.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal
from typing import Final, Literal

Clock = Callable[[], float]

TRACE_DECIMALS: Final[int] = 6

_RATING_BANDS: Final[tuple[tuple[float, str], ...]] = (
    (200.0, "perfect"),
    (300.0, "excellent"),
    (400.0, "good"),
    (500.0, "fair"),
)

Rating = Literal["perfect", "excellent", "good", "fair", "slow"]


def _to_decimal(value: float) -> Decimal:
    if not math.isfinite(value):
        raise ValueError(f"cannot round non-finite value {value!r}")
    # repr() gives the shortest string that round-trips the float
    return Decimal(repr(float(value)))


def round_ms(value: float) -> int:
    """Round a millisecond value half-up to a whole millisecond."""
    return int(_to_decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def quantize_trace_value(value: float) -> int:
    """Return ``value`` rounded half-up to 6 decimals, as integer micro-units."""
    scaled = _to_decimal(value).scaleb(TRACE_DECIMALS)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def now_ms(clock: Clock = time.time) -> int:
    """Return the clock reading as integer epoch milliseconds."""
    return int(clock() * 1000)


def is_tie(first_ms: float, second_ms: float, threshold_ms: int = 5) -> bool:
    """Return True when two reaction times are within the tie threshold."""
    return abs(round_ms(first_ms) - round_ms(second_ms)) <= threshold_ms


def rate_reaction_time(reaction_ms: float) -> Rating:
    """Map a reaction time onto its display rating."""
    for upper_bound, rating in _RATING_BANDS:
        if reaction_ms < upper_bound:
            return rating  # type: ignore[return-value]
    return "slow"
