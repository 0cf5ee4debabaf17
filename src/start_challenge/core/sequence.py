"""Seeded deterministic lights-out sequence generation.

Both players of a challenge must see the same light cadence and the same
random lights-out delay. The generator below is a plain linear congruential
recurrence with fixed constants, so a seed reproduces the identical output
stream on any machine and in any language that implements the same recurrence.
"""

from __future__ import annotations

import random
import secrets
from dataclasses import dataclass
from typing import Final, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

LCG_MULTIPLIER: Final[int] = 1_103_515_245
LCG_INCREMENT: Final[int] = 12_345
LCG_MODULUS: Final[int] = 2**31
SEED_MASK: Final[int] = 0x7FFF_FFFF

INT32_MIN: Final[int] = -(2**31)
INT32_MAX: Final[int] = 2**31 - 1

LIGHT_COUNT: Final[int] = 5


class GameConfig(BaseModel):
    """Timing parameters shared by both runs of a challenge."""

    model_config = ConfigDict(frozen=True)

    light_interval: int = Field(default=900, ge=100, le=5000)
    min_random_delay: int = Field(default=500, ge=0, le=10_000)
    max_random_delay: int = Field(default=2500, ge=0, le=10_000)
    difficulty_mode: Literal["easy", "normal", "hard"] = "normal"

    @model_validator(mode="after")
    def _check_delay_window(self) -> GameConfig:
        if self.max_random_delay < self.min_random_delay:
            raise ValueError("max_random_delay must be >= min_random_delay")
        return self

    @property
    def minimum_sequence_ms(self) -> int:
        """Shortest possible time from sequence start to lights out."""
        return LIGHT_COUNT * self.light_interval + self.min_random_delay


@dataclass(frozen=True)
class GeneratorState:
    """Snapshot of a generator: its seed, how many values it emitted, and those values."""

    seed: int | None
    cursor: int
    trace: tuple[float, ...]


class SequenceGenerator:
    """Linear congruential generator that records every value it emits."""

    def __init__(self, seed: int | None = None) -> None:
        if seed is not None:
            if isinstance(seed, bool) or not isinstance(seed, int):
                raise TypeError("seed must be an integer")
            if not INT32_MIN <= seed <= INT32_MAX:
                raise ValueError(f"seed {seed} is outside the signed 32-bit range")
        self._seed = seed
        self._state = seed & SEED_MASK if seed is not None else 0
        self._fallback = random.Random() if seed is None else None
        self._trace: list[float] = []

    @property
    def seed(self) -> int | None:
        return self._seed

    @property
    def is_deterministic(self) -> bool:
        return self._seed is not None

    def next(self) -> float:
        """Return the next value in [0, 1) and append it to the trace."""
        if self._fallback is not None:
            value = self._fallback.random()
        else:
            self._state = (self._state * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
            value = self._state / LCG_MODULUS
        self._trace.append(value)
        return value

    def generate_delay(self, min_delay: float, max_delay: float) -> float:
        """Return a lights-out delay drawn uniformly from [min_delay, max_delay)."""
        if max_delay < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        return min_delay + self.next() * (max_delay - min_delay)

    def reset(self) -> None:
        """Rewind to the seed and clear the recorded trace."""
        self._state = self._seed & SEED_MASK if self._seed is not None else 0
        self._trace.clear()

    def state(self) -> GeneratorState:
        return GeneratorState(seed=self._seed, cursor=len(self._trace), trace=tuple(self._trace))

    @classmethod
    def restore(cls, snapshot: GeneratorState) -> SequenceGenerator:
        """Rebuild a deterministic generator positioned at ``snapshot.cursor``."""
        if snapshot.seed is None:
            raise ValueError("cannot restore a non-deterministic generator")
        generator = cls(snapshot.seed)
        for _ in range(snapshot.cursor):
            generator.next()
        return generator


def generate_seed() -> int:
    """Return a fresh non-negative 31-bit challenge seed."""
    return secrets.randbelow(LCG_MODULUS)


@dataclass(frozen=True)
class SequencePlan:
    """Deterministic timing envelope of one lights-out run.

    ``light_timings`` are offsets in milliseconds from sequence start at which
    each of the five lights comes on; ``lights_out_at`` is the offset at which
    all lights go out (the start of the reaction window).
    """

    seed: int | None
    config: GameConfig
    random_delay: float
    light_timings: tuple[float, ...]
    lights_out_at: float
    trace: tuple[float, ...]


def build_sequence_plan(seed: int | None, config: GameConfig | None = None) -> SequencePlan:
    """Run the generator once for ``seed`` and derive the full timing envelope."""
    config = config or GameConfig()
    generator = SequenceGenerator(seed)
    delay = generator.generate_delay(config.min_random_delay, config.max_random_delay)
    light_timings = tuple(
        float((index + 1) * config.light_interval) for index in range(LIGHT_COUNT)
    )
    return SequencePlan(
        seed=seed,
        config=config,
        random_delay=delay,
        light_timings=light_timings,
        lights_out_at=light_timings[-1] + delay,
        trace=generator.state().trace,
    )
