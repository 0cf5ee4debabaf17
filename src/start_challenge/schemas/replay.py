"""Replay-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field

from start_challenge.core.sequence import GameConfig


class ReplayData(BaseModel):
    """A completed light-sequence run bound to its integrity hash.

    ``light_timings`` are millisecond offsets from sequence start at which each
    light came on; ``total_duration`` is the offset at which the lights went out.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    seed: int
    random_sequence_trace: list[float]
    light_timings: list[float]
    total_duration: float
    sequence_hash: str
    random_delay: float | None = None
    config: GameConfig = Field(default_factory=GameConfig)
