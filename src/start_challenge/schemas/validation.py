"""Plausibility-validation Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field


class DeviceCapabilities(BaseModel):
    """Client-reported timing capabilities; unknown fields stay None."""

    high_resolution_time: bool | None = None
    performance_api: bool | None = None
    is_mobile: bool | None = None
    refresh_rate: float | None = Field(default=None, gt=0)
    timing_precision: float | None = Field(default=None, ge=0, description="Timer resolution in ms")
    user_agent: str | None = Field(default=None, max_length=512)


class ValidationSummary(BaseModel):
    """Outcome of the plausibility pipeline as exposed to clients."""

    action: Literal["accept", "flag", "reject"]
    confidence: float
    flags: list[str]
    severity: Literal["low", "medium", "high", "critical"]
