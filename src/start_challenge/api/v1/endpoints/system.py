# src/start_challenge/api/v1/endpoints/system.py
"""System and transparency endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query

from start_challenge.core.sequence import GameConfig
from start_challenge.core.settings import settings
from start_challenge.services.storage import StorageError

from ..dependencies import AuditLogDep, CurrentPlayerDep, StorageDep

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/health")
def storage_health(storage: StorageDep) -> dict[str, Any]:
    """Report storage reachability and the state of every circuit breaker."""
    reachable = storage.ping()
    return {
        "status": "ok" if reachable else "degraded",
        "storage": {"reachable": reachable, "local_cache_entries": len(storage.local_cache)},
        "breakers": storage.breaker_states(),
    }


@router.get("/config")
def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes secrets and connection strings; suitable for transparency UIs.

    Returns:
        Dictionary containing app settings, game defaults, challenge bounds,
        leaderboard limits, storage quota thresholds and rate-limit state
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "jwt_algorithm": settings.jwt_algorithm,
            "access_token_expire_minutes": settings.access_token_expire_minutes,
        },
        "game": GameConfig().model_dump(),
        "challenges": {
            "ttl_seconds": settings.challenge_ttl_seconds,
            "min_reaction_ms": settings.challenge_min_reaction_ms,
            "max_reaction_ms": settings.challenge_max_reaction_ms,
            "tie_threshold_ms": settings.tie_threshold_ms,
        },
        "leaderboard": {
            "max_entries": settings.leaderboard_max_entries,
            "ttl_seconds": settings.leaderboard_ttl_seconds,
        },
        "validation": {"max_games_per_hour": settings.max_games_per_hour},
        "storage": settings.storage_thresholds,
        "rate_limits": {"enabled": settings.rate_limit_enabled},
    }


@router.get("/storage")
def get_storage_status(_player: CurrentPlayerDep, storage: StorageDep) -> dict[str, Any]:
    """Return quota usage and breaker states; quota is ``None`` while storage is down."""
    try:
        quota: dict[str, Any] | None = storage.quota_status()
    except StorageError:
        quota = None
    return {"quota": quota, "breakers": storage.breaker_states()}


@router.get("/validation-metrics")
def get_validation_metrics(
    _player: CurrentPlayerDep,
    audit: AuditLogDep,
    bucket: Annotated[str | None, Query(pattern=r"^\d{10}$")] = None,
) -> dict[str, Any]:
    """Return the aggregated plausibility verdicts for one UTC hour (default: current)."""
    resolved = bucket or audit.hour_bucket()
    return {"bucket": resolved, "metrics": audit.get_hourly_metrics(resolved)}
