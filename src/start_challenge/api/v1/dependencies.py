"""Shared API dependencies for authentication and service wiring."""

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from start_challenge.core.security import decode_access_token
from start_challenge.core.settings import settings
from start_challenge.services.audit import ValidationAuditLog
from start_challenge.services.challenge import ChallengeService
from start_challenge.services.leaderboard import LeaderboardService
from start_challenge.services.plausibility import PlausibilityPipeline, default_checks
from start_challenge.services.rate_limit import RateLimitService
from start_challenge.services.scoring import ScoreSubmissionService
from start_challenge.services.session import UserSessionService
from start_challenge.services.storage import StorageEngine
from start_challenge.utils.timing import Clock

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()


@dataclass(frozen=True)
class Player:
    """Authenticated player resolved from the bearer token."""

    user_id: str
    username: str


def get_clock() -> Clock:
    """Return the wall clock; tests override this to control time."""
    return time.time


@lru_cache(maxsize=1)
def _shared_storage_engine() -> StorageEngine:
    return StorageEngine.from_settings(settings)


def get_storage_engine() -> StorageEngine:
    """Return the process-wide storage engine."""
    return _shared_storage_engine()


ClockDep = Annotated[Clock, Depends(get_clock)]
StorageDep = Annotated[StorageEngine, Depends(get_storage_engine)]


def get_session_service(storage: StorageDep, clock: ClockDep) -> UserSessionService:
    return UserSessionService(
        storage, ttl_seconds=settings.user_session_ttl_seconds, clock=clock
    )


def get_audit_log(storage: StorageDep, clock: ClockDep) -> ValidationAuditLog:
    return ValidationAuditLog(
        storage,
        log_ttl_seconds=settings.validation_log_ttl_seconds,
        max_entries=settings.validation_log_max_entries,
        clock=clock,
    )


AuditLogDep = Annotated[ValidationAuditLog, Depends(get_audit_log)]
SessionServiceDep = Annotated[UserSessionService, Depends(get_session_service)]


def get_plausibility_pipeline(audit: AuditLogDep) -> PlausibilityPipeline:
    return PlausibilityPipeline(default_checks(settings.max_games_per_hour), audit=audit)


def get_leaderboard_service(storage: StorageDep, clock: ClockDep) -> LeaderboardService:
    return LeaderboardService(
        storage,
        max_entries=settings.leaderboard_max_entries,
        ttl_seconds=settings.leaderboard_ttl_seconds,
        clock=clock,
    )


PipelineDep = Annotated[PlausibilityPipeline, Depends(get_plausibility_pipeline)]
LeaderboardServiceDep = Annotated[LeaderboardService, Depends(get_leaderboard_service)]


def get_scoring_service(
    storage: StorageDep,
    leaderboard: LeaderboardServiceDep,
    pipeline: PipelineDep,
    sessions: SessionServiceDep,
    clock: ClockDep,
) -> ScoreSubmissionService:
    return ScoreSubmissionService(
        storage,
        leaderboard,
        pipeline,
        sessions,
        history_limit=settings.user_history_max_entries,
        history_ttl_seconds=settings.user_history_ttl_seconds,
        clock=clock,
    )


ScoringServiceDep = Annotated[ScoreSubmissionService, Depends(get_scoring_service)]


def get_challenge_service(
    storage: StorageDep, scoring: ScoringServiceDep, clock: ClockDep
) -> ChallengeService:
    service = ChallengeService(
        storage,
        scoring=scoring,
        base_url=settings.public_base_url,
        ttl_seconds=settings.challenge_ttl_seconds,
        session_ttl_seconds=settings.challenge_session_ttl_seconds,
        validation_ttl_seconds=settings.replay_validation_ttl_seconds,
        min_reaction_ms=settings.challenge_min_reaction_ms,
        max_reaction_ms=settings.challenge_max_reaction_ms,
        tie_threshold_ms=settings.tie_threshold_ms,
        clock=clock,
    )
    service.register_cleanup()
    return service


ChallengeServiceDep = Annotated[ChallengeService, Depends(get_challenge_service)]


def get_current_player(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> Player:
    """Get the current authenticated player from JWT token.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        Player carrying the ``sub`` and ``name`` claims

    Raises:
        HTTPException: If token is invalid or has no subject
    """
    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    username = str(payload.get("name") or subject)
    return Player(user_id=str(subject), username=username)


# Type alias for current player dependency
CurrentPlayerDep = Annotated[Player, Depends(get_current_player)]


def require_admin(player: CurrentPlayerDep) -> Player:
    """Allow only players listed in ``ADMIN_USER_IDS``."""
    if player.user_id not in settings.admin_user_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return player


AdminPlayerDep = Annotated[Player, Depends(require_admin)]


def get_rate_limiter(storage: StorageDep, clock: ClockDep) -> RateLimitService:
    return RateLimitService(storage, enabled=settings.rate_limit_enabled, clock=clock)


def get_client_ip(request: Request) -> str | None:
    """Return the first forwarded address, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


RateLimiterDep = Annotated[RateLimitService, Depends(get_rate_limiter)]
ClientIpDep = Annotated[str | None, Depends(get_client_ip)]
