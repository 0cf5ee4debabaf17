# src/start_challenge/api/v1/endpoints/challenges.py
"""Challenge endpoints for the lights-out duel flow."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from start_challenge.schemas.challenge import (
    Challenge,
    ChallengeCreateRequest,
    ChallengeCreateResponse,
    ChallengeResult,
    ChallengeSession,
    ChallengeStats,
    ChallengeSubmitRequest,
    CleanupResponse,
    DeterministicSession,
    ReplayValidationRequest,
    ReplayValidationResponse,
)
from start_challenge.services.challenge import ChallengeNotFoundError, InvalidChallengeError
from start_challenge.services.rate_limit import RateLimitAction
from start_challenge.services.replay import ReplayMismatchError
from start_challenge.services.scoring import SubmissionRejectedError

from ..dependencies import ChallengeServiceDep, ClientIpDep, CurrentPlayerDep, RateLimiterDep
from .scores import rejection_detail

router = APIRouter(prefix="/challenges", tags=["challenges"])


def _not_found(exc: ChallengeNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: InvalidChallengeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _rejected(exc: SubmissionRejectedError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=rejection_detail(exc),
    )


@router.post("", response_model=ChallengeCreateResponse, status_code=status.HTTP_201_CREATED)
def create_challenge(
    payload: ChallengeCreateRequest,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
    limiter: RateLimiterDep,
    client_ip: ClientIpDep,
) -> ChallengeCreateResponse:
    """Freeze the caller's result as a challenge others can replay.

    Times the plausibility pipeline grades high or critical are refused with 422.
    """
    limiter.hit(player.user_id, RateLimitAction.CHALLENGE_CREATE, ip_address=client_ip)
    try:
        return challenges.create_challenge(
            player.user_id,
            player.username,
            payload.reaction_time,
            rating=payload.rating,
            config=payload.game_config,
        )
    except InvalidChallengeError as exc:
        raise _bad_request(exc) from exc
    except SubmissionRejectedError as exc:
        raise _rejected(exc) from exc


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_expired(_player: CurrentPlayerDep, challenges: ChallengeServiceDep) -> CleanupResponse:
    return CleanupResponse(removed=challenges.cleanup_expired_challenges())


@router.get("/stats", response_model=ChallengeStats)
def get_challenge_stats(challenges: ChallengeServiceDep) -> ChallengeStats:
    return challenges.get_challenge_stats()


@router.get("/{challenge_id}", response_model=Challenge)
def get_challenge(challenge_id: str, challenges: ChallengeServiceDep) -> Challenge:
    challenge = challenges.load_challenge(challenge_id)
    if challenge is None:
        raise _not_found(ChallengeNotFoundError(challenge_id))
    return challenge


@router.delete("/{challenge_id}", response_model=CleanupResponse)
def delete_challenge(
    challenge_id: str,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
) -> CleanupResponse:
    """Let the creator withdraw a challenge together with its sessions."""
    challenge = challenges.load_challenge(challenge_id)
    if challenge is None:
        raise _not_found(ChallengeNotFoundError(challenge_id))
    if challenge.creator_id != player.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the creator can delete a challenge",
        )
    return CleanupResponse(removed=challenges.cleanup_specific_challenge(challenge_id))


@router.post("/{challenge_id}/accept", response_model=ChallengeSession)
def accept_challenge(
    challenge_id: str,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
    limiter: RateLimiterDep,
    client_ip: ClientIpDep,
) -> ChallengeSession:
    limiter.hit(player.user_id, RateLimitAction.CHALLENGE_ACCEPT, ip_address=client_ip)
    try:
        return challenges.accept_challenge(challenge_id, player.user_id)
    except ChallengeNotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidChallengeError as exc:
        raise _bad_request(exc) from exc


@router.post("/{challenge_id}/submit", response_model=ChallengeResult)
def submit_challenge_result(
    challenge_id: str,
    payload: ChallengeSubmitRequest,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
) -> ChallengeResult:
    """Record the caller's attempt and compare it with the creator's time."""
    try:
        return challenges.submit_challenge_result(
            challenge_id,
            player.user_id,
            player.username,
            payload.reaction_time,
            device=payload.device,
            replay=payload.replay_data,
        )
    except ChallengeNotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidChallengeError as exc:
        raise _bad_request(exc) from exc
    except ReplayMismatchError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": "Replay does not match the challenge sequence",
                "errors": [str(mismatch) for mismatch in exc.mismatches],
            },
        ) from exc
    except SubmissionRejectedError as exc:
        raise _rejected(exc) from exc


@router.post("/{challenge_id}/validate-replay", response_model=ReplayValidationResponse)
def validate_replay(
    challenge_id: str,
    payload: ReplayValidationRequest,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
) -> ReplayValidationResponse:
    try:
        return challenges.validate_replay(challenge_id, player.user_id, payload.replay_data)
    except ChallengeNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/{challenge_id}/session", response_model=DeterministicSession)
def get_session(
    challenge_id: str,
    player: CurrentPlayerDep,
    challenges: ChallengeServiceDep,
) -> DeterministicSession:
    """Return the reference sequence stored when the caller accepted."""
    session = challenges.get_deterministic_session(challenge_id, player.user_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No session for this challenge",
        )
    return session
