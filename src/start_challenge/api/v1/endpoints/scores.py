# src/start_challenge/api/v1/endpoints/scores.py
"""Score submission endpoint."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from start_challenge.schemas.leaderboard import ScoreSubmitRequest, ScoreSubmitResponse
from start_challenge.services.leaderboard import TOO_RAPID_MESSAGE, InvalidSubmissionError
from start_challenge.services.rate_limit import RateLimitAction
from start_challenge.services.scoring import DuplicateSubmissionError, SubmissionRejectedError

from ..dependencies import ClientIpDep, CurrentPlayerDep, RateLimiterDep, ScoringServiceDep

router = APIRouter(prefix="/scores", tags=["scores"])


def rejection_detail(exc: SubmissionRejectedError) -> dict[str, object]:
    """Build the 422 payload shared by score and challenge submissions."""
    return {
        "message": "Submission rejected by validation",
        "flags": exc.flags,
        "confidence": exc.confidence,
    }


@router.post("", response_model=ScoreSubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_score(
    payload: ScoreSubmitRequest,
    player: CurrentPlayerDep,
    scoring: ScoringServiceDep,
    limiter: RateLimiterDep,
    client_ip: ClientIpDep,
) -> ScoreSubmitResponse:
    """Validate a finished game and insert it into every leaderboard period.

    Raises:
        HTTPException: 400 for malformed entries, 429/409 for duplicates and
            422 when the plausibility pipeline rejects the time
        RateLimitExceededError: When the player or IP is over its limit (429)
    """
    limiter.hit(player.user_id, RateLimitAction.SCORE_SUBMISSION, ip_address=client_ip)
    try:
        outcome = scoring.submit(
            player.user_id,
            player.username,
            payload.reaction_time,
            scope=payload.scope,
            device=payload.device,
        )
    except InvalidSubmissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "flags": exc.flags},
        ) from exc
    except DuplicateSubmissionError as exc:
        code = (
            status.HTTP_429_TOO_MANY_REQUESTS
            if exc.message == TOO_RAPID_MESSAGE
            else status.HTTP_409_CONFLICT
        )
        raise HTTPException(status_code=code, detail=exc.message) from exc
    except SubmissionRejectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=rejection_detail(exc),
        ) from exc

    result = outcome.plausibility.result
    return ScoreSubmitResponse(
        action=result.action.value,
        confidence=result.confidence,
        flags=sorted(result.flags),
        severity=outcome.plausibility.severity.value,
        rating=outcome.rating,
        rank=outcome.rank,
        total_entries=outcome.total_entries,
        ranks=outcome.ranks,
    )
