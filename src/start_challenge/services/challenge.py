"""Head-to-head challenge services.

A challenge freezes the creator's result together with the seed of the run it
came from. Opponents replay the same deterministic sequence later, and their
results are attached to the challenge through atomic updates so concurrent
opponents never overwrite each other.
"""

from __future__ import annotations

import logging
import math
import secrets
import string
import time
from collections.abc import Callable
from typing import Any, Final, Literal

from pydantic import ValidationError

from start_challenge.core.sequence import GameConfig, generate_seed
from start_challenge.schemas.challenge import (
    Challenge,
    ChallengeAttempt,
    ChallengeCreateResponse,
    ChallengeResult,
    ChallengeSession,
    ChallengeStats,
    DeterministicSession,
    GhostTiming,
    OpponentData,
    ReplayValidationResponse,
)
from start_challenge.schemas.replay import ReplayData
from start_challenge.schemas.validation import DeviceCapabilities
from start_challenge.services import keys
from start_challenge.services.plausibility import Severity, ValidationAction
from start_challenge.services.replay import (
    build_reference_replay,
    ensure_valid_replay,
    replay_confidence,
    validate_replay,
)
from start_challenge.services.scoring import ScoreSubmissionService, SubmissionRejectedError
from start_challenge.services.storage import StorageEngine, StorageError
from start_challenge.utils.timing import now_ms, rate_reaction_time, round_ms

logger = logging.getLogger(__name__)

_BASE36_ALPHABET: Final[str] = string.digits + string.ascii_lowercase

Winner = Literal["user", "opponent", "tie"]


class ChallengeError(RuntimeError):
    """Base exception raised for challenge failures."""


class ChallengeNotFoundError(ChallengeError):
    """Raised when a challenge does not exist or has expired."""

    def __init__(self, challenge_id: str) -> None:
        self.challenge_id = challenge_id
        super().__init__(f"Challenge '{challenge_id}' not found or expired")


class InvalidChallengeError(ChallengeError, ValueError):
    """Raised for requests a challenge cannot accept."""


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_challenge_id(timestamp_ms: int) -> str:
    """Return a sortable, hard-to-guess challenge id."""
    return f"{_to_base36(timestamp_ms)}{secrets.token_hex(4)}"


def determine_winner(
    user_time: float, opponent_time: float, tie_threshold_ms: int = 5
) -> tuple[Winner, int]:
    """Compare two reaction times after canonical rounding; returns (winner, margin ms)."""
    margin = abs(round_ms(user_time) - round_ms(opponent_time))
    if margin <= tie_threshold_ms:
        return "tie", margin
    return ("user" if round_ms(user_time) < round_ms(opponent_time) else "opponent"), margin


def _record_attempt(
    challenge_id: str, attempt: ChallengeAttempt
) -> Callable[[Any], dict[str, Any]]:
    def transform(current: Any) -> dict[str, Any]:
        if current is None:
            raise ChallengeNotFoundError(challenge_id)
        challenge = Challenge.model_validate(current)
        attempts = [item for item in challenge.attempts if item.user_id != attempt.user_id]
        attempts.append(attempt)
        return challenge.model_copy(update={"attempts": attempts}).model_dump(mode="json")

    return transform


def _attach_validation(
    challenge_id: str, validation: ReplayValidationResponse
) -> Callable[[Any], dict[str, Any]]:
    def transform(current: Any) -> dict[str, Any]:
        if current is None:
            raise ChallengeNotFoundError(challenge_id)
        session = DeterministicSession.model_validate(current)
        return session.model_copy(update={"validation": validation}).model_dump(mode="json")

    return transform


class ChallengeService:
    """Creates, resolves and cleans up asynchronous challenges."""

    def __init__(
        self,
        storage: StorageEngine,
        *,
        scoring: ScoreSubmissionService | None = None,
        base_url: str = "http://localhost:8000",
        ttl_seconds: int = 7 * 86_400,
        session_ttl_seconds: int = 86_400,
        validation_ttl_seconds: int = 7 * 86_400,
        min_reaction_ms: float = 80.0,
        max_reaction_ms: float = 1000.0,
        tie_threshold_ms: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._scoring = scoring
        self._base_url = base_url.rstrip("/")
        self._ttl_seconds = ttl_seconds
        self._session_ttl_seconds = session_ttl_seconds
        self._validation_ttl_seconds = validation_ttl_seconds
        self._min_reaction_ms = min_reaction_ms
        self._max_reaction_ms = max_reaction_ms
        self._tie_threshold_ms = tie_threshold_ms
        self._clock = clock

    def register_cleanup(self) -> None:
        """Let the storage engine sweep expired challenges under quota pressure."""
        self._storage.register_cleanup_hook("expired_challenges", self.cleanup_expired_challenges)

    def challenge_url(self, challenge_id: str) -> str:
        return f"{self._base_url}/challenge/{challenge_id}"

    def _check_reaction_time(self, reaction_time: float) -> None:
        if not math.isfinite(reaction_time) or not (
            self._min_reaction_ms <= reaction_time <= self._max_reaction_ms
        ):
            raise InvalidChallengeError(
                f"Reaction time must be between {self._min_reaction_ms:.0f} "
                f"and {self._max_reaction_ms:.0f}ms"
            )

    def create_challenge(
        self,
        creator_id: str,
        creator_name: str,
        reaction_time: float,
        *,
        rating: str | None = None,
        config: GameConfig | None = None,
    ) -> ChallengeCreateResponse:
        self._check_reaction_time(reaction_time)
        flagged = False
        if self._scoring is not None:
            # High and critical verdicts never become shared challenges
            outcome = self._scoring.screen(creator_id, reaction_time, config=config)
            if outcome.severity in (Severity.HIGH, Severity.CRITICAL):
                raise SubmissionRejectedError(outcome)
            flagged = outcome.action is ValidationAction.FLAG

        created_at = now_ms(self._clock)
        computed_rating = rate_reaction_time(reaction_time)
        if rating is not None and rating != computed_rating:
            logger.debug(
                "Client rating %s for %.1fms overridden with %s",
                rating,
                reaction_time,
                computed_rating,
            )

        challenge = Challenge(
            id=generate_challenge_id(created_at),
            creator_id=creator_id,
            creator_name=creator_name,
            creator_time=reaction_time,
            creator_rating=computed_rating,
            seed=generate_seed(),
            created_at=created_at,
            expires_at=created_at + self._ttl_seconds * 1000,
            game_config=config or GameConfig(),
            flagged=flagged,
        )
        if not self._storage.set(
            keys.challenge(challenge.id), challenge.model_dump(mode="json"), ttl=self._ttl_seconds
        ):
            logger.warning("Challenge %s only cached locally", challenge.id)
        logger.info("Challenge %s created by %s (%.1fms)", challenge.id, creator_id, reaction_time)
        return ChallengeCreateResponse(
            challenge_id=challenge.id,
            challenge_url=self.challenge_url(challenge.id),
            expires_at=challenge.expires_at,
        )

    def load_challenge(self, challenge_id: str) -> Challenge | None:
        """Return the challenge, deleting it instead if it has expired."""
        raw = self._storage.get(keys.challenge(challenge_id))
        if raw is None:
            return None
        challenge = Challenge.model_validate(raw)
        if challenge.expires_at <= now_ms(self._clock):
            logger.info("Challenge %s expired, removing", challenge_id)
            self._storage.delete(keys.challenge(challenge_id))
            return None
        return challenge

    def _require(self, challenge_id: str) -> Challenge:
        challenge = self.load_challenge(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(challenge_id)
        return challenge

    def accept_challenge(self, challenge_id: str, user_id: str) -> ChallengeSession:
        """Open a deterministic session replaying the creator's sequence."""
        challenge = self._require(challenge_id)
        if user_id == challenge.creator_id:
            raise InvalidChallengeError("You cannot accept your own challenge")

        reference = build_reference_replay(challenge.seed, challenge.game_config)
        session_key = keys.challenge_session(challenge_id, user_id)
        session = DeterministicSession(
            challenge_id=challenge_id,
            user_id=user_id,
            seed=challenge.seed,
            config=challenge.game_config,
            random_delay=reference.random_delay,
            light_timings=list(reference.light_timings),
            lights_out_at=reference.total_duration,
            sequence_hash=reference.sequence_hash,
            created_at=now_ms(self._clock),
        )
        self._storage.set(session_key, session.model_dump(mode="json"), ttl=self._session_ttl_seconds)

        return ChallengeSession(
            challenge=challenge,
            seed=challenge.seed,
            ghost_timing=GhostTiming(
                reaction_time=challenge.creator_time,
                random_delay=session.random_delay,
                light_timings=session.light_timings,
                lights_out_at=session.lights_out_at,
            ),
            is_active=True,
            opponent_data=OpponentData(
                user_id=challenge.creator_id,
                username=challenge.creator_name,
                reaction_time=challenge.creator_time,
                rating=challenge.creator_rating,
            ),
            session_key=session_key,
        )

    def submit_challenge_result(
        self,
        challenge_id: str,
        user_id: str,
        username: str,
        reaction_time: float,
        *,
        device: DeviceCapabilities | None = None,
        replay: ReplayData | None = None,
    ) -> ChallengeResult:
        """Record an opponent's result, replacing any earlier attempt by the same user.

        A replay sent along with the result must match the challenge's
        deterministic sequence, otherwise ``ReplayMismatchError`` is raised and
        nothing is recorded.
        """
        self._check_reaction_time(reaction_time)
        challenge = self._require(challenge_id)
        if user_id == challenge.creator_id:
            raise InvalidChallengeError("You cannot submit a result to your own challenge")
        if replay is not None:
            ensure_valid_replay(
                replay, build_reference_replay(challenge.seed, challenge.game_config)
            )
        if self._scoring is not None:
            self._scoring.screen(
                user_id, reaction_time, device=device, config=challenge.game_config
            )

        current = now_ms(self._clock)
        remaining_seconds = math.ceil((challenge.expires_at - current) / 1000)
        if remaining_seconds <= 0:
            raise ChallengeNotFoundError(challenge_id)

        rating = rate_reaction_time(reaction_time)
        attempt = ChallengeAttempt(
            user_id=user_id,
            username=username,
            reaction_time=reaction_time,
            rating=rating,
            completed_at=current,
        )
        self._storage.atomic_update(
            keys.challenge(challenge_id),
            _record_attempt(challenge_id, attempt),
            ttl=remaining_seconds,
        )

        winner, margin = determine_winner(
            reaction_time, challenge.creator_time, self._tie_threshold_ms
        )
        logger.info(
            "Challenge %s: %s %.1fms vs %.1fms -> %s",
            challenge_id,
            user_id,
            reaction_time,
            challenge.creator_time,
            winner,
        )
        return ChallengeResult(
            challenge_id=challenge_id,
            user_time=reaction_time,
            opponent_time=challenge.creator_time,
            winner=winner,
            margin_of_victory=margin,
            user_rating=rating,
            opponent_rating=challenge.creator_rating,
        )

    def get_deterministic_session(self, challenge_id: str, user_id: str) -> DeterministicSession | None:
        raw = self._storage.get(keys.challenge_session(challenge_id, user_id))
        return DeterministicSession.model_validate(raw) if raw else None

    def validate_replay(
        self, challenge_id: str, user_id: str, replay: ReplayData
    ) -> ReplayValidationResponse:
        """Check a replay against the challenge's deterministic reference and score it."""
        challenge = self._require(challenge_id)
        reference = build_reference_replay(challenge.seed, challenge.game_config)
        validation = validate_replay(replay, reference)
        session = self.get_deterministic_session(challenge_id, user_id)
        errors = validation.errors
        if session is None:
            errors = [*errors, "session: no deterministic session for this player"]
        response = ReplayValidationResponse(
            is_valid=validation.is_valid,
            errors=errors,
            confidence=replay_confidence(validation, session_missing=session is None),
        )

        try:
            self._storage.set(
                keys.challenge_validation(challenge_id, user_id),
                {**response.model_dump(mode="json"), "validated_at": now_ms(self._clock)},
                ttl=self._validation_ttl_seconds,
            )
            if session is not None:
                self._storage.atomic_update(
                    keys.challenge_session(challenge_id, user_id),
                    _attach_validation(challenge_id, response),
                    ttl=self._session_ttl_seconds,
                )
        except (StorageError, ChallengeNotFoundError) as exc:
            logger.warning("Could not store replay validation for %s: %s", challenge_id, exc)
        return response

    def get_challenge_stats(self) -> ChallengeStats:
        """Summarize stored challenges; expired ones still awaiting cleanup are counted apart."""
        current = now_ms(self._clock)
        active: list[Challenge] = []
        expired = 0
        for key in self._storage.scan_keys(keys.CHALLENGE_PATTERN):
            raw = self._storage.get(key, default=None)
            if raw is None:
                continue
            try:
                challenge = Challenge.model_validate(raw)
            except ValidationError:
                expired += 1
                continue
            if challenge.expires_at <= current:
                expired += 1
            else:
                active.append(challenge)

        most_popular = max(
            (challenge for challenge in active if challenge.attempts),
            key=lambda challenge: (len(challenge.attempts), -challenge.created_at),
            default=None,
        )
        return ChallengeStats(
            total_active=len(active),
            total_expired=expired,
            average_attempts=(
                round(sum(len(challenge.attempts) for challenge in active) / len(active), 2)
                if active
                else 0.0
            ),
            most_popular_challenge=most_popular.id if most_popular else None,
        )

    def cleanup_expired_challenges(self) -> int:
        """Delete every stored challenge past its expiry; returns how many were removed."""
        current = now_ms(self._clock)
        removed = 0
        for key in self._storage.scan_keys(keys.CHALLENGE_PATTERN):
            raw = self._storage.get(key, default=None)
            if raw is None:
                continue
            try:
                expires_at = Challenge.model_validate(raw).expires_at
            except ValidationError:
                logger.warning("Removing unreadable challenge record %s", key)
                expires_at = current
            if expires_at <= current and self._storage.delete(key):
                removed += 1
        if removed:
            logger.info("Removed %d expired challenges", removed)
        return removed

    def cleanup_specific_challenge(self, challenge_id: str) -> int:
        """Delete a challenge with its sessions and replay validations."""
        removed = int(self._storage.delete(keys.challenge(challenge_id)))
        for pattern in (
            keys.challenge_session(challenge_id, "*"),
            keys.challenge_validation(challenge_id, "*"),
        ):
            for key in self._storage.scan_keys(pattern):
                removed += int(self._storage.delete(key))
        logger.info("Cleaned up challenge %s (%d records)", challenge_id, removed)
        return removed
