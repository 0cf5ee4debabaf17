"""Per-player and per-IP action rate limiting.

Each (player, action) pair keeps the timestamps of its recent actions under
one key, and the minute, hour and day windows are counted from that list.
Checking and recording happen in a single atomic update, so concurrent
requests cannot both slip under a limit.

Exceeding a player limit records a violation. Every violation within the last
day raises the penalty level: a temporary ban, then stricter limits once the
ban lifts. Whitelisted players get proportionally higher limits.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Final

from start_challenge.schemas.rate_limit import (
    RateLimitStatus,
    SuspiciousActivity,
    WhitelistEntry,
    WindowCounts,
)
from start_challenge.services import keys
from start_challenge.services.storage import StorageEngine, StorageError
from start_challenge.utils.timing import now_ms

logger = logging.getLogger(__name__)

WINDOWS_MS: Final[dict[str, int]] = {"minute": 60_000, "hour": 3_600_000, "day": 86_400_000}
DAY_SECONDS: Final[int] = 86_400
VIOLATION_TTL_SECONDS: Final[int] = 7 * DAY_SECONDS
WHITELIST_TTL_SECONDS: Final[int] = 365 * DAY_SECONDS
MAX_VIOLATION_HISTORY: Final[int] = 100
MAX_PENALTY_LEVEL: Final[int] = 5


class RateLimitAction(str, Enum):
    SCORE_SUBMISSION = "score_submission"
    CHALLENGE_CREATE = "challenge_create"
    CHALLENGE_ACCEPT = "challenge_accept"


class TrustLevel(str, Enum):
    VERIFIED = "verified"
    MODERATOR = "moderator"
    ADMIN = "admin"


@dataclass(frozen=True)
class WindowLimits:
    minute: int
    hour: int
    day: int

    def items(self) -> list[tuple[str, int]]:
        return [("minute", self.minute), ("hour", self.hour), ("day", self.day)]

    def scaled(self, multiplier: float) -> WindowLimits:
        return WindowLimits(*(int(limit * multiplier) for _, limit in self.items()))

    def divided(self, divisor: float) -> WindowLimits:
        return WindowLimits(*(max(1, math.floor(limit / divisor)) for _, limit in self.items()))

    def counts(self) -> WindowCounts:
        return WindowCounts(minute=self.minute, hour=self.hour, day=self.day)


@dataclass(frozen=True)
class Penalty:
    duration_seconds: int
    multiplier: float


USER_LIMITS: Final[dict[RateLimitAction, WindowLimits]] = {
    RateLimitAction.SCORE_SUBMISSION: WindowLimits(minute=10, hour=50, day=200),
    RateLimitAction.CHALLENGE_CREATE: WindowLimits(minute=5, hour=20, day=100),
    RateLimitAction.CHALLENGE_ACCEPT: WindowLimits(minute=10, hour=50, day=300),
}

# Score submissions have their own IP bucket; every other action shares "general"
IP_LIMITS: Final[dict[str, WindowLimits]] = {
    RateLimitAction.SCORE_SUBMISSION.value: WindowLimits(minute=10, hour=100, day=500),
    "general": WindowLimits(minute=100, hour=2000, day=10_000),
}

PENALTY_LEVELS: Final[dict[int, Penalty]] = {
    1: Penalty(duration_seconds=5 * 60, multiplier=1.5),
    2: Penalty(duration_seconds=15 * 60, multiplier=2.0),
    3: Penalty(duration_seconds=60 * 60, multiplier=3.0),
    4: Penalty(duration_seconds=6 * 60 * 60, multiplier=5.0),
    5: Penalty(duration_seconds=24 * 60 * 60, multiplier=10.0),
}

WHITELIST_MULTIPLIERS: Final[dict[TrustLevel, int]] = {
    TrustLevel.VERIFIED: 2,
    TrustLevel.MODERATOR: 5,
    TrustLevel.ADMIN: 10,
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int
    retry_after: int = 0
    reason: str | None = None


class RateLimitExceededError(RuntimeError):
    """Raised when an action would exceed a limit or the player is banned."""

    def __init__(self, result: RateLimitResult) -> None:
        self.result = result
        super().__init__(result.reason or "Rate limit exceeded")


def _iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


def _denied(reason: str, reset_time: int, now: int) -> RateLimitExceededError:
    return RateLimitExceededError(
        RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            retry_after=max(1, math.ceil((reset_time - now) / 1000)),
            reason=reason,
        )
    )


def _recent(current: Any, now: int) -> list[int]:
    return [int(stamp) for stamp in current or [] if now - int(stamp) < WINDOWS_MS["day"]]


def _window_usage(stamps: list[int], now: int) -> dict[str, int]:
    return {
        window: sum(1 for stamp in stamps if now - stamp < span)
        for window, span in WINDOWS_MS.items()
    }


def _remaining(limits: WindowLimits, stamps: list[int], now: int) -> int:
    usage = _window_usage(stamps, now)
    return max(0, min(limit - usage[window] for window, limit in limits.items()))


def _consume(limits: WindowLimits, now: int, label: str) -> Callable[[Any], list[int]]:
    """Record one action at ``now`` unless one of the windows is already full."""

    def transform(current: Any) -> list[int]:
        stamps = _recent(current, now)
        violations: list[str] = []
        reset_time = now
        for window, limit in limits.items():
            inside = [stamp for stamp in stamps if now - stamp < WINDOWS_MS[window]]
            if len(inside) >= limit:
                violations.append(f"{window} limit ({limit})")
                # A full window reopens once its oldest action ages out
                reset_time = max(reset_time, min(inside, default=now) + WINDOWS_MS[window])
        if violations:
            raise _denied(f"{label} rate limit exceeded: {', '.join(violations)}", reset_time, now)
        stamps.append(now)
        return stamps

    return transform


def _append_violation(action: str, now: int) -> Callable[[Any], dict[str, Any]]:
    violation = {"action": action, "timestamp": now, "type": "rate_limit"}

    def transform(current: Any) -> dict[str, Any]:
        record = current or {"total_violations": 0, "history": []}
        history = list(record.get("history", []))
        if violation in history:
            return record
        history.append(violation)
        return {
            "total_violations": int(record.get("total_violations", 0)) + 1,
            "history": history[-MAX_VIOLATION_HISTORY:],
        }

    return transform


def _penalty_level(record: Any, now: int) -> int:
    if not record:
        return 0
    recent = sum(
        1
        for violation in record.get("history", [])
        if now - int(violation["timestamp"]) < WINDOWS_MS["day"]
    )
    return min(MAX_PENALTY_LEVEL, recent)


class RateLimitService:
    """Sliding-window limits per player and action, plus per-IP ceilings."""

    def __init__(
        self,
        storage: StorageEngine,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._enabled = enabled
        self._clock = clock

    # --- Whitelist ------------------------------------------------------------------
    def get_whitelist(self, user_id: str) -> WhitelistEntry | None:
        raw = self._storage.get(keys.user_whitelist(user_id), default=None)
        return WhitelistEntry.model_validate(raw) if raw else None

    def add_to_whitelist(
        self, user_id: str, level: TrustLevel | str, reason: str, *, added_by: str = "system"
    ) -> WhitelistEntry:
        entry = WhitelistEntry(
            user_id=user_id,
            level=TrustLevel(level).value,
            reason=reason,
            added_at=now_ms(self._clock),
            added_by=added_by,
        )
        self._storage.set(
            keys.user_whitelist(user_id), entry.model_dump(mode="json"), ttl=WHITELIST_TTL_SECONDS
        )
        logger.info("Whitelisted %s as %s by %s", user_id, entry.level, added_by)
        return entry

    def remove_from_whitelist(self, user_id: str) -> bool:
        return self._storage.delete(keys.user_whitelist(user_id))

    # --- Penalties ------------------------------------------------------------------
    def active_penalty(self, user_id: str) -> dict[str, Any] | None:
        raw = self._storage.get(keys.user_penalty(user_id), default=None)
        if not raw or int(raw["expires_at"]) <= now_ms(self._clock):
            return None
        return raw

    def penalty_level(self, user_id: str) -> int:
        """Number of violations in the last day, capped at the harshest level."""
        record = self._storage.get(keys.user_violations(user_id), default=None)
        return _penalty_level(record, now_ms(self._clock))

    def effective_limits(self, user_id: str, action: RateLimitAction | str) -> WindowLimits:
        limits = USER_LIMITS[RateLimitAction(action)]
        whitelist = self.get_whitelist(user_id)
        if whitelist is not None:
            limits = limits.scaled(WHITELIST_MULTIPLIERS[TrustLevel(whitelist.level)])
        level = self.penalty_level(user_id)
        if level:
            limits = limits.divided(PENALTY_LEVELS[level].multiplier)
        return limits

    def _record_violation(self, user_id: str, action: RateLimitAction, now: int) -> None:
        try:
            record = self._storage.atomic_update(
                keys.user_violations(user_id),
                _append_violation(action.value, now),
                ttl=VIOLATION_TTL_SECONDS,
            )
            level = max(1, _penalty_level(record, now))
            penalty = PENALTY_LEVELS[level]
            expires_at = now + penalty.duration_seconds * 1000
            self._storage.set(
                keys.user_penalty(user_id),
                {
                    "level": level,
                    "reason": f"Rate limit violations: {action.value}",
                    "applied_at": now,
                    "expires_at": expires_at,
                    "multiplier": penalty.multiplier,
                },
                ttl=penalty.duration_seconds,
            )
        except StorageError as exc:
            logger.warning("Could not record rate limit violation for %s: %s", user_id, exc)
            return
        logger.warning(
            "Rate limit penalty level %d for %s until %s", level, user_id, _iso(expires_at)
        )

    # --- Enforcement ----------------------------------------------------------------
    def hit(
        self,
        user_id: str,
        action: RateLimitAction | str,
        *,
        ip_address: str | None = None,
    ) -> RateLimitResult:
        """Record ``action`` for the player and IP, or raise ``RateLimitExceededError``.

        Storage failures fail open: the action is allowed and a warning logged.
        """
        action = RateLimitAction(action)
        now = now_ms(self._clock)
        if not self._enabled:
            return RateLimitResult(True, USER_LIMITS[action].minute, now + WINDOWS_MS["minute"])
        try:
            return self._hit(user_id, action, ip_address, now)
        except StorageError as exc:
            logger.warning("Rate limit check for %s:%s skipped: %s", user_id, action.value, exc)
            return RateLimitResult(
                True, 1, now + WINDOWS_MS["minute"], reason="Rate limit check unavailable"
            )

    def _hit(
        self, user_id: str, action: RateLimitAction, ip_address: str | None, now: int
    ) -> RateLimitResult:
        penalty = self.active_penalty(user_id)
        if penalty is not None:
            until = int(penalty["expires_at"])
            raise _denied(
                f"Temporary ban active until {_iso(until)}. Reason: {penalty['reason']}",
                until,
                now,
            )

        limits = self.effective_limits(user_id, action)
        try:
            stamps = self._storage.atomic_update(
                keys.rate_limit(user_id, action.value),
                _consume(limits, now, "User"),
                ttl=DAY_SECONDS,
            )
        except RateLimitExceededError as exc:
            logger.info("Rate limited %s on %s: %s", user_id, action.value, exc)
            self._record_violation(user_id, action, now)
            raise
        remaining = _remaining(limits, stamps, now)

        if ip_address:
            bucket = action.value if action.value in IP_LIMITS else "general"
            ip_limits = IP_LIMITS[bucket]
            ip_stamps = self._storage.atomic_update(
                keys.ip_rate_limit(ip_address, bucket),
                _consume(ip_limits, now, "IP"),
                ttl=DAY_SECONDS,
            )
            remaining = min(remaining, _remaining(ip_limits, ip_stamps, now))

        return RateLimitResult(True, remaining, now + WINDOWS_MS["minute"])

    # --- Reporting ------------------------------------------------------------------
    def status(self, user_id: str, action: RateLimitAction | str) -> RateLimitStatus:
        action = RateLimitAction(action)
        now = now_ms(self._clock)
        limits = self.effective_limits(user_id, action)
        stamps = _recent(
            self._storage.get(keys.rate_limit(user_id, action.value), default=None), now
        )
        usage = _window_usage(stamps, now)
        penalty = self.active_penalty(user_id)
        whitelist = self.get_whitelist(user_id)

        reset_times: dict[str, int] = {}
        for window, span in WINDOWS_MS.items():
            inside = [stamp for stamp in stamps if now - stamp < span]
            reset_times[window] = min(inside) + span if inside else now

        return RateLimitStatus(
            action=action.value,
            limits=limits.counts(),
            usage=WindowCounts(**usage),
            remaining=WindowCounts(
                **{window: max(0, limit - usage[window]) for window, limit in limits.items()}
            ),
            reset_times=WindowCounts(**reset_times),
            is_limited=penalty is not None
            or any(usage[window] >= limit for window, limit in limits.items()),
            penalty_level=self.penalty_level(user_id),
            banned_until=int(penalty["expires_at"]) if penalty else None,
            whitelist_level=whitelist.level if whitelist else None,
        )

    def detect_suspicious_activity(self, user_id: str) -> SuspiciousActivity:
        """Score usage patterns that look automated across every limited action."""
        flags: list[str] = []
        score = 0.0
        limited = 0
        for action in RateLimitAction:
            status = self.status(user_id, action)
            usage, limits = status.usage, status.limits
            label = action.value.upper()
            if usage.minute == limits.minute and usage.hour == limits.hour:
                flags.append(f"CONSISTENT_MAX_USAGE_{label}")
                score += 0.3
            if status.is_limited:
                flags.append(f"RATE_LIMITED_{label}")
                score += 0.2
                limited += 1
            if usage.minute > 0 and usage.minute == usage.hour == usage.day:
                flags.append(f"UNIFORM_TIMING_{label}")
                score += 0.4
        if limited >= 2:
            flags.append("MULTIPLE_ACTIONS_LIMITED")
            score += 0.5

        score = round(min(1.0, score), 4)
        if score > 0.8:
            recommendation = "block"
        elif score > 0.6:
            recommendation = "monitor"
        else:
            recommendation = "allow"
        return SuspiciousActivity(
            user_id=user_id,
            suspicion_score=score,
            flags=flags,
            is_suspicious=score > 0.6,
            recommendation=recommendation,
            timestamp=now_ms(self._clock),
        )

    def reset(self, user_id: str) -> int:
        """Clear a player's counters, violations and ban; returns keys removed."""
        names = [keys.rate_limit(user_id, action.value) for action in RateLimitAction]
        names += [keys.user_violations(user_id), keys.user_penalty(user_id)]
        removed = sum(int(self._storage.delete(name)) for name in names)
        logger.info("Reset rate limits for %s (%d keys)", user_id, removed)
        return removed
