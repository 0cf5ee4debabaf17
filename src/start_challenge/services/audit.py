"""Validation audit trail: per-user log, hourly metrics, and auto-flag events."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Final

from start_challenge.services import keys
from start_challenge.services.plausibility import (
    CRITICAL_FLAGS,
    PlausibilityOutcome,
    SubmissionContext,
    ValidationAction,
    ValidationResult,
)
from start_challenge.services.storage import StorageEngine, StorageError
from start_challenge.utils.timing import now_ms

logger = logging.getLogger(__name__)

METRICS_TTL_SECONDS: Final[int] = 2 * 3600
SECURITY_EVENT_TTL_SECONDS: Final[int] = 30 * 86_400
TOP_FLAGS_LIMIT: Final[int] = 20


def _append_capped(entry: dict[str, Any], limit: int) -> Callable[[Any], list[Any]]:
    def transform(current: Any) -> list[Any]:
        entries = list(current or [])
        if entry not in entries:
            entries.append(entry)
        return entries[-limit:]

    return transform


def _merge_metrics(result: ValidationResult, severity: str) -> Callable[[Any], dict[str, Any]]:
    def transform(current: Any) -> dict[str, Any]:
        metrics = dict(current or {})
        total = int(metrics.get("total", 0))
        average = float(metrics.get("average_confidence", 0.0))
        by_action = {"accept": 0, "flag": 0, "reject": 0, **metrics.get("by_action", {})}
        by_severity = {
            "low": 0, "medium": 0, "high": 0, "critical": 0, **metrics.get("severity", {})
        }
        top_flags = dict(metrics.get("top_flags", {}))

        by_action[result.action.value] += 1
        by_severity[severity] += 1
        for flag in result.flags:
            top_flags[flag] = top_flags.get(flag, 0) + 1
        top_flags = dict(
            sorted(top_flags.items(), key=lambda item: (-item[1], item[0]))[:TOP_FLAGS_LIMIT]
        )

        return {
            "total": total + 1,
            "average_confidence": (average * total + result.confidence) / (total + 1),
            "by_action": by_action,
            "severity": by_severity,
            "top_flags": top_flags,
        }

    return transform


def _bump_flag_record(
    user_id: str, flags: list[str], timestamp: int
) -> Callable[[Any], dict[str, Any]]:
    def transform(current: Any) -> dict[str, Any]:
        record = dict(current or {"user_id": user_id, "flag_count": 0})
        record["flag_count"] = int(record.get("flag_count", 0)) + 1
        record["last_flagged_at"] = timestamp
        record["last_flags"] = flags
        return record

    return transform


class ValidationAuditLog:
    """Records every plausibility verdict without ever blocking it."""

    def __init__(
        self,
        storage: StorageEngine,
        *,
        log_ttl_seconds: int = 30 * 86_400,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._log_ttl_seconds = log_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

    def hour_bucket(self, at: float | None = None) -> str:
        return time.strftime("%Y%m%d%H", time.gmtime(self._clock() if at is None else at))

    @staticmethod
    def should_auto_flag(result: ValidationResult) -> bool:
        return (
            result.action is ValidationAction.REJECT
            or result.confidence <= 0.0
            or bool(result.flags & CRITICAL_FLAGS)
        )

    def record(self, ctx: SubmissionContext, outcome: PlausibilityOutcome) -> None:
        timestamp = now_ms(self._clock)
        entry = {
            "user_id": ctx.user_id,
            "reaction_time": ctx.reaction_time,
            "severity": outcome.severity.value,
            "timestamp": timestamp,
            "result": outcome.result.to_dict(),
        }
        self._guarded("validation log", lambda: self._storage.atomic_update(
            keys.validation_log(ctx.user_id),
            _append_capped(entry, self._max_entries),
            ttl=self._log_ttl_seconds,
        ))
        self._guarded("hourly metrics", lambda: self._storage.atomic_update(
            keys.validation_metrics(self.hour_bucket()),
            _merge_metrics(outcome.result, outcome.severity.value),
            ttl=METRICS_TTL_SECONDS,
        ))
        if self.should_auto_flag(outcome.result):
            self._guarded("auto-flag", lambda: self._auto_flag(ctx, outcome, timestamp))

    def _auto_flag(self, ctx: SubmissionContext, outcome: PlausibilityOutcome, timestamp: int) -> None:
        flags = sorted(outcome.result.flags)
        event_id = uuid.uuid4().hex
        logger.error(
            "Security event %s: auto-flagged %s (%.1fms) %s",
            event_id,
            ctx.user_id,
            ctx.reaction_time,
            ", ".join(flags),
        )
        self._storage.set(
            keys.security_event(event_id),
            {
                "id": event_id,
                "type": "AUTO_FLAG",
                "user_id": ctx.user_id,
                "reaction_time": ctx.reaction_time,
                "flags": flags,
                "confidence": outcome.result.confidence,
                "severity": outcome.severity.value,
                "timestamp": timestamp,
            },
            ttl=SECURITY_EVENT_TTL_SECONDS,
        )
        self._storage.atomic_update(
            keys.flagged_user(ctx.user_id),
            _bump_flag_record(ctx.user_id, flags, timestamp),
            ttl=SECURITY_EVENT_TTL_SECONDS,
        )

    @staticmethod
    def _guarded(label: str, write: Callable[[], Any]) -> None:
        try:
            write()
        except StorageError as exc:
            logger.warning("Failed to write %s: %s", label, exc)

    # --- Read side -------------------------------------------------------------------
    def get_user_log(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._storage.get(keys.validation_log(user_id), default=[]) or [])

    def get_hourly_metrics(self, bucket: str | None = None) -> dict[str, Any]:
        metrics = self._storage.get(
            keys.validation_metrics(bucket or self.hour_bucket()), default=None
        )
        return metrics or {
            "total": 0,
            "average_confidence": 0.0,
            "by_action": {"accept": 0, "flag": 0, "reject": 0},
            "severity": {"low": 0, "medium": 0, "high": 0, "critical": 0},
            "top_flags": {},
        }

    def get_flag_record(self, user_id: str) -> dict[str, Any] | None:
        return self._storage.get(keys.flagged_user(user_id), default=None)
