"""Atomic storage engine over Redis.

This module provides the StorageEngine class that every other service uses to
persist JSON aggregates. It includes:

- Bounded retry with exponential backoff and jitter for transient failures
- Circuit breaker per operation class for fault tolerance
- Optimistic read-transform-write cycles built on WATCH/MULTI/EXEC
- Local LRU fallback cache for degraded-mode reads
- Quota guard with warning/critical thresholds and emergency cleanup hooks
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, TypeVar

import redis

from start_challenge.core.settings import Settings

# Configure logger for this module
logger = logging.getLogger(__name__)

QUOTA_USAGE_KEY: Final[str] = "quota:usage"
QUOTA_SIZES_KEY: Final[str] = "quota:sizes"

TRANSIENT_ERRORS: Final = (redis.ConnectionError, redis.TimeoutError)

_MISSING: Final = object()

T = TypeVar("T")
Transform = Callable[[Any], Any]
CleanupHook = Callable[[], int]


class StorageError(RuntimeError):
    """Base exception raised for storage-engine failures."""


class StorageUnavailableError(StorageError):
    """Raised when an operation keeps failing after every retry attempt."""

    def __init__(self, operation: str, key: str, attempts: int) -> None:
        self.operation = operation
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Storage operation '{operation}' on '{key}' failed after {attempts} attempts"
        )


class CircuitOpenError(StorageError):
    """Raised immediately while the breaker for an operation class is open."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Circuit breaker for '{operation}' is open")


class QuotaExceededError(StorageError):
    """Raised when a write would push usage past the storage ceiling."""

    def __init__(self, key: str, projected_bytes: int, max_bytes: int) -> None:
        self.key = key
        self.projected_bytes = projected_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"Writing '{key}' would use {projected_bytes} bytes (limit {max_bytes})"
        )


class StorageConflictError(StorageError):
    """Raised when optimistic updates keep losing the race for a key."""

    def __init__(self, key: str, conflicts: int) -> None:
        self.key = key
        self.conflicts = conflicts
        super().__init__(f"Gave up updating '{key}' after {conflicts} write conflicts")


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance."""

    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Cooldown elapsed - probing the backend


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding one storage operation class."""

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    clock: Callable[[], float] = time.time

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _last_failure_time: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow_request(self) -> bool:
        """Return True if a call may be issued, moving OPEN to HALF_OPEN after the cooldown."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.clock() - self._last_failure_time < self.recovery_timeout:
                    return False
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit '%s' half-open, probing backend", self.name)
            return True

    def record_success(self) -> None:
        """Record a successful operation."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit '%s' closed after a successful trial request", self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock()
            should_open = (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.failure_threshold
            )
            if should_open and self._state != CircuitState.OPEN:
                logger.warning(
                    "Circuit '%s' opened after %d failures",
                    self.name,
                    self._failure_count,
                )
                self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time or None,
            }


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retrying transient storage failures."""

    attempts: int = 3
    initial_delay_seconds: float = 0.1
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 2.0
    jitter_seconds: float = 0.1

    def normalized_attempts(self) -> int:
        """Return a minimum of one attempt."""
        return max(1, int(self.attempts))

    def compute_delay(self, attempt: int) -> float:
        """Compute the backoff delay after *attempt* (1-indexed), jitter included."""
        if attempt <= 0:
            return 0.0

        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        if self.max_delay_seconds > 0:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter_seconds > 0:
            delay += random.uniform(0.0, self.jitter_seconds)
        return max(0.0, float(delay))


class LocalCache:
    """Bounded LRU of encoded payloads with per-entry expiry."""

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_entries = max(1, max_entries)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return payload

    def put(self, key: str, payload: str, ttl: int | None = None) -> None:
        lifetime = self._ttl_seconds if ttl is None else min(ttl, self._ttl_seconds)
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, payload)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _as_text(raw: str | bytes) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else raw


class StorageEngine:
    """JSON key-value store with retries, circuit breakers, fallback cache and quota.

    ``atomic_update`` is the only sanctioned way to mutate shared aggregates: the
    whole read-transform-write cycle runs under WATCH and is re-run from a fresh
    read whenever another writer touched the key first. Transforms must
    therefore be pure functions of the value they receive.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        retry_policy: RetryPolicy | None = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        max_conflict_retries: int = 25,
        max_storage_bytes: int = 100 * 1024 * 1024,
        warning_ratio: float = 0.8,
        critical_ratio: float = 0.95,
        local_cache: LocalCache | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy()
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._max_conflict_retries = max_conflict_retries
        self._max_storage_bytes = max_storage_bytes
        self._warning_ratio = warning_ratio
        self._critical_ratio = critical_ratio
        self._local = local_cache or LocalCache(clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()
        self._cleanup_hooks: dict[str, CleanupHook] = {}
        self._cleanup_lock = threading.Lock()

    @classmethod
    def from_settings(cls, config: Settings, client: redis.Redis | None = None) -> StorageEngine:
        """Build an engine wired to ``config``; connects to ``REDIS_URL`` unless given a client."""
        if client is None:
            client = redis.from_url(config.redis_url, decode_responses=True)
        return cls(
            client,
            retry_policy=RetryPolicy(
                attempts=config.storage_retry_attempts,
                initial_delay_seconds=config.storage_retry_initial_delay,
                backoff_multiplier=config.storage_retry_backoff,
                max_delay_seconds=config.storage_retry_max_delay,
                jitter_seconds=config.storage_retry_jitter,
            ),
            failure_threshold=config.breaker_failure_threshold,
            recovery_timeout=config.breaker_recovery_seconds,
            max_conflict_retries=config.storage_conflict_retries,
            max_storage_bytes=config.storage_max_bytes,
            warning_ratio=config.storage_warning_ratio,
            critical_ratio=config.storage_critical_ratio,
            local_cache=LocalCache(
                max_entries=config.local_cache_entries,
                ttl_seconds=config.local_cache_ttl_seconds,
            ),
        )

    @property
    def local_cache(self) -> LocalCache:
        return self._local

    # --- Circuit breakers -----------------------------------------------------------
    def breaker(self, operation: str) -> CircuitBreaker:
        """Return the breaker owned by this engine for ``operation``."""
        with self._breakers_lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=operation,
                    failure_threshold=self._failure_threshold,
                    recovery_timeout=self._recovery_timeout,
                    clock=self._clock,
                )
                self._breakers[operation] = breaker
            return breaker

    def breaker_states(self) -> dict[str, dict[str, Any]]:
        with self._breakers_lock:
            breakers = dict(self._breakers)
        return {name: breaker.snapshot() for name, breaker in sorted(breakers.items())}

    def _run(self, operation: str, key: str, func: Callable[[], T]) -> T:
        breaker = self.breaker(operation)
        if not breaker.allow_request():
            raise CircuitOpenError(operation)

        attempts = self._retry_policy.normalized_attempts()
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                result = func()
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                logger.debug(
                    "Storage %s on %s failed (attempt %d/%d): %s",
                    operation,
                    key,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    self._sleep(self._retry_policy.compute_delay(attempt))
                continue
            breaker.record_success()
            return result

        breaker.record_failure()
        logger.warning("Storage %s on %s exhausted %d attempts", operation, key, attempts)
        raise StorageUnavailableError(operation, key, attempts) from last_error

    # --- Serialization --------------------------------------------------------------
    @staticmethod
    def _encode(key: str, value: Any) -> str:
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for '{key}' is not JSON serializable") from exc

    @staticmethod
    def _decode(raw: str | bytes | None) -> Any:
        if raw is None:
            return None
        return json.loads(raw)

    @staticmethod
    def estimate_size(key: str, payload: str) -> int:
        """Approximate bytes a key/payload pair occupies in the backend."""
        return len(key.encode("utf-8")) + len(payload.encode("utf-8"))

    # --- Public operations ----------------------------------------------------------
    def get(self, key: str, default: Any = _MISSING) -> Any:
        """Return the decoded value for ``key``.

        Missing keys yield ``default`` (or None). While the backend is unreachable
        the local cache is consulted, then ``default``; with neither available the
        storage error is raised.
        """
        try:
            raw = self._run("get", key, lambda: self._client.get(key))
        except (CircuitOpenError, StorageUnavailableError) as exc:
            cached = self._local.get(key)
            if cached is not None:
                logger.warning("Serving %s from local cache: %s", key, exc)
                return self._decode(cached)
            if default is not _MISSING:
                logger.warning("Serving default for %s: %s", key, exc)
                return default
            raise

        if raw is None:
            self._local.discard(key)
            return None if default is _MISSING else default
        self._local.put(key, _as_text(raw))
        return self._decode(raw)

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Write ``value`` under ``key``.

        Returns False when the backend is unavailable and the value was only kept
        in the local cache. Quota violations raise ``QuotaExceededError``.
        """
        ttl = self._normalize_ttl(ttl)
        payload = self._encode(key, value)
        size = self.estimate_size(key, payload)

        def _write() -> None:
            previous = self._stored_size(self._client, key)
            self._guard_quota(key, size - previous)
            pipe = self._client.pipeline(transaction=True)
            self._queue_write(pipe, key, payload, size, previous, ttl)
            pipe.execute()

        try:
            self._run("set", key, _write)
        except (CircuitOpenError, StorageUnavailableError) as exc:
            self._local.put(key, payload, ttl)
            logger.warning("Storage degraded, %s kept in local cache only: %s", key, exc)
            return False
        self._local.put(key, payload, ttl)
        return True

    def delete(self, key: str) -> bool:
        """Remove ``key``; returns True if it existed."""
        self._local.discard(key)

        def _delete() -> bool:
            previous = self._stored_size(self._client, key)
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hdel(QUOTA_SIZES_KEY, key)
            if previous:
                pipe.decrby(QUOTA_USAGE_KEY, previous)
            removed = pipe.execute()[0]
            return bool(removed)

        return self._run("delete", key, _delete)

    def atomic_update(self, key: str, transform: Transform, ttl: int | None = None) -> Any:
        """Apply ``transform`` to the current value of ``key`` and persist the result.

        ``transform`` receives the decoded value (None when absent) and must
        return the new JSON-serializable value. Conflicting writers cause the
        cycle to re-run against the newer value; transient failures re-run it
        under the retry policy.
        """
        ttl = self._normalize_ttl(ttl)

        def _cycle() -> Any:
            conflicts = 0
            while True:
                with self._client.pipeline(transaction=True) as pipe:
                    try:
                        pipe.watch(key)
                        updated = transform(self._decode(pipe.get(key)))
                        payload = self._encode(key, updated)
                        size = self.estimate_size(key, payload)
                        previous = self._stored_size(pipe, key)
                        self._guard_quota(key, size - previous)
                        pipe.multi()
                        self._queue_write(pipe, key, payload, size, previous, ttl)
                        pipe.execute()
                    except redis.WatchError:
                        conflicts += 1
                        if conflicts > self._max_conflict_retries:
                            raise StorageConflictError(key, conflicts) from None
                        logger.debug("Write conflict on %s (%d), retrying", key, conflicts)
                        continue
                self._local.put(key, payload, ttl)
                return updated

        return self._run("atomic_update", key, _cycle)

    def scan_keys(self, pattern: str) -> list[str]:
        """Return every key matching the glob ``pattern``."""
        return self._run(
            "scan",
            pattern,
            lambda: [_as_text(key) for key in self._client.scan_iter(match=pattern, count=500)],
        )

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.warning("Storage ping failed: %s", exc)
            return False

    # --- Quota guard ----------------------------------------------------------------
    def register_cleanup_hook(self, name: str, hook: CleanupHook) -> None:
        """Register ``hook`` to run when usage crosses the critical threshold.

        Hooks return the number of records they removed. Registering the same
        name again replaces the previous hook.
        """
        self._cleanup_hooks[name] = hook

    def quota_status(self) -> dict[str, Any]:
        used = self._run("quota", QUOTA_USAGE_KEY, self._current_usage)
        ratio = used / self._max_storage_bytes if self._max_storage_bytes else 0.0
        if ratio >= self._critical_ratio:
            level = "critical"
        elif ratio >= self._warning_ratio:
            level = "warning"
        else:
            level = "ok"
        return {
            "used_bytes": used,
            "max_bytes": self._max_storage_bytes,
            "ratio": round(ratio, 4),
            "level": level,
        }

    def reconcile_quota(self) -> int:
        """Drop size records for keys that expired and recompute total usage.

        Returns the number of bytes released. The recomputed total is
        approximate while other writers are active.
        """

        def _reconcile() -> int:
            sizes = {
                _as_text(name): int(value)
                for name, value in self._client.hgetall(QUOTA_SIZES_KEY).items()
            }
            stale = [name for name in sizes if not self._client.exists(name)]
            released = sum(sizes[name] for name in stale)
            pipe = self._client.pipeline(transaction=True)
            if stale:
                pipe.hdel(QUOTA_SIZES_KEY, *stale)
            pipe.set(QUOTA_USAGE_KEY, sum(sizes.values()) - released)
            pipe.execute()
            return released

        released = self._run("quota", QUOTA_SIZES_KEY, _reconcile)
        if released:
            logger.info("Quota reconciliation released %d bytes", released)
        return released

    def run_emergency_cleanup(self) -> int:
        """Run reconciliation and every registered hook; returns records removed."""
        if not self._cleanup_lock.acquire(blocking=False):
            return 0
        try:
            removed = 0
            self.reconcile_quota()
            for name, hook in list(self._cleanup_hooks.items()):
                try:
                    removed += hook()
                except StorageError as exc:
                    logger.error("Emergency cleanup hook '%s' failed: %s", name, exc)
            logger.warning("Emergency cleanup removed %d records", removed)
            return removed
        finally:
            self._cleanup_lock.release()

    def _current_usage(self) -> int:
        return int(self._client.get(QUOTA_USAGE_KEY) or 0)

    @staticmethod
    def _stored_size(conn: Any, key: str) -> int:
        return int(conn.hget(QUOTA_SIZES_KEY, key) or 0)

    def _guard_quota(self, key: str, delta: int) -> None:
        projected = self._current_usage() + delta
        if projected > self._max_storage_bytes:
            self.run_emergency_cleanup()
            projected = self._current_usage() + delta
            if projected > self._max_storage_bytes:
                logger.error(
                    "Quota exceeded writing %s: %d > %d bytes",
                    key,
                    projected,
                    self._max_storage_bytes,
                )
                raise QuotaExceededError(key, projected, self._max_storage_bytes)

        ratio = projected / self._max_storage_bytes if self._max_storage_bytes else 0.0
        if ratio >= self._critical_ratio:
            logger.error("Storage usage critical (%.1f%%), running cleanup", ratio * 100)
            self.run_emergency_cleanup()
        elif ratio >= self._warning_ratio:
            logger.warning("Storage usage high (%.1f%%)", ratio * 100)

    @staticmethod
    def _queue_write(
        pipe: Any,
        key: str,
        payload: str,
        size: int,
        previous: int,
        ttl: int | None,
    ) -> None:
        pipe.set(key, payload, ex=ttl)
        pipe.hset(QUOTA_SIZES_KEY, key, size)
        if size != previous:
            pipe.incrby(QUOTA_USAGE_KEY, size - previous)

    @staticmethod
    def _normalize_ttl(ttl: int | None) -> int | None:
        if ttl is None:
            return None
        ttl = int(ttl)
        if ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")
        return ttl
