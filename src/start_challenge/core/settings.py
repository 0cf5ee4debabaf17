"""Application settings and configuration.

This module defines all configuration options for the F1 Start Challenge service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DAY_SECONDS = 86_400


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="F1 Start Challenge", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 7,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Redis backing the atomic storage engine
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Retry envelope for transient storage failures
    storage_retry_attempts: int = Field(default=3, alias="STORAGE_RETRY_ATTEMPTS")
    storage_retry_initial_delay: float = Field(
        default=0.1, alias="STORAGE_RETRY_INITIAL_DELAY"
    )
    storage_retry_backoff: float = Field(default=2.0, alias="STORAGE_RETRY_BACKOFF")
    storage_retry_max_delay: float = Field(default=2.0, alias="STORAGE_RETRY_MAX_DELAY")
    storage_retry_jitter: float = Field(default=0.1, alias="STORAGE_RETRY_JITTER")
    storage_conflict_retries: int = Field(default=25, alias="STORAGE_CONFLICT_RETRIES")

    # Circuit breaker per storage operation class
    breaker_failure_threshold: int = Field(default=5, alias="BREAKER_FAILURE_THRESHOLD")
    breaker_recovery_seconds: float = Field(default=30.0, alias="BREAKER_RECOVERY_SECONDS")

    # Local fallback cache used while the backend is degraded
    local_cache_entries: int = Field(default=1000, alias="LOCAL_CACHE_ENTRIES")
    local_cache_ttl_seconds: int = Field(default=300, alias="LOCAL_CACHE_TTL_SECONDS")

    # Storage quota guard
    storage_max_bytes: int = Field(default=100 * 1024 * 1024, alias="STORAGE_MAX_BYTES")
    storage_warning_ratio: float = Field(default=0.8, alias="STORAGE_WARNING_RATIO")
    storage_critical_ratio: float = Field(default=0.95, alias="STORAGE_CRITICAL_RATIO")

    # Record lifetimes
    challenge_ttl_seconds: int = Field(default=7 * DAY_SECONDS, alias="CHALLENGE_TTL_SECONDS")
    challenge_session_ttl_seconds: int = Field(
        default=DAY_SECONDS, alias="CHALLENGE_SESSION_TTL_SECONDS"
    )
    replay_validation_ttl_seconds: int = Field(
        default=7 * DAY_SECONDS, alias="REPLAY_VALIDATION_TTL_SECONDS"
    )
    leaderboard_ttl_seconds: int = Field(
        default=30 * DAY_SECONDS, alias="LEADERBOARD_TTL_SECONDS"
    )
    validation_log_ttl_seconds: int = Field(
        default=30 * DAY_SECONDS, alias="VALIDATION_LOG_TTL_SECONDS"
    )
    user_history_ttl_seconds: int = Field(
        default=30 * DAY_SECONDS, alias="USER_HISTORY_TTL_SECONDS"
    )
    user_session_ttl_seconds: int = Field(default=DAY_SECONDS, alias="USER_SESSION_TTL_SECONDS")

    # Gameplay and anti-cheat tuning
    leaderboard_max_entries: int = Field(default=100, alias="LEADERBOARD_MAX_ENTRIES")
    validation_log_max_entries: int = Field(default=100, alias="VALIDATION_LOG_MAX_ENTRIES")
    user_history_max_entries: int = Field(default=100, alias="USER_HISTORY_MAX_ENTRIES")
    challenge_min_reaction_ms: float = Field(default=80.0, alias="CHALLENGE_MIN_REACTION_MS")
    challenge_max_reaction_ms: float = Field(default=1000.0, alias="CHALLENGE_MAX_REACTION_MS")
    tie_threshold_ms: int = Field(default=5, alias="TIE_THRESHOLD_MS")
    max_games_per_hour: int = Field(default=100, alias="MAX_GAMES_PER_HOUR")

    # Per-user and per-IP action limits
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    admin_user_ids: list[str] = Field(default=[], alias="ADMIN_USER_IDS")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def storage_thresholds(self) -> dict[str, float]:
        """Return quota thresholds as a convenience dictionary.

        Returns:
            Dictionary with the ceiling in bytes and the warning/critical ratios
        """
        return {
            "max_bytes": float(self.storage_max_bytes),
            "warning_ratio": self.storage_warning_ratio,
            "critical_ratio": self.storage_critical_ratio,
        }


settings = Settings()  # type: ignore[call-arg]
