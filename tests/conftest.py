# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Iterator

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

from start_challenge.api.v1.dependencies import get_clock, get_storage_engine
from start_challenge.core.security import create_access_token
from start_challenge.core.settings import Settings
from start_challenge.main import app as fastapi_app
from start_challenge.services.audit import ValidationAuditLog
from start_challenge.services.challenge import ChallengeService
from start_challenge.services.leaderboard import LeaderboardService
from start_challenge.services.plausibility import PlausibilityPipeline, default_checks
from start_challenge.services.scoring import ScoreSubmissionService
from start_challenge.services.session import UserSessionService
from start_challenge.services.storage import LocalCache, RetryPolicy, StorageEngine

START_TIME = 1_700_000_000.0
_TEST_SETTINGS_INSTANCE = Settings()


class FakeClock:
    """Manually advanced wall clock returning epoch seconds."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, milliseconds: float) -> None:
        self.now += milliseconds / 1000

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def redis_client() -> Iterator[fakeredis.FakeRedis]:
    client = fakeredis.FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        client.flushall()


@pytest.fixture()
def make_engine(redis_client: fakeredis.FakeRedis, clock: FakeClock):
    """Build engines over the shared fake backend without real sleeps."""

    def _make(**overrides) -> StorageEngine:
        options = {
            "retry_policy": RetryPolicy(attempts=3, initial_delay_seconds=0, jitter_seconds=0),
            "local_cache": LocalCache(clock=clock),
            "clock": clock,
            "sleep": lambda _seconds: None,
        }
        options.update(overrides)
        client = options.pop("client", redis_client)
        return StorageEngine(client, **options)

    return _make


@pytest.fixture()
def engine(make_engine) -> StorageEngine:
    return make_engine()


@pytest.fixture()
def audit_log(engine: StorageEngine, clock: FakeClock) -> ValidationAuditLog:
    return ValidationAuditLog(engine, clock=clock)


@pytest.fixture()
def pipeline(audit_log: ValidationAuditLog) -> PlausibilityPipeline:
    return PlausibilityPipeline(default_checks(), audit=audit_log)


@pytest.fixture()
def sessions(engine: StorageEngine, clock: FakeClock) -> UserSessionService:
    return UserSessionService(engine, clock=clock)


@pytest.fixture()
def leaderboard(engine: StorageEngine, clock: FakeClock) -> LeaderboardService:
    return LeaderboardService(engine, clock=clock)


@pytest.fixture()
def scoring(
    engine: StorageEngine,
    leaderboard: LeaderboardService,
    pipeline: PlausibilityPipeline,
    sessions: UserSessionService,
    clock: FakeClock,
) -> ScoreSubmissionService:
    return ScoreSubmissionService(engine, leaderboard, pipeline, sessions, clock=clock)


@pytest.fixture()
def challenges(engine: StorageEngine, clock: FakeClock) -> ChallengeService:
    return ChallengeService(engine, clock=clock, base_url="http://test")


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(app: FastAPI, engine: StorageEngine, clock: FakeClock) -> Iterator[TestClient]:
    app.dependency_overrides[get_storage_engine] = lambda: engine
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_storage_engine, None)
        app.dependency_overrides.pop(get_clock, None)


def auth_headers(user_id: str, name: str | None = None) -> dict[str, str]:
    token = create_access_token(user_id, {"name": name or user_id.title()})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def alice_headers() -> dict[str, str]:
    return auth_headers("alice", "Alice")


@pytest.fixture()
def bob_headers() -> dict[str, str]:
    return auth_headers("bob", "Bob")


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Provide a Settings instance aligned with runtime configuration."""
    return _TEST_SETTINGS_INSTANCE
