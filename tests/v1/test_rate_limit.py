# tests/v1/test_rate_limit.py
"""Tests for rate-limit enforcement and administration endpoints."""

from __future__ import annotations

from typing import Any

import pytest

from start_challenge.core.security import create_access_token
from start_challenge.core.settings import settings


@pytest.fixture()
def admin_headers(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.setattr(settings, "admin_user_ids", ["root"])
    token = create_access_token("root", {"name": "Root"})
    return {"Authorization": f"Bearer {token}"}


def test_score_submissions_are_rate_limited(client: Any, alice_headers: dict[str, str]) -> None:
    for _ in range(10):
        response = client.post("/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers)
        assert response.status_code != 429

    limited = client.post("/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers)
    assert limited.status_code == 429
    assert "minute limit (10)" in limited.json()["detail"]["message"]

    banned = client.post("/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers)
    assert banned.status_code == 429
    assert "Temporary ban" in banned.json()["detail"]["message"]
    assert int(banned.headers["Retry-After"]) == 300


def test_status_endpoint(client: Any, alice_headers: dict[str, str]) -> None:
    client.post("/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers)
    body = client.get(
        "/api/v1/rate-limit/status",
        params={"action": "score_submission"},
        headers=alice_headers,
    ).json()
    assert body["usage"] == {"minute": 1, "hour": 1, "day": 1}
    assert body["remaining"]["minute"] == 9
    assert body["is_limited"] is False

    assert client.get(
        "/api/v1/rate-limit/status", params={"action": "teleport"}, headers=alice_headers
    ).status_code == 422


def test_activity_endpoint(client: Any, alice_headers: dict[str, str]) -> None:
    body = client.get("/api/v1/rate-limit/activity", headers=alice_headers).json()
    assert body["user_id"] == "alice"
    assert body["recommendation"] == "allow"


def test_admin_routes_require_admin(
    client: Any, alice_headers: dict[str, str], admin_headers: dict[str, str]
) -> None:
    payload = {"level": "verified", "reason": "tournament finalist"}
    assert client.post(
        "/api/v1/rate-limit/whitelist/bob", json=payload, headers=alice_headers
    ).status_code == 403
    assert client.post("/api/v1/rate-limit/reset/bob", headers=alice_headers).status_code == 403
    assert client.get("/api/v1/rate-limit/activity/bob", headers=admin_headers).status_code == 200


def test_whitelist_raises_limits(
    client: Any, admin_headers: dict[str, str], bob_headers: dict[str, str]
) -> None:
    added = client.post(
        "/api/v1/rate-limit/whitelist/bob",
        json={"level": "moderator", "reason": "community moderator"},
        headers=admin_headers,
    )
    assert added.status_code == 200
    assert added.json()["added_by"] == "root"

    status = client.get("/api/v1/rate-limit/status", headers=bob_headers).json()
    assert status["limits"] == {"minute": 50, "hour": 250, "day": 1000}
    assert status["whitelist_level"] == "moderator"

    assert client.delete("/api/v1/rate-limit/whitelist/bob", headers=admin_headers).status_code == 200
    assert client.delete("/api/v1/rate-limit/whitelist/bob", headers=admin_headers).status_code == 404


def test_reset_lifts_ban(
    client: Any, alice_headers: dict[str, str], admin_headers: dict[str, str]
) -> None:
    for _ in range(11):
        client.post("/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers)
    assert client.post(
        "/api/v1/scores", json={"reaction_time": 30}, headers=alice_headers
    ).status_code == 429

    reset = client.post("/api/v1/rate-limit/reset/alice", headers=admin_headers).json()
    assert reset["removed_keys"] == 3
    status = client.get("/api/v1/rate-limit/status", headers=alice_headers).json()
    assert status["penalty_level"] == 0
    assert status["banned_until"] is None
