"""Namespaced storage keys shared by the services."""

from __future__ import annotations


def challenge(challenge_id: str) -> str:
    return f"challenge:{challenge_id}"


def challenge_session(challenge_id: str, user_id: str) -> str:
    return f"challenge_session:{challenge_id}:{user_id}"


def challenge_validation(challenge_id: str, user_id: str) -> str:
    return f"challenge_validation:{challenge_id}:{user_id}"


def leaderboard(scope: str, period: str) -> str:
    return f"leaderboard:{scope}:{period}"


def user_session(user_id: str) -> str:
    return f"session:{user_id}"


def user_history(user_id: str) -> str:
    return f"user_history:{user_id}"


def validation_log(user_id: str) -> str:
    return f"validation:user:{user_id}"


def validation_metrics(hour_bucket: str) -> str:
    return f"validation:metrics:hourly:{hour_bucket}"


def flagged_user(user_id: str) -> str:
    return f"validation:flagged:{user_id}"


def security_event(event_id: str) -> str:
    return f"security:event:{event_id}"


def rate_limit(user_id: str, action: str) -> str:
    return f"rate_limit:user:{user_id}:{action}"


def ip_rate_limit(ip_address: str, bucket: str) -> str:
    return f"rate_limit:ip:{ip_address}:{bucket}"


def user_violations(user_id: str) -> str:
    return f"rate_limit:violations:{user_id}"


def user_penalty(user_id: str) -> str:
    return f"rate_limit:penalty:{user_id}"


def user_whitelist(user_id: str) -> str:
    return f"rate_limit:whitelist:{user_id}"


CHALLENGE_PATTERN = "challenge:*"
