"""JWT helpers for player authentication."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import jwt

from start_challenge.core.settings import settings


def create_access_token(subject: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create JWT access token for player authentication.

    Args:
        subject: Player id stored in the ``sub`` claim.
        extra_claims: Additional claims such as the display ``name``.

    Returns:
        Encoded JWT string.
    """
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a token; raises ``jose.JWTError`` when invalid."""
    payload: dict[str, Any] = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
    )
    return payload
