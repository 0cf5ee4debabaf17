"""User session Pydantic schemas."""

from pydantic import BaseModel


class UserSession(BaseModel):
    """Server-side record of a player's current visit (epoch milliseconds)."""

    user_id: str
    started_at: int
    last_activity: int
    game_started_at: int | None = None
    games_played: int = 0
