"""Pydantic models for the lobby."""

from pydantic import BaseModel


class LobbyUser(BaseModel):
    """A peer advertising itself in the lobby."""
    key: str
    peer_id: str
    username: str
    timestamp: int  # ms, when the entry was created
    last_seen: int | None = None  # ms, last heartbeat

    @property
    def last_active(self) -> int:
        return self.last_seen or self.timestamp


class LobbyMessage(BaseModel):
    """A broadcast chat line as stored by the lobby backend."""
    text: str
    sender_id: str
    sender_name: str
    timestamp: int
    encrypted: bool = False


class SendResult(BaseModel):
    success: bool
    error: str | None = None
    retry_after: int | None = None  # seconds, set when rate limited
