"""WebSocket fan-out of session and lobby events."""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

from peerbeam.transfer.models import SessionEvent

logger = logging.getLogger(__name__)


class WsEnvelope(BaseModel):
    """One frame on /ws: `{"event": ..., "data": {...}}`."""
    event: str
    data: dict[str, Any]

    @classmethod
    def from_session_event(cls, event: SessionEvent) -> "WsEnvelope":
        return cls(event=event.kind, data=event.model_dump(mode="json", exclude={"kind"}))


class ConnectionManager:
    """Tracks /ws clients and pushes every event to all of them, in order."""

    def __init__(self) -> None:
        # WebSocket is a Mapping, so it cannot live in a set
        self._clients: list[WebSocket] = []
        self._send_lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.append(websocket)
        logger.info(f"WebSocket client connected ({self.client_count} open)")

    async def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self._clients:
            self._clients.remove(websocket)
            logger.info(f"WebSocket client disconnected ({self.client_count} open)")

    async def handle_event(self, event: SessionEvent) -> None:
        """Session observer."""
        await self.send(WsEnvelope.from_session_event(event))

    async def broadcast(self, event: str, data: dict) -> None:
        """Lobby change callback: `event` is lobby_users or lobby_messages."""
        await self.send(WsEnvelope(event=event, data=data))

    async def send(self, envelope: WsEnvelope) -> None:
        text = envelope.model_dump_json()
        async with self._send_lock:
            clients = list(self._clients)
            results = await asyncio.gather(
                *(ws.send_text(text) for ws in clients), return_exceptions=True
            )
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.debug(f"Dropping WebSocket client after failed {envelope.event}: {result}")
                await self.disconnect(ws)
