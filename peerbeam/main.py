"""
PeerBeam FastAPI application entry point.

Builds the session on startup, wires its events to the WebSocket clients
and the received-file saver, and serves the REST API.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from peerbeam.api.routes import init_routes, join_lobby, router
from peerbeam.api.websocket import ConnectionManager
from peerbeam.channel.stream import TcpNetwork
from peerbeam.config import API_HOST, API_PORT, DEFAULT_SAVE_DIR
from peerbeam.discovery.identity import Identity
from peerbeam.discovery.lobby import LobbyBackend, LobbyClient, MemoryLobbyBackend
from peerbeam.transfer.session import Session
from peerbeam.transfer.storage import FileSaver

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _default_session() -> Session:
    return Session(TcpNetwork())


def create_app(
    session_factory: Callable[[], Session] = _default_session,
    save_dir: str = DEFAULT_SAVE_DIR,
    initialize: bool = True,
    lobby_backend: LobbyBackend | None = None,
) -> FastAPI:
    ws_manager = ConnectionManager()
    saver = FileSaver(save_dir)
    backend = lobby_backend or MemoryLobbyBackend()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop the session and the lobby."""
        logger.info("Starting PeerBeam...")
        session = session_factory()
        lobby = LobbyClient(backend, Identity(peer_id=session.peer_id))
        app.state.session = session
        app.state.saver = saver
        app.state.lobby = lobby
        app.state.ws_manager = ws_manager

        try:
            session.subscribe(ws_manager.handle_event)
            session.subscribe(saver.handle_event)
            lobby.on_change(ws_manager.broadcast)
            init_routes(session, saver, lobby)

            await lobby.start()
            if initialize:
                await join_lobby(session, lobby)

            logger.info(f"PeerBeam ready. API: {API_HOST}:{API_PORT}, peer id: {session.peer_id}")
            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down PeerBeam...")
            await lobby.stop()
            await session.destroy()

    app = FastAPI(
        title="PeerBeam",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_manager.connect(websocket)
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("WebSocket client went away")
        finally:
            await ws_manager.disconnect(websocket)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
