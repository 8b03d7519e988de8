"""REST API routes for PeerBeam."""

import asyncio
import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from peerbeam.discovery.lobby import LobbyClient
from peerbeam.errors import NoActiveConnection
from peerbeam.transfer.formatting import format_size, format_speed
from peerbeam.transfer.models import FileHandle, TransferInfo
from peerbeam.transfer.session import Session
from peerbeam.transfer.storage import FileSaver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_session: Session | None = None
_saver: FileSaver | None = None
_lobby: LobbyClient | None = None
_send_tasks: set[asyncio.Task] = set()


def init_routes(session: Session, saver: FileSaver, lobby: LobbyClient) -> None:
    """Inject service dependencies into the routes module."""
    global _session, _saver, _lobby
    _session = session
    _saver = saver
    _lobby = lobby


def _session_state() -> dict:
    transfer = _session.transfer
    return {
        "peer_id": _session.peer_id,
        "remote_peer_id": _session.remote_peer_id,
        "status": _session.status.value,
        "connected": _session.connected,
        "encrypted": _session.encrypted,
        "transfer": _transfer_state(transfer) if transfer else None,
    }


def _transfer_state(transfer: TransferInfo) -> dict:
    state = transfer.model_dump(mode="json")
    state["size_text"] = format_size(transfer.file_size)
    state["speed_text"] = format_speed(transfer.speed_bps)
    return state


# --- Session ---

@router.get("/session")
async def get_session():
    return _session_state()


@router.post("/session/initialize")
async def initialize_session():
    peer_id = await _session.initialize()
    if peer_id is None:
        raise HTTPException(status_code=503, detail="Could not start listening")
    return _session_state()


class ConnectBody(BaseModel):
    peer_id: str


@router.post("/connect")
async def connect(body: ConnectBody):
    """Open a channel to a peer. Failures show up in the returned status."""
    await _session.connect(body.peer_id.strip())
    return _session_state()


@router.post("/disconnect")
async def disconnect():
    await _session.disconnect()
    return _session_state()


# --- Files and messages ---

class SendFileBody(BaseModel):
    path: str


def _send_done(task: asyncio.Task) -> None:
    _send_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"File send failed: {task.exception()}")


@router.post("/files")
async def send_file(body: SendFileBody):
    """Send a file from the local disk; progress arrives over the WebSocket."""
    if not os.path.isfile(body.path):
        raise HTTPException(status_code=400, detail=f"File not found: {body.path}")
    if not _session.connected:
        raise HTTPException(status_code=409, detail=str(NoActiveConnection()))

    handle = FileHandle.from_path(body.path)
    task = asyncio.create_task(_session.send_file(handle))
    _send_tasks.add(task)
    task.add_done_callback(_send_done)
    return {
        "status": "queued",
        "file_name": handle.name,
        "file_size": handle.size,
    }


class SendMessageBody(BaseModel):
    text: str


@router.post("/messages")
async def send_message(body: SendMessageBody):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message is empty")
    try:
        event = await _session.send_message(body.text)
    except NoActiveConnection as e:
        raise HTTPException(status_code=409, detail=str(e))
    if event is None:
        raise HTTPException(status_code=502, detail="Failed to send message")
    return event.model_dump(mode="json")


# --- Lobby ---

def _lobby_state() -> dict:
    return {
        "joined": _lobby.joined,
        "peer_id": _lobby.identity.peer_id,
        "alias": _lobby.identity.alias,
        "users": [u.model_dump(mode="json") for u in _lobby.users],
    }


async def join_lobby(session: Session, lobby: LobbyClient) -> bool:
    """Advertise the session's peer id in the lobby; False if it has none."""
    if await session.initialize() is None:
        return False
    lobby.identity.peer_id = session.peer_id
    await lobby.join()
    return True


@router.get("/lobby")
async def get_lobby():
    return _lobby_state()


@router.post("/lobby/join")
async def enter_lobby():
    if not await join_lobby(_session, _lobby):
        raise HTTPException(status_code=503, detail="Could not start listening")
    return _lobby_state()


@router.post("/lobby/leave")
async def leave_lobby():
    await _lobby.leave()
    return _lobby_state()


@router.get("/lobby/messages")
async def list_lobby_messages():
    return {"messages": [m.model_dump(mode="json") for m in _lobby.messages]}


@router.post("/lobby/messages")
async def send_lobby_message(body: SendMessageBody):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Message is empty")
    if not _lobby.joined:
        raise HTTPException(status_code=409, detail="Join the lobby first")
    result = await _lobby.send_message(body.text)
    if not result.success:
        status_code = 429 if result.retry_after is not None else 502
        raise HTTPException(status_code=status_code, detail=result.error)
    return result.model_dump()


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _saver.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _saver.save_dir = body.save_dir
    return {"status": "updated"}
