"""Tests for the REST API and WebSocket event stream."""

import asyncio
import time
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from peerbeam.api.websocket import ConnectionManager
from peerbeam.channel.memory import MemoryNetwork
from peerbeam.discovery.lobby import MemoryLobbyBackend
from peerbeam.main import create_app
from peerbeam.transfer.models import SessionOptions, Status, StatusEvent
from peerbeam.transfer.session import Session

APP_ID = "AAAAAA"
PEER_ID = "ZZZZZZ"


@pytest.fixture
def network() -> MemoryNetwork:
    return MemoryNetwork()


@pytest.fixture
def lobby_backend() -> MemoryLobbyBackend:
    return MemoryLobbyBackend()


@pytest.fixture
def client(
    network: MemoryNetwork, lobby_backend: MemoryLobbyBackend, tmp_path
) -> Generator[TestClient, None, None]:
    """API client whose session lives on an in-memory network."""
    app = create_app(
        session_factory=lambda: Session(network, peer_id=APP_ID),
        save_dir=str(tmp_path / "downloads"),
        initialize=False,
        lobby_backend=lobby_backend,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def peer(network: MemoryNetwork) -> Session:
    """A second session listening on the same network."""
    session = Session(network, options=SessionOptions(stall_timeout=None), peer_id=PEER_ID)
    asyncio.run(session.initialize())
    return session


def _wait_for_status(client: TestClient, status: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        state = client.get("/api/session").json()
        if state["status"] == status:
            return state
        if time.monotonic() > deadline:
            raise AssertionError(f"Status stayed {state['status']!r}")
        time.sleep(0.01)


class TestSessionEndpoints:
    """Tests for session state and connection endpoints."""

    def test_initial_state(self, client: TestClient) -> None:
        response = client.get("/api/session")
        assert response.status_code == 200
        assert response.json() == {
            "peer_id": None,
            "remote_peer_id": None,
            "status": "idle",
            "connected": False,
            "encrypted": False,
            "transfer": None,
        }

    def test_initialize(self, client: TestClient) -> None:
        response = client.post("/api/session/initialize")
        assert response.status_code == 200
        assert response.json()["peer_id"] == APP_ID
        assert response.json()["status"] == "waiting"

    def test_connect_unknown_peer(self, client: TestClient) -> None:
        """Connection failures come back as the error status."""
        response = client.post("/api/connect", json={"peer_id": "NOSUCH"})
        assert response.status_code == 200
        assert response.json()["status"] == "error"

    def test_connect_and_disconnect(self, client: TestClient, peer: Session) -> None:
        client.post("/api/connect", json={"peer_id": PEER_ID})
        state = _wait_for_status(client, "connected")
        assert state["remote_peer_id"] == PEER_ID

        response = client.post("/api/disconnect")
        assert response.json()["status"] == "disconnected"
        assert response.json()["connected"] is False


class TestTransferEndpoints:
    """Tests for file and message endpoints."""

    def test_send_file_missing(self, client: TestClient, tmp_path) -> None:
        response = client.post("/api/files", json={"path": str(tmp_path / "nope.bin")})
        assert response.status_code == 400

    def test_send_file_without_connection(self, client: TestClient, tmp_path) -> None:
        path = tmp_path / "a.txt"
        path.write_text("hello")
        response = client.post("/api/files", json={"path": str(path)})
        assert response.status_code == 409
        assert response.json()["detail"] == "No active connection"

    def test_send_message_without_connection(self, client: TestClient) -> None:
        response = client.post("/api/messages", json={"text": "hi"})
        assert response.status_code == 409

    def test_send_empty_message(self, client: TestClient) -> None:
        response = client.post("/api/messages", json={"text": "   "})
        assert response.status_code == 400

    def test_send_file_and_message(self, client: TestClient, peer: Session, tmp_path) -> None:
        received = []
        peer.subscribe(received.append)
        client.post("/api/connect", json={"peer_id": PEER_ID})
        _wait_for_status(client, "connected")

        path = tmp_path / "report.txt"
        path.write_bytes(b"quarterly numbers")
        response = client.post("/api/files", json={"path": str(path)})
        assert response.status_code == 200
        assert response.json() == {
            "status": "queued",
            "file_name": "report.txt",
            "file_size": 17,
        }

        response = client.post("/api/messages", json={"text": "hi"})
        assert response.status_code == 200
        assert response.json()["text"] == "hi"
        assert response.json()["from_self"] is True

        deadline = time.monotonic() + 2
        while not {"message", "file_received"} <= {e.kind for e in received}:
            assert time.monotonic() < deadline
            time.sleep(0.01)
        files = [e.file for e in received if e.kind == "file_received"]
        assert files[0].data == b"quarterly numbers"


class TestSettings:
    def test_get_settings(self, client: TestClient, tmp_path) -> None:
        assert client.get("/api/settings").json() == {"save_dir": str(tmp_path / "downloads")}

    def test_update_save_dir(self, client: TestClient, tmp_path) -> None:
        new_dir = tmp_path / "elsewhere"
        response = client.put("/api/settings", json={"save_dir": str(new_dir)})
        assert response.status_code == 200
        assert new_dir.is_dir()
        assert client.get("/api/settings").json()["save_dir"] == str(new_dir)


class TestWebSocket:
    def test_events_are_broadcast(self, client: TestClient) -> None:
        """Session events should reach WebSocket clients as JSON."""
        with client.websocket_connect("/ws") as ws:
            deadline = time.monotonic() + 2
            while client.app.state.ws_manager.client_count == 0:
                assert time.monotonic() < deadline
                time.sleep(0.01)
            client.post("/api/session/initialize")
            message = ws.receive_json()
        assert message == {"event": "status", "data": {"status": "waiting"}}

    def test_lobby_users_pushed(self, client: TestClient) -> None:
        """Joining the lobby should push the new user list to WebSocket clients."""
        with client.websocket_connect("/ws") as ws:
            deadline = time.monotonic() + 2
            while client.app.state.ws_manager.client_count == 0:
                assert time.monotonic() < deadline
                time.sleep(0.01)
            client.post("/api/lobby/join")
            events = [ws.receive_json() for _ in range(2)]
        lobby = [m for m in events if m["event"] == "lobby_users"]
        assert [u["peer_id"] for u in lobby[0]["data"]["users"]] == [APP_ID]


class TestConnectionManager:
    """Tests for the WebSocket fan-out."""

    @staticmethod
    def _websocket(send_error: Exception | None = None) -> MagicMock:
        ws = MagicMock()
        ws.accept = AsyncMock()
        ws.send_text = AsyncMock(side_effect=send_error)
        return ws

    @pytest.mark.asyncio
    async def test_session_event_envelope(self) -> None:
        manager = ConnectionManager()
        ws = self._websocket()
        await manager.connect(ws)

        await manager.handle_event(StatusEvent(status=Status.CONNECTED))

        ws.accept.assert_awaited_once()
        ws.send_text.assert_awaited_once_with('{"event":"status","data":{"status":"connected"}}')

    @pytest.mark.asyncio
    async def test_failed_client_dropped(self) -> None:
        """A client whose send fails should be removed; the others still get the event."""
        manager = ConnectionManager()
        good = self._websocket()
        gone = self._websocket(RuntimeError("socket closed"))
        await manager.connect(good)
        await manager.connect(gone)

        await manager.broadcast("lobby_users", {"users": []})

        good.send_text.assert_awaited_once_with('{"event":"lobby_users","data":{"users":[]}}')
        assert manager.client_count == 1

        await manager.broadcast("lobby_users", {"users": []})
        assert gone.send_text.await_count == 1


class TestLobbyEndpoints:
    """Tests for lobby presence and chat over the API."""

    def test_initial_lobby(self, client: TestClient) -> None:
        state = client.get("/api/lobby").json()
        assert state["joined"] is False
        assert state["users"] == []
        assert len(state["alias"].split()) == 2

    def test_join_and_leave(self, client: TestClient) -> None:
        """Joining should initialize the session and list it under its peer id."""
        response = client.post("/api/lobby/join")
        assert response.status_code == 200
        state = response.json()
        assert state["joined"] is True
        assert state["peer_id"] == APP_ID
        assert [u["peer_id"] for u in state["users"]] == [APP_ID]
        assert client.get("/api/session").json()["status"] == "waiting"

        state = client.post("/api/lobby/leave").json()
        assert state["joined"] is False
        assert state["users"] == []

    def test_other_users_listed(
        self, client: TestClient, lobby_backend: MemoryLobbyBackend
    ) -> None:
        now = int(time.time() * 1000)
        client.portal.call(lobby_backend.add_user, "K3Z9QA", "Quiet Fox", now)

        users = client.get("/api/lobby").json()["users"]

        assert [(u["peer_id"], u["username"]) for u in users] == [("K3Z9QA", "Quiet Fox")]

    def test_chat(self, client: TestClient, lobby_backend: MemoryLobbyBackend) -> None:
        """Chat lines are stored encrypted and listed decrypted."""
        alias = client.post("/api/lobby/join").json()["alias"]

        response = client.post("/api/lobby/messages", json={"text": "hello lobby"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert lobby_backend.messages[0].text != "hello lobby"
        messages = client.get("/api/lobby/messages").json()["messages"]
        assert [(m["text"], m["sender_name"]) for m in messages] == [("hello lobby", alias)]

    def test_chat_rate_limited(self, client: TestClient) -> None:
        client.post("/api/lobby/join")
        assert client.post("/api/lobby/messages", json={"text": "one"}).status_code == 200

        response = client.post("/api/lobby/messages", json={"text": "two"})

        assert response.status_code == 429
        assert response.json()["detail"].startswith("Please wait")

    def test_chat_requires_join(self, client: TestClient) -> None:
        response = client.post("/api/lobby/messages", json={"text": "hi"})
        assert response.status_code == 409

    def test_empty_chat_message(self, client: TestClient) -> None:
        client.post("/api/lobby/join")
        response = client.post("/api/lobby/messages", json={"text": " "})
        assert response.status_code == 400
