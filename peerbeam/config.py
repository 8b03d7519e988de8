"""Application-wide configuration constants."""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float | None) -> float | None:
    value = os.environ.get(name)
    if not value:
        return default
    # "0" or a negative value turns the watchdog off
    parsed = float(value)
    return parsed if parsed > 0 else None


# --- Identity ---
APP_ID = "peerbeam-v1"
PEER_ID_LENGTH = 6

# --- Networking ---
API_HOST = os.environ.get("PEERBEAM_API_HOST", "127.0.0.1")
API_PORT = _env_int("PEERBEAM_API_PORT", 8765)
TRANSFER_HOST = os.environ.get("PEERBEAM_TRANSFER_HOST", "0.0.0.0")
TRANSFER_PORT = _env_int("PEERBEAM_TRANSFER_PORT", 50505)

# --- Transfer ---
MAX_FRAME_SIZE = 16 * 1024 * 1024
MAX_CHUNK_SIZE = MAX_FRAME_SIZE - 4  # room for the chunk index
CHUNK_SIZE = _env_int("PEERBEAM_CHUNK_SIZE", 64 * 1024)  # 64 KB
YIELD_EVERY = 20  # chunks between cooperative yields (no backpressure signal)
YIELD_DELAY = 0.002  # seconds
BUFFER_HIGH_WATER = 1024 * 1024
BUFFER_LOW_WATER = 256 * 1024
STALL_TIMEOUT = _env_float("PEERBEAM_STALL_TIMEOUT", 30.0)  # seconds
DEFAULT_MIME_TYPE = "application/octet-stream"

# --- Security ---
ENCRYPTION_DISABLED = os.environ.get("PEERBEAM_DISABLE_ENCRYPTION", "") == "1"
KEY_DERIVATION_SALT = b"p2p-filetransfer-salt-v1"
KEY_DERIVATION_ITERATIONS = 100_000
DECRYPTION_PLACEHOLDER = "[Decryption failed]"

# --- Lobby ---
LOBBY_SECRET = os.environ.get("PEERBEAM_LOBBY_SECRET", "p2p-anonymous-chat-v1-2024")
LOBBY_RATE_LIMIT = 2.0  # seconds between broadcast messages
LOBBY_STALE_AFTER = 120.0  # seconds without heartbeat before a user is hidden
LOBBY_HEARTBEAT_INTERVAL = 30.0
LOBBY_HISTORY = 50

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "PEERBEAM_SAVE_DIR",
    str(Path.home() / "Downloads" / "PeerBeam"),
)
