"""
Wire protocol helpers.

Structured messages travel as JSON, except file chunks which keep their
bytes raw. On byte streams every frame is type (1 byte) + length (4 bytes,
big-endian) + payload.
"""

import asyncio
import json
import logging
import struct

from pydantic import TypeAdapter, ValidationError

from peerbeam.config import APP_ID, MAX_FRAME_SIZE
from peerbeam.errors import ProtocolError
from peerbeam.transfer.models import (
    ChunkMessage,
    KeyExchangeMessage,
    MetaMessage,
    TextMessage,
    WireMessage,
)

logger = logging.getLogger(__name__)

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
CHUNK_INDEX_FORMAT = "!I"
CHUNK_INDEX_SIZE = struct.calcsize(CHUNK_INDEX_FORMAT)


class FrameType:
    HELLO = 0x00
    KEY_EXCHANGE = 0x01
    META = 0x02
    CHUNK = 0x03
    MESSAGE = 0x04


_JSON_FRAMES = {
    KeyExchangeMessage: FrameType.KEY_EXCHANGE,
    MetaMessage: FrameType.META,
    TextMessage: FrameType.MESSAGE,
}
_FRAME_MODELS = {frame_type: model for model, frame_type in _JSON_FRAMES.items()}

_wire_adapter: TypeAdapter = TypeAdapter(WireMessage)


def parse_message(data: dict) -> WireMessage:
    """Validate a structured message (wire field names) into its model."""
    try:
        return _wire_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {e.error_count()} validation error(s)") from e


def encode_message(message: WireMessage) -> tuple[int, bytes]:
    """Return (frame type, payload) for a wire message."""
    if isinstance(message, ChunkMessage):
        return FrameType.CHUNK, struct.pack(CHUNK_INDEX_FORMAT, message.index) + message.data
    frame_type = _JSON_FRAMES.get(type(message))
    if frame_type is None:
        raise ProtocolError(f"Cannot encode {type(message).__name__}")
    return frame_type, message.model_dump_json(by_alias=True).encode("utf-8")


def decode_message(frame_type: int, payload: bytes) -> WireMessage:
    """Inverse of encode_message()."""
    if frame_type == FrameType.CHUNK:
        if len(payload) < CHUNK_INDEX_SIZE:
            raise ProtocolError("Chunk frame is shorter than its index")
        (index,) = struct.unpack(CHUNK_INDEX_FORMAT, payload[:CHUNK_INDEX_SIZE])
        return ChunkMessage(index=index, data=payload[CHUNK_INDEX_SIZE:])

    model = _FRAME_MODELS.get(frame_type)
    if model is None:
        raise ProtocolError(f"Unexpected frame type {frame_type:#x}")
    try:
        return model.model_validate_json(payload)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {model.__name__} frame") from e


def encode_hello(peer_id: str) -> bytes:
    return json.dumps({"app_id": APP_ID, "peer_id": peer_id}).encode("utf-8")


def decode_hello(payload: bytes) -> str:
    """Return the peer id announced in a hello frame."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError("Malformed hello frame") from e
    if not isinstance(data, dict) or data.get("app_id") != APP_ID:
        raise ProtocolError("Hello frame from a different application")
    peer_id = data.get("peer_id")
    if not isinstance(peer_id, str) or not peer_id:
        raise ProtocolError("Hello frame without a peer id")
    return peer_id


def pack_frame(frame_type: int, payload: bytes = b"") -> bytes:
    if len(payload) > MAX_FRAME_SIZE:
        raise ProtocolError(f"Frame of {len(payload)} bytes exceeds {MAX_FRAME_SIZE}")
    return struct.pack(HEADER_FORMAT, frame_type, len(payload)) + payload


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    writer.write(pack_frame(frame_type, payload))
    await writer.drain()


async def recv_frame(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ProtocolError(f"Announced frame of {length} bytes exceeds {MAX_FRAME_SIZE}")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload
