"""Pydantic models for the session: status, wire messages and events."""

import io
import mimetypes
import os
from enum import Enum
from pathlib import Path
from typing import Annotated, BinaryIO, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from peerbeam.config import (
    BUFFER_HIGH_WATER,
    BUFFER_LOW_WATER,
    CHUNK_SIZE,
    DEFAULT_MIME_TYPE,
    MAX_CHUNK_SIZE,
    STALL_TIMEOUT,
    YIELD_DELAY,
    YIELD_EVERY,
)


class Status(str, Enum):
    """The single authoritative connection/transfer status of a session."""
    IDLE = "idle"
    WAITING = "waiting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """State of the file transfer currently in flight, exposed to the frontend."""
    file_name: str
    file_size: int
    mime_type: str = DEFAULT_MIME_TYPE
    total_chunks: int
    direction: TransferDirection
    transferred_bytes: int = 0
    transferred_chunks: int = 0
    progress_percent: float = 0.0
    speed_bps: float = 0.0


class SessionOptions(BaseModel):
    """Per-session tuning; defaults come from peerbeam.config."""
    chunk_size: int = Field(default=CHUNK_SIZE, gt=0, le=MAX_CHUNK_SIZE)
    yield_every: int = Field(default=YIELD_EVERY, gt=0)
    yield_delay: float = Field(default=YIELD_DELAY, ge=0)
    buffer_high_water: int = Field(default=BUFFER_HIGH_WATER, gt=0)
    buffer_low_water: int = Field(default=BUFFER_LOW_WATER, ge=0)
    stall_timeout: float | None = STALL_TIMEOUT


class FileHandle(BaseModel):
    """An outgoing file, backed either by a path on disk or by bytes in memory."""
    model_config = ConfigDict(frozen=True)

    name: str
    size: int = Field(ge=0)
    mime_type: str = DEFAULT_MIME_TYPE
    path: Path | None = None
    content: bytes | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _one_source(self) -> "FileHandle":
        if (self.path is None) == (self.content is None):
            raise ValueError("FileHandle needs exactly one of path or content")
        return self

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> "FileHandle":
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            size=os.path.getsize(path),
            mime_type=mime_type or guessed or DEFAULT_MIME_TYPE,
            path=path,
        )

    @classmethod
    def from_bytes(
        cls, name: str, content: bytes, mime_type: str | None = None
    ) -> "FileHandle":
        guessed, _ = mimetypes.guess_type(name)
        return cls(
            name=name,
            size=len(content),
            mime_type=mime_type or guessed or DEFAULT_MIME_TYPE,
            content=content,
        )

    def open(self) -> BinaryIO:
        """Open the underlying bytes for reading. The caller closes it."""
        if self.path is not None:
            return open(self.path, "rb")
        return io.BytesIO(self.content)


class ReceivedFile(BaseModel):
    """A completely reassembled inbound file."""
    model_config = ConfigDict(frozen=True)

    name: str
    mime_type: str
    size: int
    data: bytes = Field(repr=False, exclude=True)


# --- Wire protocol messages ---

class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class KeyExchangeMessage(_WireModel):
    """Carries the base64 session key from the generating peer."""
    type: Literal["key_exchange"] = "key_exchange"
    key: str


class MetaMessage(_WireModel):
    """Announces a file before its chunks."""
    type: Literal["meta"] = "meta"
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")
    total_chunks: int = Field(ge=0, alias="totalChunks")


class ChunkMessage(_WireModel):
    type: Literal["chunk"] = "chunk"
    index: int = Field(ge=0)
    data: bytes = Field(alias="bytes", repr=False)


class TextMessage(_WireModel):
    """A chat line; `text` is base64 ciphertext when `encrypted` is set."""
    type: Literal["message"] = "message"
    text: str
    encrypted: bool = False
    timestamp: int = Field(ge=0)  # milliseconds since the epoch


WireMessage = Annotated[
    Union[KeyExchangeMessage, MetaMessage, ChunkMessage, TextMessage],
    Field(discriminator="type"),
]


# --- Session events ---

class StatusEvent(BaseModel):
    kind: Literal["status"] = "status"
    status: Status


class ProgressEvent(BaseModel):
    """One progress sample, recomputed on every chunk sent or received."""
    kind: Literal["progress"] = "progress"
    percent: float = Field(ge=0, le=100)
    bytes_per_second: float = Field(ge=0)
    direction: TransferDirection


class FileReceivedEvent(BaseModel):
    kind: Literal["file_received"] = "file_received"
    file: ReceivedFile


class MessageEvent(BaseModel):
    kind: Literal["message"] = "message"
    text: str
    encrypted: bool
    timestamp: int
    from_self: bool


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str


class EncryptionEvent(BaseModel):
    """Reports whether text messages are currently covered by the session key."""
    kind: Literal["encryption"] = "encryption"
    active: bool
    reason: str | None = None


SessionEvent = Annotated[
    Union[
        StatusEvent,
        ProgressEvent,
        FileReceivedEvent,
        MessageEvent,
        ErrorEvent,
        EncryptionEvent,
    ],
    Field(discriminator="kind"),
]
