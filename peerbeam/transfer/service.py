"""
Chunked file transfer over a channel.

Sending: one META message, then one CHUNK per chunk in index order, with a
progress sample after every chunk. Receiving: chunks are stored by index and
the file is assembled once every index has arrived.
"""

import asyncio
import logging
import time
from typing import Awaitable, BinaryIO, Callable

from peerbeam.channel.base import Channel
from peerbeam.errors import TransferStalled
from peerbeam.transfer.chunker import FileChunker
from peerbeam.transfer.formatting import format_size, format_speed
from peerbeam.transfer.models import (
    ChunkMessage,
    FileHandle,
    MetaMessage,
    ReceivedFile,
    SessionOptions,
    TransferDirection,
    TransferInfo,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferInfo], Awaitable[None]]


class SpeedTracker:
    """Average throughput since the start of a transfer."""

    def __init__(self) -> None:
        self._start = time.monotonic()
        self._bytes = 0

    def record(self, byte_count: int) -> None:
        self._bytes += byte_count

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        elapsed = time.monotonic() - self._start
        if elapsed <= 0:
            return 0.0
        return self._bytes / elapsed


async def _throttle(channel: Channel, index: int, options: SessionOptions) -> None:
    """Hold the send loop back while the channel is saturated."""
    buffered = channel.buffered_amount
    if buffered is None:
        # No backpressure signal: fixed-interval yield to the event loop
        if index % options.yield_every == 0:
            await asyncio.sleep(options.yield_delay)
        return
    if buffered > options.buffer_high_water:
        try:
            await asyncio.wait_for(
                channel.wait_drained(options.buffer_low_water),
                timeout=options.stall_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransferStalled(
                f"Channel to {channel.peer} did not drain within {options.stall_timeout}s"
            ) from e


async def send_file(
    channel: Channel,
    handle: FileHandle,
    source: BinaryIO,
    options: SessionOptions,
    progress_callback: ProgressCallback,
) -> TransferInfo:
    """
    Send a single file to the peer at the other end of `channel`.

    Args:
        channel: An open channel.
        handle: The file to send.
        source: The opened file contents; the caller closes it.
        options: Chunk size and flow-control settings.
        progress_callback: async fn(transfer_info) called after every chunk.

    Raises ChannelError if the channel fails and TransferStalled if it stops
    draining. Nothing is retried.
    """
    chunker = FileChunker(source, handle.size, options.chunk_size)
    info = TransferInfo(
        file_name=handle.name,
        file_size=handle.size,
        mime_type=handle.mime_type,
        total_chunks=chunker.total_chunks,
        direction=TransferDirection.SENDING,
    )
    logger.info(
        f"Sending '{handle.name}' ({format_size(handle.size)}, "
        f"{chunker.total_chunks} chunks) to {channel.peer}"
    )

    await channel.send(
        MetaMessage(
            name=handle.name,
            size=handle.size,
            mime_type=handle.mime_type,
            total_chunks=chunker.total_chunks,
        )
    )

    if chunker.total_chunks == 0:
        info.progress_percent = 100.0
        await progress_callback(info)
        return info

    tracker = SpeedTracker()
    async for item in chunker.chunks():
        await channel.send(ChunkMessage(index=item.index, data=item.chunk))

        tracker.record(len(item.chunk))
        info.transferred_bytes += len(item.chunk)
        info.transferred_chunks = item.index + 1
        info.progress_percent = (item.index + 1) / item.total * 100
        info.speed_bps = tracker.get_speed()
        await progress_callback(info)

        await _throttle(channel, item.index, options)

    logger.info(f"Sent '{handle.name}' at {format_speed(info.speed_bps)}")
    return info


class TransferReceiver:
    """Reassembles one inbound file at a time."""

    def __init__(self) -> None:
        self.info: TransferInfo | None = None
        self._chunks: dict[int, bytes] = {}
        self._tracker: SpeedTracker | None = None
        self.last_activity = 0.0

    @property
    def pending(self) -> bool:
        return self.info is not None

    @property
    def complete(self) -> bool:
        return self.info is not None and len(self._chunks) == self.info.total_chunks

    def start(self, meta: MetaMessage) -> TransferInfo:
        """Begin a new inbound transfer, dropping any unfinished one."""
        if self.info is not None:
            logger.warning(
                f"New file announced while '{self.info.file_name}' was incomplete "
                f"({len(self._chunks)}/{self.info.total_chunks} chunks); discarding it"
            )
        self.info = TransferInfo(
            file_name=meta.name,
            file_size=meta.size,
            mime_type=meta.mime_type,
            total_chunks=meta.total_chunks,
            direction=TransferDirection.RECEIVING,
        )
        self._chunks = {}
        self._tracker = SpeedTracker()
        self.last_activity = time.monotonic()
        logger.info(
            f"Receiving '{meta.name}' ({format_size(meta.size)}, {meta.total_chunks} chunks)"
        )
        return self.info

    def add_chunk(self, message: ChunkMessage) -> bool:
        """Store a chunk. Returns False when it was ignored."""
        info = self.info
        if info is None:
            logger.warning(f"Ignoring chunk {message.index}: no transfer announced")
            return False
        if message.index >= info.total_chunks:
            logger.warning(
                f"Ignoring chunk {message.index}: '{info.file_name}' has {info.total_chunks}"
            )
            return False
        if message.index in self._chunks:
            logger.warning(f"Ignoring duplicate chunk {message.index} of '{info.file_name}'")
            return False

        self._chunks[message.index] = message.data
        self._tracker.record(len(message.data))
        self.last_activity = time.monotonic()

        info.transferred_bytes += len(message.data)
        info.transferred_chunks = len(self._chunks)
        info.progress_percent = len(self._chunks) / info.total_chunks * 100
        info.speed_bps = self._tracker.get_speed()
        return True

    def assemble(self) -> ReceivedFile:
        """Join all chunks in index order and reset for the next transfer."""
        info = self.info
        if info is None or not self.complete:
            raise RuntimeError("Transfer is not complete")
        data = b"".join(self._chunks[i] for i in range(info.total_chunks))
        if len(data) != info.file_size:
            logger.warning(
                f"'{info.file_name}' announced {info.file_size} bytes, assembled {len(data)}"
            )
        received = ReceivedFile(
            name=info.file_name,
            mime_type=info.mime_type,
            size=len(data),
            data=data,
        )
        logger.info(f"Received '{info.file_name}' at {format_speed(info.speed_bps)}")
        self.reset()
        return received

    def reset(self) -> None:
        self.info = None
        self._chunks = {}
        self._tracker = None
