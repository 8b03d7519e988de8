"""
File chunker.

Slices a byte source into fixed-size chunks on demand, so sending a file
never holds more than one chunk of it in memory. The source must be
seekable: every chunk is read at its own offset.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Iterator

from peerbeam.config import CHUNK_SIZE


@dataclass(frozen=True)
class Chunk:
    chunk: bytes
    index: int
    total: int


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks needed for `size` bytes."""
    return math.ceil(size / chunk_size)


class FileChunker:
    """
    Lazy, forward-only sequence of chunks covering [0, size).

    A chunker can be consumed once; build a new one over the same source to
    start again.
    """

    def __init__(self, source: BinaryIO, size: int, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if size < 0:
            raise ValueError(f"size must not be negative, got {size}")
        self.source = source
        self.size = size
        self.chunk_size = chunk_size
        self.total_chunks = chunk_count(size, chunk_size)
        self._consumed = False

    def _claim(self) -> None:
        if self._consumed:
            raise RuntimeError("FileChunker is forward-only; create a new one to restart")
        self._consumed = True

    def _bounds(self, index: int) -> tuple[int, int]:
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, self.size)

    def _read(self, index: int) -> bytes:
        start, end = self._bounds(index)
        self.source.seek(start)
        data = self.source.read(end - start)
        if len(data) != end - start:
            raise EOFError(
                f"Source ended early: chunk {index} expected {end - start} bytes, got {len(data)}"
            )
        return data

    def __iter__(self) -> Iterator[Chunk]:
        self._claim()
        for index in range(self.total_chunks):
            yield Chunk(chunk=self._read(index), index=index, total=self.total_chunks)

    async def chunks(self) -> AsyncIterator[Chunk]:
        """Async variant; disk reads run in a worker thread."""
        self._claim()
        for index in range(self.total_chunks):
            data = await asyncio.to_thread(self._read, index)
            yield Chunk(chunk=data, index=index, total=self.total_chunks)
