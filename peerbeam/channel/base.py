"""
Channel abstraction.

A Channel is the reliable, bidirectional, message-oriented link to one
remote peer. It is established by a PeerNetwork and reports its lifecycle
to exactly one bound listener: on_open first, then on_data per inbound
message (sequentially, in arrival order), on_error for transport faults and
on_close exactly once.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Protocol

from peerbeam.errors import ChannelError, ProtocolError
from peerbeam.transfer.models import WireMessage

logger = logging.getLogger(__name__)


class ChannelListener(Protocol):
    async def on_open(self, channel: "Channel") -> None: ...

    async def on_data(self, channel: "Channel", message: WireMessage) -> None: ...

    async def on_close(self, channel: "Channel") -> None: ...

    async def on_error(self, channel: "Channel", error: ChannelError) -> None: ...


class Channel(ABC):
    """Base class running the reader loop and listener dispatch."""

    def __init__(self, peer: str) -> None:
        self.peer = peer
        self._listener: ChannelListener | None = None
        self._reader_task: asyncio.Task | None = None
        self._open = False
        self._closed = False
        self._drain_event = asyncio.Event()

    @property
    def open(self) -> bool:
        return self._open and not self._closed

    @property
    def buffered_amount(self) -> int | None:
        """Bytes queued but not yet taken by the peer; None if unknown."""
        return None

    def bind(self, listener: ChannelListener | None) -> None:
        """Attach (or with None, detach) the listener."""
        self._listener = listener

    def start(self) -> None:
        """Begin delivering events to the bound listener."""
        if self._reader_task is not None or self._closed:
            return
        self._reader_task = asyncio.create_task(self._run(), name=f"channel-{self.peer}")

    async def send(self, message: WireMessage) -> None:
        if not self.open:
            raise ChannelError(f"Channel to {self.peer} is not open")
        try:
            await self._send(message)
        except (ConnectionError, OSError) as e:
            raise ChannelError(f"Send to {self.peer} failed: {e}") from e
        except ProtocolError as e:
            raise ChannelError(f"Cannot send to {self.peer}: {e}") from e

    async def wait_drained(self, low_water: int) -> None:
        """Wait until the buffered amount falls to `low_water` or the channel closes."""
        while self.open:
            buffered = self.buffered_amount
            if buffered is None or buffered <= low_water:
                return
            self._drain_event.clear()
            await self._drain_event.wait()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._signal_drain()

        task = self._reader_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

        try:
            await self._close_transport()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing channel to {self.peer}: {e}")

        listener = self._listener
        if listener:
            await self._call(listener.on_close(self), "on_close")

    def _signal_drain(self) -> None:
        self._drain_event.set()

    async def _run(self) -> None:
        self._open = True
        if self._listener:
            await self._call(self._listener.on_open(self), "on_open")
        try:
            while not self._closed:
                message = await self._receive()
                if message is None:
                    logger.info(f"Channel to {self.peer} closed by remote")
                    break
                if self._listener:
                    await self._call(self._listener.on_data(self, message), "on_data")
        except ChannelError as e:
            logger.error(f"Channel to {self.peer} failed: {e}")
            if self._listener:
                await self._call(self._listener.on_error(self, e), "on_error")
        await self.close()

    async def _call(self, awaitable: Awaitable[None], hook: str) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Channel listener {hook} error: {e}", exc_info=True)

    @abstractmethod
    async def _send(self, message: WireMessage) -> None:
        """Hand one message to the transport."""

    @abstractmethod
    async def _receive(self) -> WireMessage | None:
        """Next inbound message; None once the remote end has closed."""

    @abstractmethod
    async def _close_transport(self) -> None:
        """Release the transport."""


AcceptCallback = Callable[[Channel], Awaitable[None]]


class PeerNetwork(ABC):
    """Establishes channels between peer identities."""

    @abstractmethod
    async def listen(self, identity: str, accept: AcceptCallback) -> None:
        """Accept inbound channels for `identity`; each one is passed to `accept`."""

    @abstractmethod
    async def connect(self, identity: str, remote_id: str) -> Channel:
        """Open a channel from `identity` to `remote_id`. Raises ChannelError."""

    @abstractmethod
    async def stop(self, identity: str) -> None:
        """Stop accepting inbound channels for `identity`."""
