"""
In-process channels.

Two MemoryChannel ends are linked through asyncio queues. The sending end
counts the bytes its peer has not consumed yet, which gives the transfer
engine a real buffered-amount signal to throttle on.
"""

import asyncio
import logging

from peerbeam.channel.base import AcceptCallback, Channel, PeerNetwork
from peerbeam.errors import ChannelError
from peerbeam.transfer.models import WireMessage
from peerbeam.transfer.protocol import encode_message

logger = logging.getLogger(__name__)

_EOF = object()


class _Fault:
    def __init__(self, message: str) -> None:
        self.message = message


class MemoryChannel(Channel):
    def __init__(self, local: str, peer: str) -> None:
        super().__init__(peer)
        self.local = local
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._remote: "MemoryChannel | None" = None
        self._buffered = 0

    @classmethod
    def pair(cls, a: str, b: str) -> tuple["MemoryChannel", "MemoryChannel"]:
        """Return linked ends (a's end, b's end)."""
        end_a = cls(local=a, peer=b)
        end_b = cls(local=b, peer=a)
        end_a._remote = end_b
        end_b._remote = end_a
        return end_a, end_b

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def inject_fault(self, message: str) -> None:
        """Make this end report a transport failure to its listener."""
        self._inbox.put_nowait(_Fault(message))

    def _consumed(self, size: int) -> None:
        self._buffered -= size
        self._signal_drain()

    async def _send(self, message: WireMessage) -> None:
        remote = self._remote
        if remote is None or remote._closed:
            raise ChannelError(f"Peer {self.peer} has gone away")
        _, payload = encode_message(message)
        size = len(payload)
        self._buffered += size
        remote._inbox.put_nowait((message, size))

    async def _receive(self) -> WireMessage | None:
        item = await self._inbox.get()
        if item is _EOF:
            return None
        if isinstance(item, _Fault):
            raise ChannelError(item.message)
        message, size = item
        if self._remote is not None:
            self._remote._consumed(size)
        return message

    async def _close_transport(self) -> None:
        remote = self._remote
        if remote is not None and not remote._closed:
            remote._inbox.put_nowait(_EOF)


class MemoryNetwork(PeerNetwork):
    """Registry of listening identities living in one event loop."""

    def __init__(self) -> None:
        self._listeners: dict[str, AcceptCallback] = {}

    def is_listening(self, identity: str) -> bool:
        return identity in self._listeners

    async def listen(self, identity: str, accept: AcceptCallback) -> None:
        if identity in self._listeners:
            raise ChannelError(f"Identity {identity} is already taken")
        self._listeners[identity] = accept
        logger.debug(f"{identity} listening on memory network")

    async def connect(self, identity: str, remote_id: str) -> Channel:
        accept = self._listeners.get(remote_id)
        if accept is None:
            raise ChannelError(f"Could not connect to peer {remote_id}")
        local_end, remote_end = MemoryChannel.pair(identity, remote_id)
        await accept(remote_end)
        return local_end

    async def stop(self, identity: str) -> None:
        self._listeners.pop(identity, None)
