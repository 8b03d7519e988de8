"""
TCP channels over asyncio streams.

Both ends first swap a HELLO frame carrying their peer id, then exchange
protocol frames. Flow control is the stream's own: send() waits on
writer.drain().
"""

import asyncio
import logging

from peerbeam.channel.base import AcceptCallback, Channel, PeerNetwork
from peerbeam.config import TRANSFER_HOST, TRANSFER_PORT
from peerbeam.errors import ChannelError, ProtocolError
from peerbeam.transfer.models import WireMessage
from peerbeam.transfer.protocol import (
    FrameType,
    decode_hello,
    decode_message,
    encode_hello,
    encode_message,
    recv_frame,
    send_frame,
)

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0  # seconds


class StreamChannel(Channel):
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str,
    ) -> None:
        super().__init__(peer)
        self._reader = reader
        self._writer = writer

    @property
    def buffered_amount(self) -> int:
        return self._writer.transport.get_write_buffer_size()

    async def wait_drained(self, low_water: int) -> None:
        if self.open:
            await self._writer.drain()

    async def _send(self, message: WireMessage) -> None:
        frame_type, payload = encode_message(message)
        await send_frame(self._writer, frame_type, payload)

    async def _receive(self) -> WireMessage | None:
        while True:
            try:
                frame_type, payload = await recv_frame(self._reader)
            except asyncio.IncompleteReadError:
                return None
            except ProtocolError as e:
                raise ChannelError(f"Stream from {self.peer} is corrupt: {e}") from e
            except (ConnectionError, OSError) as e:
                raise ChannelError(f"Connection to {self.peer} lost: {e}") from e

            try:
                return decode_message(frame_type, payload)
            except ProtocolError as e:
                logger.warning(f"Dropping frame from {self.peer}: {e}")

    async def _close_transport(self) -> None:
        self._writer.close()
        await self._writer.wait_closed()


class TcpNetwork(PeerNetwork):
    """
    Reaches peers over TCP.

    Remote ids are looked up in `address_book` first; anything else must be
    written as "host:port".
    """

    def __init__(
        self,
        host: str = TRANSFER_HOST,
        port: int = TRANSFER_PORT,
        address_book: dict[str, tuple[str, int]] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.address_book = dict(address_book or {})
        self._server: asyncio.Server | None = None

    def resolve(self, remote_id: str) -> tuple[str, int]:
        if remote_id in self.address_book:
            return self.address_book[remote_id]
        host, sep, port = remote_id.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ChannelError(f"Unknown peer {remote_id}")
        return host, int(port)

    async def listen(self, identity: str, accept: AcceptCallback) -> None:
        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            try:
                frame_type, payload = await asyncio.wait_for(
                    recv_frame(reader), timeout=HANDSHAKE_TIMEOUT
                )
                if frame_type != FrameType.HELLO:
                    raise ProtocolError(f"Expected HELLO, got {frame_type:#x}")
                peer_id = decode_hello(payload)
                await send_frame(writer, FrameType.HELLO, encode_hello(identity))
            except (ProtocolError, asyncio.IncompleteReadError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"Rejected inbound connection: {e}")
                writer.close()
                return
            logger.info(f"Inbound channel from {peer_id}")
            await accept(StreamChannel(reader, writer, peer=peer_id))

        self._server = await asyncio.start_server(handle, self.host, self.port)
        # Port 0 asks the OS for a free port; report the real one
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Transfer listener on {self.host}:{self.port}")

    async def connect(self, identity: str, remote_id: str) -> Channel:
        host, port = self.resolve(remote_id)
        writer: asyncio.StreamWriter | None = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=HANDSHAKE_TIMEOUT
            )
            await send_frame(writer, FrameType.HELLO, encode_hello(identity))
            frame_type, payload = await asyncio.wait_for(
                recv_frame(reader), timeout=HANDSHAKE_TIMEOUT
            )
            if frame_type != FrameType.HELLO:
                raise ProtocolError(f"Expected HELLO, got {frame_type:#x}")
            peer_id = decode_hello(payload)
        except (ProtocolError, asyncio.IncompleteReadError, asyncio.TimeoutError, OSError) as e:
            if writer:
                writer.close()
            raise ChannelError(f"Could not connect to peer {remote_id}: {e}") from e
        return StreamChannel(reader, writer, peer=peer_id)

    async def stop(self, identity: str) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Transfer listener stopped")
