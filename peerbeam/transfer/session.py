"""
One peer's side of a file/message exchange.

Owns the local identity, at most one channel, the channel's session key,
the inbound transfer buffer and the status machine. Callers construct a
Session, drive it with initialize/connect/send_file/send_message/disconnect
and dispose of it with destroy(). Everything it reports is delivered as
typed events to subscribers.
"""

import asyncio
import inspect
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Union

from peerbeam.channel.base import Channel, PeerNetwork
from peerbeam.config import DECRYPTION_PLACEHOLDER
from peerbeam.discovery.identity import generate_peer_id
from peerbeam.errors import (
    ChannelError,
    CryptoUnavailable,
    DecryptionFailed,
    NoActiveConnection,
    TransferStalled,
)
from peerbeam.security.crypto import decrypt_string, encrypt_string, is_crypto_available
from peerbeam.security.negotiator import KeyNegotiator, KeyRole
from peerbeam.transfer.chunker import chunk_count
from peerbeam.transfer.models import (
    ChunkMessage,
    EncryptionEvent,
    ErrorEvent,
    FileHandle,
    FileReceivedEvent,
    KeyExchangeMessage,
    MessageEvent,
    MetaMessage,
    ProgressEvent,
    SessionEvent,
    SessionOptions,
    Status,
    StatusEvent,
    TextMessage,
    TransferDirection,
    TransferInfo,
    WireMessage,
)
from peerbeam.transfer.service import TransferReceiver, send_file
from peerbeam.transfer.state import StatusMachine

logger = logging.getLogger(__name__)

EventCallback = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class Session:
    """A constructed-and-disposed transfer session; also a ChannelListener."""

    def __init__(
        self,
        network: PeerNetwork,
        options: SessionOptions | None = None,
        peer_id: str | None = None,
    ) -> None:
        self.options = options or SessionOptions()
        self.peer_id: str | None = None
        self.remote_peer_id: str | None = None
        self._network = network
        self._requested_id = peer_id
        self._channel: Channel | None = None
        self._negotiator: KeyNegotiator | None = None
        self._receiver = TransferReceiver()
        self._sending: TransferInfo | None = None
        self._watchdog: asyncio.Task | None = None
        self._observers: list[EventCallback] = []
        self._queues: list[asyncio.Queue] = []
        self._callback_tasks: set[asyncio.Task] = set()
        self._machine = StatusMachine(self._on_status_change)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.destroy()

    # --- State exposed to callers ---

    @property
    def status(self) -> Status:
        return self._machine.status

    @property
    def connected(self) -> bool:
        return self._channel is not None and self._channel.open

    @property
    def encrypted(self) -> bool:
        """True once this channel's session key is installed."""
        return self._negotiator is not None and self._negotiator.established

    @property
    def transfer(self) -> TransferInfo | None:
        """The transfer in flight, outbound first."""
        return self._sending or self._receiver.info

    # --- Events ---

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """
        Register an observer for every SessionEvent.

        Plain callables run inline; coroutine functions are scheduled on the
        loop. Returns a function that removes the observer.
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Iterate over events until the session is destroyed."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def _emit(self, event: SessionEvent) -> None:
        for queue in self._queues:
            queue.put_nowait(event)
        for cb in list(self._observers):
            try:
                result = cb(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event callback error: {task.exception()}")

    def _on_status_change(self, status: Status) -> None:
        self._emit(StatusEvent(status=status))

    def _fail(self, message: str) -> None:
        logger.error(message)
        self._emit(ErrorEvent(message=message))
        self._machine.transition(Status.ERROR)

    def _emit_progress(self, info: TransferInfo) -> None:
        self._emit(
            ProgressEvent(
                percent=info.progress_percent,
                bytes_per_second=info.speed_bps,
                direction=info.direction,
            )
        )

    # --- Client operations ---

    async def initialize(self) -> str | None:
        """Take a peer id and start accepting inbound channels."""
        if self.peer_id is not None:
            return self.peer_id

        peer_id = self._requested_id or generate_peer_id()
        try:
            await self._network.listen(peer_id, self._accept)
        except (ChannelError, OSError) as e:
            self._fail(f"Could not start listening as {peer_id}: {e}")
            return None

        self.peer_id = peer_id
        logger.info(f"Session ready as {peer_id}")
        self._machine.transition(Status.WAITING)
        return peer_id

    async def connect(self, remote_id: str) -> None:
        """
        Open a channel to `remote_id`.

        Failures are reported through the error event and the error status.
        Dialling our own id is refused with an error event only; the status
        and any open channel are left as they were.
        """
        if self.peer_id is None and await self.initialize() is None:
            return
        if remote_id == self.peer_id:
            logger.warning(f"Refusing to connect {remote_id} to itself")
            self._emit(ErrorEvent(message="Cannot connect to yourself"))
            return

        if self._channel is not None:
            await self.disconnect()
        logger.info(f"Connecting to: {remote_id}")
        self._machine.transition(Status.CONNECTING)
        try:
            channel = await self._network.connect(self.peer_id, remote_id)
        except ChannelError as e:
            self._fail(str(e))
            return
        await self._install(channel)

    async def send_file(self, handle: FileHandle) -> TransferInfo | None:
        """
        Send one file over the open channel.

        Raises NoActiveConnection without an open channel and OSError if the
        file cannot be opened; the status is left untouched in both cases.
        Transfer failures are reported as events and return None.
        """
        channel = self._require_channel()
        source = handle.open()

        self._machine.transition(Status.TRANSFERRING)
        self._sending = TransferInfo(
            file_name=handle.name,
            file_size=handle.size,
            mime_type=handle.mime_type,
            total_chunks=chunk_count(handle.size, self.options.chunk_size),
            direction=TransferDirection.SENDING,
        )

        async def on_progress(info: TransferInfo) -> None:
            self._sending = info
            self._emit_progress(info)

        try:
            with source:
                info = await send_file(channel, handle, source, self.options, on_progress)
        except (ChannelError, TransferStalled, OSError, EOFError) as e:
            self._sending = None
            if channel is not self._channel:
                logger.info(f"Transfer of '{handle.name}' aborted: channel closed")
                return None
            self._fail(f"Failed to send file: {e}")
            await self._release_channel()
            return None

        self._sending = None
        self._transfer_done()
        return info

    async def send_message(self, text: str) -> MessageEvent | None:
        """Send a chat line, encrypted once the session key is installed."""
        channel = self._require_channel()
        key = self._negotiator.key if self._negotiator else None
        timestamp = int(time.time() * 1000)

        if key is not None:
            message = TextMessage(
                text=encrypt_string(text, key), encrypted=True, timestamp=timestamp
            )
        else:
            message = TextMessage(text=text, encrypted=False, timestamp=timestamp)

        try:
            await channel.send(message)
        except ChannelError as e:
            self._fail(f"Failed to send message: {e}")
            await self._release_channel()
            return None

        event = MessageEvent(
            text=text, encrypted=message.encrypted, timestamp=timestamp, from_self=True
        )
        self._emit(event)
        return event

    async def disconnect(self) -> None:
        """Close the channel; the session can connect or wait again afterwards."""
        if self._channel is None:
            return
        logger.info(f"Disconnecting from {self._channel.peer}")
        await self._release_channel()
        self._machine.transition(Status.DISCONNECTED)

    async def destroy(self) -> None:
        """Release the channel and the peer id and return to idle."""
        await self._release_channel()
        if self.peer_id is not None:
            await self._network.stop(self.peer_id)
            logger.info(f"Session {self.peer_id} destroyed")
            self.peer_id = None
        self._machine.reset()
        for queue in self._queues:
            queue.put_nowait(None)
        for task in list(self._callback_tasks):
            task.cancel()

    # --- Channel management ---

    def _require_channel(self) -> Channel:
        if self._channel is None or not self._channel.open:
            raise NoActiveConnection()
        return self._channel

    async def _accept(self, channel: Channel) -> None:
        logger.info(f"Incoming connection: {channel.peer}")
        await self._install(channel)

    async def _install(self, channel: Channel) -> None:
        if self._channel is not None:
            logger.info(f"Replacing channel to {self._channel.peer} with {channel.peer}")
            await self._release_channel()
        self._channel = channel
        channel.bind(self)
        channel.start()

    async def _release_channel(self) -> None:
        """Detach and close the channel, dropping its key and transfer state."""
        channel = self._channel
        self._channel = None
        self.remote_peer_id = None
        if self._negotiator:
            self._negotiator.discard()
            self._negotiator = None
        self._abort_receive()
        if channel is not None:
            channel.bind(None)
            await channel.close()

    def _transfer_done(self) -> None:
        if self._sending is None and not self._receiver.pending:
            if self.status == Status.TRANSFERRING:
                self._machine.transition(Status.CONNECTED)

    # --- ChannelListener ---

    async def on_open(self, channel: Channel) -> None:
        if channel is not self._channel:
            return
        self.remote_peer_id = channel.peer
        logger.info(f"Connection established with {channel.peer}")
        self._machine.transition(Status.CONNECTED)
        await self._negotiate(channel)

    async def on_data(self, channel: Channel, message: WireMessage) -> None:
        if channel is not self._channel:
            return
        if isinstance(message, ChunkMessage):
            self._handle_chunk(message)
        elif isinstance(message, MetaMessage):
            self._handle_meta(message)
        elif isinstance(message, TextMessage):
            self._handle_text(message)
        elif isinstance(message, KeyExchangeMessage):
            await self._handle_key(channel, message)

    async def on_close(self, channel: Channel) -> None:
        if channel is not self._channel:
            return
        logger.info(f"Connection closed: {channel.peer}")
        await self._release_channel()
        # A failed channel keeps reporting the error
        if self.status != Status.ERROR:
            self._machine.transition(Status.DISCONNECTED)

    async def on_error(self, channel: Channel, error: ChannelError) -> None:
        if channel is not self._channel:
            return
        self._fail(str(error))

    # --- Key exchange ---

    async def _negotiate(self, channel: Channel) -> None:
        try:
            negotiator = KeyNegotiator(self.peer_id, channel.peer)
        except ValueError as e:
            self._fail(str(e))
            await self._release_channel()
            return
        self._negotiator = negotiator

        if negotiator.role is KeyRole.RECEIVER:
            if not is_crypto_available():
                self._emit(
                    EncryptionEvent(active=False, reason="AES-GCM unavailable; messages are plaintext")
                )
            return

        try:
            message = negotiator.start()
        except CryptoUnavailable as e:
            logger.warning(f"Session with {channel.peer} is unencrypted: {e}")
            self._emit(EncryptionEvent(active=False, reason=str(e)))
            return

        try:
            await channel.send(message)
        except ChannelError as e:
            negotiator.discard()
            self._fail(f"Key exchange failed: {e}")
            await self._release_channel()
            return
        self._emit(EncryptionEvent(active=True))

    async def _handle_key(self, channel: Channel, message: KeyExchangeMessage) -> None:
        negotiator = self._negotiator
        if negotiator is None:
            logger.warning("Ignoring key_exchange before the channel opened")
            return

        if not is_crypto_available():
            if negotiator.role is KeyRole.RECEIVER and message.key:
                logger.warning("Declining session key: encryption is disabled locally")
                try:
                    await channel.send(negotiator.decline())
                except ChannelError as e:
                    self._fail(f"Key exchange failed: {e}")
                    await self._release_channel()
            return

        had_key = negotiator.established
        if negotiator.accept(message):
            self._emit(EncryptionEvent(active=True))
        elif had_key and not negotiator.established:
            self._emit(
                EncryptionEvent(
                    active=False, reason=f"{channel.peer} cannot decrypt; messages are plaintext"
                )
            )

    # --- Inbound transfer ---

    def _handle_meta(self, meta: MetaMessage) -> None:
        info = self._receiver.start(meta)
        self._machine.transition(Status.TRANSFERRING)
        self._emit(ProgressEvent(percent=0, bytes_per_second=0, direction=info.direction))
        if self._receiver.complete:
            self._finish_receive()
            return
        self._arm_watchdog()

    def _handle_chunk(self, message: ChunkMessage) -> None:
        if not self._receiver.add_chunk(message):
            return
        self._emit_progress(self._receiver.info)
        if self._receiver.complete:
            self._finish_receive()

    def _finish_receive(self) -> None:
        received = self._receiver.assemble()
        self._cancel_watchdog()
        self._emit(FileReceivedEvent(file=received))
        self._transfer_done()

    def _abort_receive(self) -> None:
        self._cancel_watchdog()
        if self._receiver.pending:
            logger.info(f"Discarding incomplete transfer '{self._receiver.info.file_name}'")
            self._receiver.reset()

    def _arm_watchdog(self) -> None:
        if self.options.stall_timeout is None:
            return
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(self._watch_stall())

    def _cancel_watchdog(self) -> None:
        watchdog = self._watchdog
        self._watchdog = None
        if watchdog and watchdog is not asyncio.current_task() and not watchdog.done():
            watchdog.cancel()

    async def _watch_stall(self) -> None:
        timeout = self.options.stall_timeout
        while self._receiver.pending:
            remaining = self._receiver.last_activity + timeout - time.monotonic()
            if remaining <= 0:
                name = self._receiver.info.file_name
                self._abort_receive()
                self._fail(f"Transfer of '{name}' stalled: nothing received for {timeout}s")
                await self._release_channel()
                return
            await asyncio.sleep(remaining)

    # --- Inbound messages ---

    def _handle_text(self, message: TextMessage) -> None:
        text = message.text
        if message.encrypted:
            key = self._negotiator.key if self._negotiator else None
            try:
                if key is None:
                    raise DecryptionFailed("No session key installed")
                text = decrypt_string(message.text, key)
            except DecryptionFailed as e:
                logger.warning(f"Could not decrypt message from {self.remote_peer_id}: {e}")
                text = DECRYPTION_PLACEHOLDER
        self._emit(
            MessageEvent(
                text=text,
                encrypted=message.encrypted,
                timestamp=message.timestamp,
                from_self=False,
            )
        )
