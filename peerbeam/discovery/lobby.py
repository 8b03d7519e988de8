"""
Lobby client.

The lobby itself (presence list + broadcast chat) lives in an external
publish/subscribe backend. This module only talks to it through the
LobbyBackend interface: it keeps our entry alive with heartbeats, hides
stale peers, rate limits chat and encrypts chat lines with the key derived
from the lobby-wide secret.
"""

import asyncio
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable

from peerbeam.config import (
    DECRYPTION_PLACEHOLDER,
    LOBBY_HEARTBEAT_INTERVAL,
    LOBBY_HISTORY,
    LOBBY_RATE_LIMIT,
    LOBBY_SECRET,
    LOBBY_STALE_AFTER,
)
from peerbeam.discovery.identity import Identity
from peerbeam.discovery.models import LobbyMessage, LobbyUser, SendResult
from peerbeam.errors import CryptoUnavailable, DecryptionFailed
from peerbeam.security.crypto import decrypt_string, derive_key, encrypt_string

logger = logging.getLogger(__name__)

UsersCallback = Callable[[list[LobbyUser]], None]
MessagesCallback = Callable[[list[LobbyMessage]], None]
Unsubscribe = Callable[[], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class LobbyBackend(ABC):
    """Publish/subscribe interface of the presence service."""

    @abstractmethod
    async def add_user(self, peer_id: str, username: str, timestamp: int) -> str:
        """Publish a presence entry; returns its key."""

    @abstractmethod
    async def touch_user(self, key: str, last_seen: int) -> None: ...

    @abstractmethod
    async def remove_user(self, key: str) -> None: ...

    @abstractmethod
    def subscribe_users(self, callback: UsersCallback) -> Unsubscribe:
        """Call `callback` with every entry now and on each change."""

    @abstractmethod
    async def publish_message(self, message: LobbyMessage) -> None: ...

    @abstractmethod
    def subscribe_messages(self, callback: MessagesCallback, limit: int) -> Unsubscribe:
        """Call `callback` with the last `limit` messages now and on each change."""


class MemoryLobbyBackend(LobbyBackend):
    """Lobby backend kept in process memory, for local use and tests."""

    def __init__(self) -> None:
        self.users: dict[str, LobbyUser] = {}
        self.messages: list[LobbyMessage] = []
        self._user_subscribers: list[UsersCallback] = []
        self._message_subscribers: list[tuple[MessagesCallback, int]] = []

    def _publish_users(self) -> None:
        snapshot = list(self.users.values())
        for cb in list(self._user_subscribers):
            cb(snapshot)

    def _publish_messages(self) -> None:
        for cb, limit in list(self._message_subscribers):
            cb(self.messages[-limit:])

    async def add_user(self, peer_id: str, username: str, timestamp: int) -> str:
        key = uuid.uuid4().hex
        self.users[key] = LobbyUser(key=key, peer_id=peer_id, username=username, timestamp=timestamp)
        self._publish_users()
        return key

    async def touch_user(self, key: str, last_seen: int) -> None:
        user = self.users.get(key)
        if user is None:
            return
        self.users[key] = user.model_copy(update={"last_seen": last_seen})
        self._publish_users()

    async def remove_user(self, key: str) -> None:
        if self.users.pop(key, None) is not None:
            self._publish_users()

    def subscribe_users(self, callback: UsersCallback) -> Unsubscribe:
        self._user_subscribers.append(callback)
        callback(list(self.users.values()))
        return lambda: self._user_subscribers.remove(callback)

    async def publish_message(self, message: LobbyMessage) -> None:
        self.messages.append(message)
        self._publish_messages()

    def subscribe_messages(self, callback: MessagesCallback, limit: int) -> Unsubscribe:
        entry = (callback, limit)
        self._message_subscribers.append(entry)
        callback(self.messages[-limit:])
        return lambda: self._message_subscribers.remove(entry)


class LobbyClient:
    """Our presence and chat in the lobby."""

    def __init__(
        self,
        backend: LobbyBackend,
        identity: Identity,
        secret: str = LOBBY_SECRET,
        rate_limit: float = LOBBY_RATE_LIMIT,
        stale_after: float = LOBBY_STALE_AFTER,
    ) -> None:
        self._backend = backend
        self.identity = identity
        self._secret = secret
        self._rate_limit = rate_limit
        self._stale_after = stale_after
        self._entry_key: str | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._last_message_at: float | None = None
        self._chat_key: bytes | None = None
        self._chat_key_ready = False
        self.users: list[LobbyUser] = []
        self.messages: list[LobbyMessage] = []
        self._on_change: list = []  # callbacks: async def fn(event, data)
        self._unsubscribes: list[Unsubscribe] = []

    @property
    def joined(self) -> bool:
        return self._entry_key is not None

    async def chat_key(self) -> bytes | None:
        """The lobby key, derived once; None when encryption is unavailable."""
        if not self._chat_key_ready:
            try:
                self._chat_key = await asyncio.to_thread(derive_key, self._secret)
            except CryptoUnavailable as e:
                logger.warning(f"Lobby chat will be plaintext: {e}")
                self._chat_key = None
            self._chat_key_ready = True
        return self._chat_key

    def on_change(self, callback) -> None:
        """Register a callback for lobby_users / lobby_messages updates."""
        self._on_change.append(callback)

    async def start(self) -> None:
        """Follow the user list and the chat, keeping `users` and `messages` current."""
        if self._unsubscribes:
            return
        self._unsubscribes.append(self.subscribe_users(self._users_changed))
        self._unsubscribes.append(await self.subscribe_messages(self._messages_changed))

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        await self.leave()

    def _users_changed(self, users: list[LobbyUser]) -> None:
        self.users = users
        self._notify("lobby_users", {"users": [u.model_dump(mode="json") for u in users]})

    def _messages_changed(self, messages: list[LobbyMessage]) -> None:
        self.messages = messages
        self._notify("lobby_messages", {"messages": [m.model_dump(mode="json") for m in messages]})

    def _notify(self, event: str, data: dict) -> None:
        for cb in self._on_change:
            asyncio.ensure_future(cb(event, data))

    # --- Presence ---

    async def join(self, heartbeat_interval: float | None = LOBBY_HEARTBEAT_INTERVAL) -> str:
        if self._entry_key is None:
            self._entry_key = await self._backend.add_user(
                self.identity.peer_id, self.identity.alias, _now_ms()
            )
            logger.info(f"Joined lobby as {self.identity.alias}")
        if heartbeat_interval and self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(heartbeat_interval))
        return self._entry_key

    async def heartbeat(self) -> None:
        if self._entry_key is not None:
            await self._backend.touch_user(self._entry_key, _now_ms())

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error(f"Error updating heartbeat: {e}")

    async def leave(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._entry_key is not None:
            key, self._entry_key = self._entry_key, None
            await self._backend.remove_user(key)
            logger.info("Left lobby")

    def subscribe_users(self, callback: UsersCallback) -> Unsubscribe:
        """Deliver live users, newest first; entries without a recent heartbeat are hidden."""

        def on_users(users: list[LobbyUser]) -> None:
            cutoff = _now_ms() - self._stale_after * 1000
            active = [u for u in users if u.last_active > cutoff]
            active.sort(key=lambda u: u.timestamp, reverse=True)
            callback(active)

        return self._backend.subscribe_users(on_users)

    # --- Chat ---

    async def send_message(self, text: str) -> SendResult:
        now = time.monotonic()
        if self._last_message_at is not None:
            elapsed = now - self._last_message_at
            if elapsed < self._rate_limit:
                wait = math.ceil(self._rate_limit - elapsed)
                return SendResult(
                    success=False,
                    error=f"Please wait {wait}s before sending another message",
                    retry_after=wait,
                )
        self._last_message_at = now

        key = await self.chat_key()
        if key is not None:
            message = LobbyMessage(
                text=encrypt_string(text, key),
                sender_id=self.identity.peer_id,
                sender_name=encrypt_string(self.identity.alias, key),
                timestamp=_now_ms(),
                encrypted=True,
            )
        else:
            message = LobbyMessage(
                text=text,
                sender_id=self.identity.peer_id,
                sender_name=self.identity.alias,
                timestamp=_now_ms(),
                encrypted=False,
            )

        try:
            await self._backend.publish_message(message)
        except Exception as e:
            logger.error(f"Error sending lobby message: {e}")
            return SendResult(success=False, error="Failed to send message")
        return SendResult(success=True)

    async def subscribe_messages(
        self, callback: MessagesCallback, limit: int = LOBBY_HISTORY
    ) -> Unsubscribe:
        """Deliver the latest messages decrypted and in timestamp order."""
        key = await self.chat_key()

        def on_messages(messages: list[LobbyMessage]) -> None:
            callback(sorted((self._open(m, key) for m in messages), key=lambda m: m.timestamp))

        return self._backend.subscribe_messages(on_messages, limit)

    @staticmethod
    def _open(message: LobbyMessage, key: bytes | None) -> LobbyMessage:
        if not message.encrypted:
            return message
        return message.model_copy(
            update={
                "text": _decrypt_or(message.text, key, DECRYPTION_PLACEHOLDER),
                "sender_name": _decrypt_or(message.sender_name, key, "Unknown"),
            }
        )


def _decrypt_or(value: str, key: bytes | None, fallback: str) -> str:
    if key is None:
        return fallback
    try:
        return decrypt_string(value, key)
    except DecryptionFailed as e:
        logger.warning(f"Lobby message could not be decrypted: {e}")
        return fallback
