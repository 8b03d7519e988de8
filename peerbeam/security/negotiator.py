"""
Session key negotiation.

No round trip is needed: both peers compare their identities and the one
whose identity sorts higher generates the key and sends it. The other side
waits for the key_exchange message.
"""

import logging
from enum import Enum

from peerbeam.security.crypto import export_key, generate_key, import_key
from peerbeam.transfer.models import KeyExchangeMessage

logger = logging.getLogger(__name__)


class KeyRole(str, Enum):
    GENERATOR = "generator"
    RECEIVER = "receiver"


def negotiate_role(local_id: str, remote_id: str) -> KeyRole:
    """Decide which side generates the session key."""
    if local_id == remote_id:
        raise ValueError(f"Both peers claim the identity {local_id!r}")
    return KeyRole.GENERATOR if local_id > remote_id else KeyRole.RECEIVER


class KeyNegotiator:
    """Establishes the one session key of a channel."""

    def __init__(self, local_id: str, remote_id: str) -> None:
        self.local_id = local_id
        self.remote_id = remote_id
        self.role = negotiate_role(local_id, remote_id)
        self.key: bytes | None = None

    @property
    def established(self) -> bool:
        return self.key is not None

    def start(self) -> KeyExchangeMessage | None:
        """
        Run the local half of the exchange.

        The generator returns the key_exchange message to put on the channel
        and installs its key; the receiver returns None. Raises
        CryptoUnavailable when no key can be generated.
        """
        if self.role is KeyRole.RECEIVER:
            logger.debug(f"Waiting for session key from {self.remote_id}")
            return None
        key = generate_key()
        message = KeyExchangeMessage(key=export_key(key))
        self.key = key
        logger.info(f"Generated session key for channel with {self.remote_id}")
        return message

    def decline(self) -> KeyExchangeMessage:
        """Build the empty key_exchange a receiver answers with when it cannot decrypt."""
        logger.info(f"Declining session key from {self.remote_id}")
        return KeyExchangeMessage(key="")

    def accept(self, message: KeyExchangeMessage) -> bool:
        """
        Install a key sent by the peer. Returns True if it was installed.

        An empty key sent to the generator is a decline: the generator drops
        its own key so the channel stays plaintext in both directions.
        """
        if self.role is KeyRole.GENERATOR:
            if not message.key and self.key is not None:
                logger.warning(f"{self.remote_id} cannot decrypt; dropping the session key")
                self.key = None
                return False
            logger.warning(f"Ignoring key_exchange from {self.remote_id}: we generate the key")
            return False
        if self.key is not None:
            logger.warning(f"Ignoring repeated key_exchange from {self.remote_id}")
            return False
        try:
            self.key = import_key(message.key)
        except ValueError as e:
            logger.warning(f"Rejected malformed session key from {self.remote_id}: {e}")
            return False
        logger.info(f"Installed session key from {self.remote_id}")
        return True

    def discard(self) -> None:
        self.key = None
