"""Exception hierarchy shared by the channel, security and transfer layers."""


class PeerBeamError(Exception):
    """Base class for every error raised by peerbeam."""


class ChannelError(PeerBeamError):
    """The underlying channel failed or became unusable."""


class NoActiveConnection(PeerBeamError):
    """An operation needed an open channel and there is none."""

    def __init__(self, message: str = "No active connection") -> None:
        super().__init__(message)


class ProtocolError(PeerBeamError):
    """A frame or message could not be decoded."""


class CryptoUnavailable(PeerBeamError):
    """The AES-GCM primitive cannot be used in this runtime."""


class DecryptionFailed(PeerBeamError):
    """Ciphertext was tampered with, malformed, or sealed with another key."""


class TransferStalled(PeerBeamError):
    """No transfer activity was seen within the stall timeout."""


class InvalidTransition(PeerBeamError):
    """A status change that the state machine does not allow."""

    def __init__(self, current, requested) -> None:
        super().__init__(f"Cannot move from {current.value!r} to {requested.value!r}")
        self.current = current
        self.requested = requested
