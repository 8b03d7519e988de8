"""
Connection/transfer state machine.

Holds the one authoritative Status of a session. Transitions are requested
by the session in response to channel events and transfer completion;
anything outside TRANSITIONS is rejected.
"""

import logging
from typing import Callable

from peerbeam.errors import InvalidTransition
from peerbeam.transfer.models import Status

logger = logging.getLogger(__name__)

TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.IDLE: frozenset({Status.WAITING, Status.CONNECTING, Status.ERROR}),
    Status.WAITING: frozenset(
        {Status.CONNECTING, Status.CONNECTED, Status.DISCONNECTED, Status.ERROR}
    ),
    Status.CONNECTING: frozenset({Status.CONNECTED, Status.DISCONNECTED, Status.ERROR}),
    Status.CONNECTED: frozenset(
        {Status.TRANSFERRING, Status.CONNECTING, Status.DISCONNECTED, Status.ERROR}
    ),
    Status.TRANSFERRING: frozenset({Status.CONNECTED, Status.DISCONNECTED, Status.ERROR}),
    Status.DISCONNECTED: frozenset(
        {Status.WAITING, Status.CONNECTING, Status.CONNECTED, Status.ERROR}
    ),
    Status.ERROR: frozenset(
        {Status.WAITING, Status.CONNECTING, Status.CONNECTED, Status.DISCONNECTED}
    ),
}


class StatusMachine:
    """Tracks Status and notifies a listener on every effective change."""

    def __init__(self, on_change: Callable[[Status], None] | None = None) -> None:
        self._status = Status.IDLE
        self._on_change = on_change

    @property
    def status(self) -> Status:
        return self._status

    def can_transition(self, new_status: Status) -> bool:
        return new_status == self._status or new_status in TRANSITIONS[self._status]

    def transition(self, new_status: Status) -> bool:
        """
        Move to `new_status`.

        Returns False for a same-state request (nothing is emitted) and
        raises InvalidTransition for a change the machine does not allow.
        """
        if new_status == self._status:
            return False
        if new_status not in TRANSITIONS[self._status]:
            raise InvalidTransition(self._status, new_status)
        logger.debug(f"Status {self._status.value} -> {new_status.value}")
        self._status = new_status
        if self._on_change:
            self._on_change(new_status)
        return True

    def reset(self) -> None:
        """Return to IDLE from any state (session teardown)."""
        if self._status == Status.IDLE:
            return
        self._status = Status.IDLE
        if self._on_change:
            self._on_change(Status.IDLE)
