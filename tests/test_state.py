"""Tests for the connection/transfer status machine."""

import pytest

from peerbeam.errors import InvalidTransition
from peerbeam.transfer.models import Status
from peerbeam.transfer.state import TRANSITIONS, StatusMachine


class TestStatusMachine:
    """Tests for allowed and rejected status changes."""

    def test_starts_idle(self) -> None:
        assert StatusMachine().status == Status.IDLE

    def test_happy_path(self) -> None:
        """A full connect/transfer/disconnect cycle should be allowed."""
        changes: list[Status] = []
        machine = StatusMachine(changes.append)
        for status in (
            Status.WAITING,
            Status.CONNECTING,
            Status.CONNECTED,
            Status.TRANSFERRING,
            Status.CONNECTED,
            Status.DISCONNECTED,
        ):
            assert machine.transition(status) is True
        assert changes == [
            Status.WAITING,
            Status.CONNECTING,
            Status.CONNECTED,
            Status.TRANSFERRING,
            Status.CONNECTED,
            Status.DISCONNECTED,
        ]

    def test_same_state_is_noop(self) -> None:
        """Requesting the current status should not notify."""
        changes: list[Status] = []
        machine = StatusMachine(changes.append)
        machine.transition(Status.WAITING)
        assert machine.transition(Status.WAITING) is False
        assert changes == [Status.WAITING]

    def test_invalid_transition_raises(self) -> None:
        """Transferring straight from idle is not allowed."""
        machine = StatusMachine()
        with pytest.raises(InvalidTransition) as exc_info:
            machine.transition(Status.TRANSFERRING)
        assert exc_info.value.current == Status.IDLE
        assert exc_info.value.requested == Status.TRANSFERRING
        assert machine.status == Status.IDLE

    def test_error_reachable_from_everywhere(self) -> None:
        """Every non-error status should be able to fail."""
        for status, allowed in TRANSITIONS.items():
            if status != Status.ERROR:
                assert Status.ERROR in allowed

    def test_recover_from_error(self) -> None:
        """A failed session can reconnect."""
        machine = StatusMachine()
        machine.transition(Status.ERROR)
        assert machine.can_transition(Status.CONNECTING)
        assert not machine.can_transition(Status.TRANSFERRING)

    def test_reset(self) -> None:
        """Reset should return to idle from anywhere and notify once."""
        changes: list[Status] = []
        machine = StatusMachine(changes.append)
        machine.transition(Status.ERROR)
        machine.reset()
        machine.reset()
        assert machine.status == Status.IDLE
        assert changes == [Status.ERROR, Status.IDLE]
