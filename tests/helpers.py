"""Helpers shared by the session tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from peerbeam.transfer.models import SessionEvent, Status
from peerbeam.transfer.session import Session

# Fixed ids so the key generator is known: "ZZZZZZ" sorts higher
LOW_ID = "AAAAAA"
HIGH_ID = "ZZZZZZ"


class EventLog:
    """Collects every event a session emits."""

    def __init__(self, session: Session) -> None:
        self.events: list[SessionEvent] = []
        session.subscribe(self.events.append)

    def of_kind(self, kind: str) -> list:
        return [e for e in self.events if e.kind == kind]

    def statuses(self) -> list[Status]:
        return [e.status for e in self.of_kind("status")]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


async def connect(initiator: Session, target: Session) -> None:
    """Connect two sessions and wait until both report connected."""
    await initiator.connect(target.peer_id)
    await wait_for(lambda: initiator.status == Status.CONNECTED)
    await wait_for(lambda: target.status == Status.CONNECTED)
