"""Shared fixtures for session-level tests."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from helpers import HIGH_ID, LOW_ID
from peerbeam.channel.memory import MemoryNetwork
from peerbeam.transfer.models import SessionOptions
from peerbeam.transfer.session import Session


@pytest.fixture
def network() -> MemoryNetwork:
    return MemoryNetwork()


@pytest.fixture
def options() -> SessionOptions:
    """Small chunks so tests exercise several of them."""
    return SessionOptions(chunk_size=1024, stall_timeout=None)


@pytest.fixture
async def pair(
    network: MemoryNetwork, options: SessionOptions
) -> AsyncIterator[tuple]:
    """Two initialized sessions on one memory network, not yet connected."""
    low = Session(network, options=options, peer_id=LOW_ID)
    high = Session(network, options=options, peer_id=HIGH_ID)
    await low.initialize()
    await high.initialize()
    yield low, high
    await low.destroy()
    await high.destroy()
