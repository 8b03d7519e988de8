"""
Local peer identities.

Peer ids are short, random and ephemeral: a new one is drawn for every
session and never persisted. The alias is the display name used in the
lobby.
"""

import logging
import secrets
import string

from peerbeam.config import PEER_ID_LENGTH

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_uppercase

ADJECTIVES = [
    "Neon", "Cosmic", "Turbo", "Silent", "Electric", "Quantum",
    "Hidden", "Mystic", "Clever", "Swift", "Brave", "Pixel",
    "Sneaky", "Bold", "Lucky", "Happy", "Fierce", "Calm"
]

ANIMALS = [
    "Fox", "Panda", "Gopher", "Bear", "Snail", "Owl",
    "Wolf", "Tiger", "Hawk", "Dolphin", "Penguin", "Falcon",
    "Eagle", "Lion", "Shark", "Whale", "Octopus", "Duck"
]


def generate_peer_id(length: int = PEER_ID_LENGTH) -> str:
    """Random upper-case base-36 id, e.g. 'K3Z9QA'."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_alias() -> str:
    return f"{secrets.choice(ADJECTIVES)} {secrets.choice(ANIMALS)}"


class Identity:
    """The current node's ephemeral peer id and alias."""

    def __init__(self, peer_id: str | None = None, alias: str | None = None) -> None:
        self.peer_id = peer_id or generate_peer_id()
        self.alias = alias or generate_alias()
        logger.info(f"Initialized identity {self.peer_id} with alias: {self.alias}")
