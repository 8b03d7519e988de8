"""Writing received files to the save directory."""

import asyncio
import logging
import os

from peerbeam.transfer.models import FileReceivedEvent, ReceivedFile, SessionEvent

logger = logging.getLogger(__name__)


def unique_path(save_dir: str, file_name: str) -> str:
    """
    Path in `save_dir` for `file_name` that does not exist yet.

    Directory parts of the announced name are dropped; clashes get a
    " (n)" suffix before the extension.
    """
    name = os.path.basename(file_name.replace("\\", "/")) or "download"
    stem, ext = os.path.splitext(name)
    candidate = os.path.join(save_dir, name)
    n = 1
    while os.path.exists(candidate):
        candidate = os.path.join(save_dir, f"{stem} ({n}){ext}")
        n += 1
    return candidate


def save_received(received: ReceivedFile, save_dir: str) -> str:
    """Write `received` into `save_dir` and return the path used."""
    os.makedirs(save_dir, exist_ok=True)
    file_path = unique_path(save_dir, received.name)
    # "xb" so a file created between the check and the write is never clobbered
    with open(file_path, "xb") as f:
        f.write(received.data)
    logger.info(f"Saved '{received.name}' to {file_path}")
    return file_path


class FileSaver:
    """Session observer that stores every received file in `save_dir`."""

    def __init__(self, save_dir: str) -> None:
        self._save_dir = save_dir
        self.saved: list[str] = []

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        logger.info(f"Save directory changed to {path}")
        self._save_dir = path

    async def handle_event(self, event: SessionEvent) -> None:
        if not isinstance(event, FileReceivedEvent):
            return
        try:
            path = await asyncio.to_thread(save_received, event.file, self._save_dir)
        except OSError as e:
            logger.error(f"Could not save '{event.file.name}': {e}")
            return
        self.saved.append(path)
