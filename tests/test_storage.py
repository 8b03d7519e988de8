"""Tests for saving received files."""

import pytest

from peerbeam.transfer.models import FileReceivedEvent, ReceivedFile, StatusEvent, Status
from peerbeam.transfer.storage import FileSaver, save_received, unique_path


def _received(name: str, data: bytes = b"data") -> ReceivedFile:
    return ReceivedFile(name=name, mime_type="text/plain", size=len(data), data=data)


class TestUniquePath:
    def test_free_name(self, tmp_path) -> None:
        assert unique_path(str(tmp_path), "a.txt") == str(tmp_path / "a.txt")

    def test_clash_gets_suffix(self, tmp_path) -> None:
        (tmp_path / "a.txt").write_text("x")
        (tmp_path / "a (1).txt").write_text("x")
        assert unique_path(str(tmp_path), "a.txt") == str(tmp_path / "a (2).txt")

    def test_directory_parts_dropped(self, tmp_path) -> None:
        """Announced names must not escape the save directory."""
        assert unique_path(str(tmp_path), "../../etc/passwd") == str(tmp_path / "passwd")
        assert unique_path(str(tmp_path), "..\\evil.exe") == str(tmp_path / "evil.exe")


class TestSaveReceived:
    def test_never_overwrites(self, tmp_path) -> None:
        first = save_received(_received("a.txt", b"one"), str(tmp_path))
        second = save_received(_received("a.txt", b"two"), str(tmp_path))
        assert first != second
        assert (tmp_path / "a.txt").read_bytes() == b"one"
        assert (tmp_path / "a (1).txt").read_bytes() == b"two"

    def test_creates_directory(self, tmp_path) -> None:
        target = tmp_path / "nested" / "dir"
        path = save_received(_received("b.txt"), str(target))
        assert path == str(target / "b.txt")


class TestFileSaver:
    @pytest.mark.asyncio
    async def test_saves_only_received_files(self, tmp_path) -> None:
        saver = FileSaver(str(tmp_path))
        await saver.handle_event(StatusEvent(status=Status.CONNECTED))
        await saver.handle_event(FileReceivedEvent(file=_received("c.txt", b"hello")))
        assert saver.saved == [str(tmp_path / "c.txt")]
        assert (tmp_path / "c.txt").read_bytes() == b"hello"
