"""Tests for the batch-command protocol."""

import io
from pathlib import Path

import pytest

from objcat.batchio import OutputWriter
from objcat.cas import ObjectStore
from objcat.config import BatchConfig, BatchMode
from objcat.errors import ProtocolError
from objcat.protocol import CommandProtocol, Contents, Flush, Info, parse_command
from objcat.query import ObjectQuery
from objcat.store import init_store


@pytest.fixture
def store(tmp_path: Path) -> ObjectStore:
    root = tmp_path / "store"
    init_store(root)
    return ObjectStore(root)


@pytest.fixture
def blobs(store: ObjectStore) -> dict:
    return {name: store.put_object("blob", name.encode()) for name in ("A", "BB", "CCC")}


def make_protocol(store: ObjectStore, **kwargs) -> tuple[CommandProtocol, io.BytesIO]:
    config = BatchConfig(mode=BatchMode.QUEUE_AND_DISPATCH, **kwargs)
    out = io.BytesIO()
    writer = OutputWriter(out, buffered=config.buffer_output, delim=config.output_delim)
    return CommandProtocol(ObjectQuery(store, config, writer), config), out


def observed(lines: list[str], out: io.BytesIO, snapshots: list[bytes]):
    """Yield lines, recording the output seen before each one is read."""
    for line in lines:
        snapshots.append(out.getvalue())
        yield line


class TestParseCommand:
    """Tests for parse_command."""

    def test_contents(self):
        assert parse_command("contents HEAD:file") == Contents("HEAD:file")

    def test_info_keeps_spaces_in_argument(self):
        assert parse_command("info abc def") == Info("abc def")

    def test_flush(self):
        assert parse_command("flush") == Flush()

    @pytest.mark.parametrize(
        "line,message",
        [
            ("", "empty command in input"),
            (" contents x", "whitespace before command: ' contents x'"),
            ("\tinfo x", "whitespace before command: '\tinfo x'"),
            ("fetch x", "unknown command: 'fetch x'"),
            ("contents", "contents requires arguments"),
            ("info", "info requires arguments"),
            ("flush now", "flush takes no arguments"),
        ],
    )
    def test_rejections(self, line: str, message: str):
        with pytest.raises(ProtocolError) as exc_info:
            parse_command(line)
        assert str(exc_info.value) == message


class TestUnbuffered:
    """Without --buffer commands run as they are read."""

    def test_info_and_contents(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store)
        protocol.run([f"info {blobs['A']}", f"contents {blobs['BB']}"])
        assert out.getvalue() == (
            f"{blobs['A']} blob 1\n{blobs['BB']} blob 2\nBB\n".encode()
        )

    def test_missing_reported(self, store: ObjectStore):
        protocol, out = make_protocol(store)
        protocol.run(["info nothing-here"])
        assert out.getvalue() == b"nothing-here missing\n"

    def test_output_visible_before_next_command(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store)
        snapshots = []
        protocol.run(observed([f"info {blobs['A']}", f"info {blobs['BB']}"], out, snapshots))
        assert snapshots[1] == f"{blobs['A']} blob 1\n".encode()

    def test_flush_rejected(self, store: ObjectStore):
        protocol, _ = make_protocol(store)
        with pytest.raises(ProtocolError) as exc_info:
            protocol.run(["flush"])
        assert str(exc_info.value) == "flush is only for --buffer mode"

    def test_error_stops_after_earlier_output(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store)
        with pytest.raises(ProtocolError):
            protocol.run([f"info {blobs['A']}", "bogus", f"info {blobs['BB']}"])
        assert out.getvalue() == f"{blobs['A']} blob 1\n".encode()


class TestBuffered:
    """With --buffer commands queue until flush."""

    def test_dispatch_ordering(self, store: ObjectStore, blobs: dict):
        """A and B appear at flush, C only at end of input."""
        protocol, out = make_protocol(store, buffer_output=True)
        lines = [f"info {blobs['A']}", f"contents {blobs['BB']}", "flush", f"info {blobs['CCC']}"]
        snapshots = []
        protocol.run(observed(lines, out, snapshots))

        a_and_b = f"{blobs['A']} blob 1\n{blobs['BB']} blob 2\nBB\n".encode()
        assert snapshots[2] == b""
        assert snapshots[3] == a_and_b
        assert out.getvalue() == a_and_b + f"{blobs['CCC']} blob 3\n".encode()

    def test_queue_preserves_arrival_order(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store, buffer_output=True)
        protocol.run([
            f"contents {blobs['CCC']}",
            "info missing-name",
            f"info {blobs['A']}",
            "flush",
        ])
        assert out.getvalue() == (
            f"{blobs['CCC']} blob 3\nCCC\nmissing-name missing\n{blobs['A']} blob 1\n".encode()
        )
        assert protocol.pending == []

    def test_no_flush_on_exit_drops_queue(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store, buffer_output=True, flush_on_exit=False)
        protocol.run([f"info {blobs['A']}", "flush", f"info {blobs['BB']}"])
        assert out.getvalue() == f"{blobs['A']} blob 1\n".encode()
        assert protocol.pending == []

    def test_repeated_flush(self, store: ObjectStore, blobs: dict):
        protocol, out = make_protocol(store, buffer_output=True)
        protocol.run(["flush", f"info {blobs['A']}", "flush", "flush"])
        assert out.getvalue() == f"{blobs['A']} blob 1\n".encode()
