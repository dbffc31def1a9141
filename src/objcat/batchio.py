"""Input records and buffered output shared by every batch mode."""

import logging
from typing import BinaryIO, Iterable, Iterator

from .errors import OutputError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def iter_records(stream: BinaryIO, delim: bytes = b"\n") -> Iterator[str]:
    """Split a binary stream into delimiter-terminated records.

    The delimiter is stripped, and for newline-delimited input a trailing
    carriage return too. A final record without delimiter still counts.
    Records are decoded as UTF-8, keeping undecodable bytes via
    surrogateescape so names round-trip to the output unchanged.

    Args:
        stream: Binary input stream.
        delim: Single-byte record delimiter (b"\\n" or b"\\0").

    Yields:
        Decoded records.
    """
    read = getattr(stream, "read1", stream.read)
    # Pieces of the record still waiting for its delimiter
    partial: list[bytes] = []
    while True:
        chunk = read(READ_CHUNK_SIZE)
        if not chunk:
            break
        *complete, tail = chunk.split(delim)
        if complete:
            partial.append(complete[0])
            complete[0] = b"".join(partial)
            partial = []
            for record in complete:
                yield _decode_record(record, delim)
        if tail:
            partial.append(tail)

    if partial:
        yield _decode_record(b"".join(partial), delim)


def _decode_record(record: bytes, delim: bytes) -> str:
    if delim == b"\n" and record.endswith(b"\r"):
        record = record[:-1]
    return record.decode("utf-8", "surrogateescape")


def encode_name(name: str) -> bytes:
    """Encode a name read by iter_records back to its original bytes."""
    return name.encode("utf-8", "surrogateescape")


class OutputWriter:
    """Writes batch output with an explicit buffering policy.

    When buffering is off every write is flushed to the caller right away.
    When it is on, writes go to the underlying stream and stay in that
    stream's own fixed-size buffer until flush() is called or the buffer
    fills up.
    """

    def __init__(self, stream: BinaryIO, buffered: bool = False, delim: bytes = b"\n"):
        """Initialize the writer.

        Args:
            stream: Binary output stream (e.g. sys.stdout.buffer).
            buffered: Defer flushing until flush() is called.
            delim: Output record delimiter.
        """
        self.stream = stream
        self.buffered = buffered
        self.delim = delim

    def _emit(self, data: bytes) -> None:
        try:
            self.stream.write(data)
        except OSError as e:
            raise OutputError(e)

    def write(self, data: bytes) -> None:
        """Write bytes, honoring the buffering policy."""
        self._emit(data)
        if not self.buffered:
            self.flush()

    def write_record(self, data: bytes) -> None:
        """Write data followed by the record delimiter."""
        self.write(data + self.delim)

    def write_status(self, text: str) -> None:
        """Write a status line and push it to the caller immediately."""
        self._emit(encode_name(text) + self.delim)
        self.flush()

    def write_stream(self, chunks: Iterable[bytes]) -> None:
        """Write content chunk by chunk without joining it in memory."""
        if self.buffered:
            self.flush()
        for chunk in chunks:
            self._emit(chunk)
        if not self.buffered:
            self.flush()

    def flush(self) -> None:
        """Push everything written so far to the caller."""
        try:
            self.stream.flush()
        except OSError as e:
            raise OutputError(e)
