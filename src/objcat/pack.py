"""Pack files: many objects consolidated into one container.

A pack lives at objects/pack/pack-<name>.pack with a sibling .idx file.

Pack layout:
    b"OCPK" + version (4 bytes, big-endian)
    entry*

Entry layout:
    header length (4 bytes, big-endian)
    msgpack header: [type, size, delta_base_hex | None]
    zlib payload: raw content, or msgpack delta ops when delta_base is set

The .idx file is a msgpack map whose "objects" list is sorted by identifier:
    [oid, offset, length, type, size, delta_base]
"""

import hashlib
import logging
import os
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import msgpack

from .common import hash_object

logger = logging.getLogger(__name__)

PACK_MAGIC = b"OCPK"
PACK_VERSION = 1
IDX_VERSION = 1

_U32 = struct.Struct(">I")

# Delta op codes
DELTA_COPY = 0
DELTA_INSERT = 1

STREAM_CHUNK_SIZE = 64 * 1024


class PackFormatError(Exception):
    """Raised when a pack or its index is unreadable."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Bad pack {path}: {reason}")


@dataclass(frozen=True)
class PackEntry:
    """Location and metadata of one object inside a pack."""

    oid: str
    offset: int
    length: int
    type: str
    size: int
    delta_base: Optional[str] = None


def make_delta(base: bytes, target: bytes) -> list:
    """Encode target as copy/insert ops against base.

    Shares the longest common prefix and suffix; everything in between
    is inserted literally.
    """
    limit = min(len(base), len(target))
    prefix = 0
    while prefix < limit and base[prefix] == target[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < limit - prefix
        and base[len(base) - 1 - suffix] == target[len(target) - 1 - suffix]
    ):
        suffix += 1

    ops = []
    if prefix:
        ops.append([DELTA_COPY, 0, prefix])
    middle = target[prefix:len(target) - suffix]
    if middle:
        ops.append([DELTA_INSERT, middle])
    if suffix:
        ops.append([DELTA_COPY, len(base) - suffix, suffix])
    return ops


def apply_delta(base: bytes, ops: list) -> bytes:
    """Rebuild content from a base and its delta ops."""
    out = bytearray()
    for op in ops:
        if op[0] == DELTA_COPY:
            _, offset, length = op
            if offset + length > len(base):
                raise ValueError("delta copy out of range")
            out += base[offset:offset + length]
        elif op[0] == DELTA_INSERT:
            out += op[1]
        else:
            raise ValueError(f"unknown delta op: {op[0]}")
    return bytes(out)


class Pack:
    """Read access to one pack and its index."""

    def __init__(self, pack_path: Path):
        """Initialize the pack reader.

        Args:
            pack_path: Path to the .pack file (the .idx must sit beside it).
        """
        self.pack_path = Path(pack_path)
        self.idx_path = self.pack_path.with_suffix(".idx")
        self.name = self.pack_path.stem
        self._by_oid: Optional[dict[str, PackEntry]] = None
        self._by_offset: Optional[dict[int, PackEntry]] = None

    def __repr__(self) -> str:
        return f"Pack({self.name!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Pack) and other.pack_path == self.pack_path

    def __hash__(self) -> int:
        return hash(self.pack_path)

    def _load_index(self) -> None:
        if self._by_oid is not None:
            return

        try:
            with open(self.idx_path, "rb") as f:
                idx = msgpack.unpackb(f.read(), raw=False)
        except (OSError, ValueError, msgpack.ExtraData) as e:
            raise PackFormatError(self.idx_path, str(e))

        if idx.get("version") != IDX_VERSION:
            raise PackFormatError(self.idx_path, f"unsupported version {idx.get('version')}")

        by_oid = {}
        by_offset = {}
        for oid, offset, length, obj_type, size, base in idx["objects"]:
            entry = PackEntry(oid, offset, length, obj_type, size, base)
            by_oid[oid] = entry
            by_offset[offset] = entry

        self._by_oid = by_oid
        self._by_offset = by_offset

    @property
    def fingerprint_path(self) -> Path:
        """File whose content identifies this pack for index validation."""
        return self.idx_path

    def __len__(self) -> int:
        self._load_index()
        return len(self._by_oid)

    def __contains__(self, oid: str) -> bool:
        self._load_index()
        return oid in self._by_oid

    def find(self, oid: str) -> Optional[PackEntry]:
        """Look up an entry by identifier."""
        self._load_index()
        return self._by_oid.get(oid)

    def entry_at(self, offset: int) -> PackEntry:
        """Look up an entry by its byte offset.

        Raises:
            KeyError: If no entry starts at that offset.
        """
        self._load_index()
        return self._by_offset[offset]

    def oids(self) -> Iterator[str]:
        """Identifiers in index (sorted) order."""
        self._load_index()
        return iter(self._by_oid)

    def iter_entries(self) -> Iterator[PackEntry]:
        """Entries in pack (offset) order."""
        self._load_index()
        for offset in sorted(self._by_offset):
            yield self._by_offset[offset]

    def _open_payload(self, entry: PackEntry):
        f = open(self.pack_path, "rb")
        try:
            f.seek(entry.offset)
            (header_len,) = _U32.unpack(f.read(_U32.size))
            f.seek(header_len, os.SEEK_CUR)
        except Exception:
            f.close()
            raise
        payload_len = entry.length - _U32.size - header_len
        return f, payload_len

    def read_payload(self, entry: PackEntry) -> bytes:
        """Read and inflate the stored payload of an entry."""
        f, payload_len = self._open_payload(entry)
        with f:
            compressed = f.read(payload_len)
        try:
            return zlib.decompress(compressed)
        except zlib.error as e:
            raise PackFormatError(self.pack_path, f"corrupt entry at {entry.offset}: {e}")

    def read_delta_ops(self, entry: PackEntry) -> list:
        """Decode the delta ops of a delta entry."""
        return msgpack.unpackb(self.read_payload(entry), raw=False)

    def stream_payload(
        self, entry: PackEntry, chunk_size: int = STREAM_CHUNK_SIZE
    ) -> Iterator[bytes]:
        """Inflate a non-delta entry chunk by chunk."""
        f, remaining = self._open_payload(entry)
        inflater = zlib.decompressobj()
        with f:
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    raise PackFormatError(self.pack_path, f"truncated entry at {entry.offset}")
                remaining -= len(chunk)
                data = inflater.decompress(chunk)
                if data:
                    yield data
        tail = inflater.flush()
        if tail:
            yield tail


class PackWriter:
    """Accumulates objects and writes them out as a single pack."""

    def __init__(self, pack_dir: Path):
        """Initialize the writer.

        Args:
            pack_dir: Directory that receives the .pack and .idx files.
        """
        self.pack_dir = Path(pack_dir)
        self._pending: list[tuple[str, str, int, Optional[str], bytes]] = []
        self._seen: set[str] = set()

    def add(
        self,
        obj_type: str,
        data: bytes,
        delta_base: Optional[str] = None,
        base_data: Optional[bytes] = None,
    ) -> str:
        """Queue an object for packing.

        Args:
            obj_type: Object type.
            data: Raw object content.
            delta_base: Identifier to store this object as a delta against.
            base_data: Content of delta_base (required with delta_base).

        Returns:
            The object identifier.
        """
        oid = hash_object(obj_type, data)
        if oid in self._seen:
            return oid

        if delta_base is not None:
            if base_data is None:
                raise ValueError("base_data is required for delta entries")
            payload = msgpack.packb(make_delta(base_data, data), use_bin_type=True)
        else:
            payload = data

        self._pending.append((oid, obj_type, len(data), delta_base, payload))
        self._seen.add(oid)
        return oid

    def __len__(self) -> int:
        return len(self._pending)

    def write(self) -> Pack:
        """Write the pack and its index atomically.

        Returns:
            A Pack reader for the new pack.
        """
        if not self._pending:
            raise ValueError("no objects to pack")

        self.pack_dir.mkdir(parents=True, exist_ok=True)
        name = hashlib.sha256(
            "".join(sorted(p[0] for p in self._pending)).encode("ascii")
        ).hexdigest()
        pack_path = self.pack_dir / f"pack-{name}.pack"
        idx_path = pack_path.with_suffix(".idx")

        entries = []
        body = bytearray(PACK_MAGIC + _U32.pack(PACK_VERSION))
        for oid, obj_type, size, base, payload in self._pending:
            header = msgpack.packb([obj_type, size, base], use_bin_type=True)
            compressed = zlib.compress(payload)
            offset = len(body)
            body += _U32.pack(len(header)) + header + compressed
            entries.append([oid, offset, len(body) - offset, obj_type, size, base])

        entries.sort(key=lambda e: e[0])
        idx = msgpack.packb(
            {"version": IDX_VERSION, "objects": entries},
            use_bin_type=True,
        )

        # Pack first, index last: a pack without an index is never listed
        for path, data in ((pack_path, bytes(body)), (idx_path, idx)):
            temp_path = path.with_suffix(f"{path.suffix}.tmp.{os.getpid()}")
            try:
                temp_path.write_bytes(data)
                temp_path.replace(path)
            except Exception:
                if temp_path.exists():
                    temp_path.unlink()
                raise

        logger.debug("wrote %s with %d objects", pack_path.name, len(entries))
        self._pending.clear()
        self._seen.clear()
        return Pack(pack_path)
