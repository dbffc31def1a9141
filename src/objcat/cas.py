"""Content-Addressed Storage (CAS) object store.

Loose objects are stored at: objects/sha256/<aa>/<bb>/<full_hash>
Where <aa> and <bb> are the first two byte pairs of the hex hash.
Each loose file holds zlib("<type> <size>\\0" + content); the identifier
is the SHA-256 of the uncompressed bytes.

Packed objects live in objects/pack (see pack.py). Replacement refs in
refs/replace/<hex> redirect one identifier to another on read.
"""

import logging
import os
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, TYPE_CHECKING

from .common import (
    HEX_LENGTH,
    NULL_OID,
    OBJECT_TYPES,
    hash_object,
    is_full_oid,
    object_header,
)
from .pack import Pack, PackEntry, PackWriter, apply_delta

if TYPE_CHECKING:
    from .bitmap import BitmapIndex
    from .format import QueryRequirements

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024

# Longest chain of replace refs followed before giving up
MAX_REPLACE_DEPTH = 5


class ObjectNotFoundError(Exception):
    """Raised when an object is not found in the store."""

    def __init__(self, oid: str):
        self.oid = oid
        super().__init__(f"Object not found: {oid}")


class CorruptObjectError(Exception):
    """Raised when a stored object cannot be decoded."""

    def __init__(self, oid: str, reason: str):
        self.oid = oid
        self.reason = reason
        super().__init__(f"Corrupt object {oid}: {reason}")


@dataclass(frozen=True)
class PackLocation:
    """Physical position of a packed object."""

    pack: Pack
    offset: int


@dataclass
class ObjectInfo:
    """Metadata answered by the store; unrequested fields stay None."""

    type: Optional[str] = None
    size: Optional[int] = None
    disk_size: Optional[int] = None
    delta_base: Optional[str] = None


def _parse_header(oid: str, header: bytes) -> tuple[str, int]:
    try:
        obj_type, size = header.decode("ascii").split(" ")
        size = int(size)
    except ValueError:
        raise CorruptObjectError(oid, "bad header")
    if obj_type not in OBJECT_TYPES:
        raise CorruptObjectError(oid, f"unknown type {obj_type!r}")
    return obj_type, size


class ObjectStore:
    """Content-addressed object store using SHA-256."""

    def __init__(self, store_root: Path):
        """Initialize the object store.

        Args:
            store_root: Root directory of the objcat store.
        """
        self.store_root = Path(store_root)
        self.objects_dir = self.store_root / "objects" / "sha256"
        self.pack_dir = self.store_root / "objects" / "pack"
        self.replace_dir = self.store_root / "refs" / "replace"
        self._packs: Optional[list[Pack]] = None

    def _hex_to_path(self, hex_hash: str) -> Path:
        """Get the filesystem path for a loose object."""
        return self.objects_dir / hex_hash[:2] / hex_hash[2:4] / hex_hash

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def put_object(self, obj_type: str, data: bytes) -> str:
        """Store an object as a loose file and return its identifier.

        Args:
            obj_type: One of blob, tree, commit, tag.
            data: Raw object content.

        Returns:
            64-character hex identifier.
        """
        oid = hash_object(obj_type, data)
        object_path = self._hex_to_path(oid)

        # Dedupe: if object already exists, skip write
        if object_path.exists():
            return oid

        object_path.parent.mkdir(parents=True, exist_ok=True)

        compressed = zlib.compress(object_header(obj_type, len(data)) + data)
        temp_path = object_path.with_suffix(f".tmp.{os.getpid()}")
        try:
            temp_path.write_bytes(compressed)
            try:
                temp_path.replace(object_path)
            except OSError:
                # Another writer produced the same object first
                if object_path.exists():
                    if temp_path.exists():
                        temp_path.unlink()
                else:
                    raise
        except Exception:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
            raise

        return oid

    def add_replace(self, oid: str, replacement: str) -> None:
        """Serve replacement whenever oid is read with replace lookup on."""
        self.replace_dir.mkdir(parents=True, exist_ok=True)
        (self.replace_dir / oid).write_text(replacement + "\n", encoding="ascii")

    def pack_loose(self, prune: bool = False) -> Optional[Pack]:
        """Move every loose object into one new pack.

        Args:
            prune: Delete loose copies once the pack is written.

        Returns:
            The new Pack, or None if there were no loose objects.
        """
        writer = PackWriter(self.pack_dir)
        loose = list(self.iter_loose())
        for oid in loose:
            obj_type, data = self._read_loose(oid)
            writer.add(obj_type, data)

        if not len(writer):
            return None

        pack = writer.write()
        self._packs = None

        if prune:
            for oid in loose:
                self._hex_to_path(oid).unlink()
        return pack

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def has_loose(self, oid: str) -> bool:
        return self._hex_to_path(oid).exists()

    def has(self, oid: str) -> bool:
        """Check if an object exists, loose or packed."""
        if not is_full_oid(oid):
            return False
        return self.has_loose(oid) or self._find_packed(oid) is not None

    def iter_loose(self) -> Iterator[str]:
        """Yield identifiers of all loose objects in directory order."""
        if not self.objects_dir.exists():
            return
        for aa in sorted(self.objects_dir.iterdir()):
            if not aa.is_dir():
                continue
            for bb in sorted(aa.iterdir()):
                if not bb.is_dir():
                    continue
                for obj in sorted(bb.iterdir()):
                    if is_full_oid(obj.name):
                        yield obj.name

    def packs(self) -> list[Pack]:
        """All packs that have an index, in name order."""
        if self._packs is None:
            if self.pack_dir.exists():
                self._packs = [
                    Pack(p)
                    for p in sorted(self.pack_dir.glob("pack-*.pack"))
                    if p.with_suffix(".idx").exists()
                ]
            else:
                self._packs = []
        return self._packs

    def iter_pack(self, pack: Pack) -> Iterator[tuple[str, PackLocation]]:
        """Yield (oid, location) for one pack in pack order."""
        for entry in pack.iter_entries():
            yield entry.oid, PackLocation(pack, entry.offset)

    def iter_packed(self) -> Iterator[tuple[str, PackLocation]]:
        """Yield (oid, location) for every packed object, pack by pack."""
        for pack in self.packs():
            yield from self.iter_pack(pack)

    def find_prefix(self, prefix: str) -> list[str]:
        """Find every identifier that starts with a hex prefix."""
        prefix = prefix.lower()
        matches = set()

        if len(prefix) >= 4:
            shard = self.objects_dir / prefix[:2] / prefix[2:4]
            if shard.exists():
                matches.update(p.name for p in shard.iterdir() if p.name.startswith(prefix))
        else:
            matches.update(oid for oid in self.iter_loose() if oid.startswith(prefix))

        for pack in self.packs():
            matches.update(oid for oid in pack.oids() if oid.startswith(prefix))

        return sorted(matches)

    def open_index(self) -> Optional["BitmapIndex"]:
        """Open the acceleration index if one exists and is current."""
        from .bitmap import open_index

        return open_index(self)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def lookup_replace(self, oid: str) -> str:
        """Follow replace refs from oid to the identifier actually served."""
        seen = {oid}
        current = oid
        for _ in range(MAX_REPLACE_DEPTH):
            ref_path = self.replace_dir / current
            if not ref_path.exists():
                return current
            target = ref_path.read_text(encoding="ascii").strip()
            if len(target) != HEX_LENGTH or target in seen:
                raise CorruptObjectError(oid, "replace ref loop or bad target")
            seen.add(target)
            current = target
        raise CorruptObjectError(oid, "replace depth too high")

    def _find_packed(self, oid: str) -> Optional[PackLocation]:
        for pack in self.packs():
            entry = pack.find(oid)
            if entry is not None:
                return PackLocation(pack, entry.offset)
        return None

    def _read_loose_header(self, oid: str, path: Path) -> tuple[str, int]:
        inflater = zlib.decompressobj()
        buf = b""
        with open(path, "rb") as f:
            while b"\0" not in buf:
                chunk = f.read(512)
                if not chunk:
                    raise CorruptObjectError(oid, "truncated header")
                buf += inflater.decompress(chunk)
        return _parse_header(oid, buf.split(b"\0", 1)[0])

    def _read_loose(self, oid: str) -> tuple[str, bytes]:
        path = self._hex_to_path(oid)
        try:
            raw = zlib.decompress(path.read_bytes())
        except FileNotFoundError:
            raise ObjectNotFoundError(oid)
        except zlib.error as e:
            raise CorruptObjectError(oid, str(e))
        header, _, data = raw.partition(b"\0")
        obj_type, size = _parse_header(oid, header)
        if size != len(data):
            raise CorruptObjectError(oid, "size mismatch")
        return obj_type, data

    def read_info(
        self,
        oid: str,
        requirements: Optional["QueryRequirements"] = None,
        lookup_replace: bool = True,
    ) -> ObjectInfo:
        """Read the metadata of an object.

        Only the fields named by requirements are filled in; passing None
        fills in everything.

        Args:
            oid: Object identifier.
            requirements: Fields to populate.
            lookup_replace: Follow replace refs first.

        Returns:
            ObjectInfo with the requested fields set.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        if lookup_replace:
            oid = self.lookup_replace(oid)

        path = self._hex_to_path(oid)
        if path.exists():
            info = ObjectInfo()
            want_type = requirements is None or requirements.type
            want_size = requirements is None or requirements.size
            if want_type or want_size:
                obj_type, size = self._read_loose_header(oid, path)
                if want_type:
                    info.type = obj_type
                if want_size:
                    info.size = size
            if requirements is None or requirements.disk_size:
                info.disk_size = path.stat().st_size
            if requirements is None or requirements.delta_base:
                info.delta_base = NULL_OID
            return info

        location = self._find_packed(oid)
        if location is None:
            raise ObjectNotFoundError(oid)
        return self.read_info_at(location, requirements)

    def read_info_at(
        self,
        location: PackLocation,
        requirements: Optional["QueryRequirements"] = None,
    ) -> ObjectInfo:
        """Read metadata directly from a known pack position."""
        entry = location.pack.entry_at(location.offset)
        info = ObjectInfo()
        if requirements is None or requirements.type:
            info.type = entry.type
        if requirements is None or requirements.size:
            info.size = entry.size
        if requirements is None or requirements.disk_size:
            info.disk_size = entry.length
        if requirements is None or requirements.delta_base:
            info.delta_base = entry.delta_base or NULL_OID
        return info

    def _read_packed(self, entry: PackEntry, pack: Pack, depth: int = 0) -> bytes:
        if entry.delta_base is None:
            data = pack.read_payload(entry)
        else:
            if depth > 50:
                raise CorruptObjectError(entry.oid, "delta chain too long")
            base = self._read_any(entry.delta_base, depth + 1)[1]
            data = apply_delta(base, pack.read_delta_ops(entry))
        if len(data) != entry.size:
            raise CorruptObjectError(entry.oid, "size mismatch")
        return data

    def _read_any(self, oid: str, depth: int = 0) -> tuple[str, bytes]:
        if self.has_loose(oid):
            return self._read_loose(oid)
        location = self._find_packed(oid)
        if location is None:
            raise ObjectNotFoundError(oid)
        entry = location.pack.entry_at(location.offset)
        return entry.type, self._read_packed(entry, location.pack, depth)

    def read_object(self, oid: str, lookup_replace: bool = True) -> tuple[str, bytes]:
        """Read an object whole.

        Returns:
            Tuple of (type, content).

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        if lookup_replace:
            oid = self.lookup_replace(oid)
        return self._read_any(oid)

    def stream_object(
        self,
        oid: str,
        lookup_replace: bool = True,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        """Yield the content of an object without holding it all in memory.

        Delta entries have to be rebuilt from their base, so only loose
        objects and non-delta packed entries are truly streamed.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        if lookup_replace:
            oid = self.lookup_replace(oid)

        path = self._hex_to_path(oid)
        if path.exists():
            return self._stream_loose(oid, path, chunk_size)

        location = self._find_packed(oid)
        if location is None:
            raise ObjectNotFoundError(oid)
        entry = location.pack.entry_at(location.offset)
        if entry.delta_base is not None:
            return iter([self._read_packed(entry, location.pack)])
        return location.pack.stream_payload(entry, chunk_size)

    def _stream_loose(self, oid: str, path: Path, chunk_size: int) -> Iterator[bytes]:
        inflater = zlib.decompressobj()
        in_header = True
        pending = b""
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                data = inflater.decompress(chunk)
                if in_header:
                    pending += data
                    if b"\0" not in pending:
                        continue
                    _, _, data = pending.partition(b"\0")
                    in_header = False
                if data:
                    yield data
        tail = inflater.flush()
        if in_header:
            raise CorruptObjectError(oid, "truncated header")
        if tail:
            yield tail
