"""LMDB-based acceleration index over a subset of packs.

The index records every object of the packs it covers in native pack
order, so a whole-store walk can stream them without opening each pack
index. Like any acceleration structure it is optional: a missing or
stale index only means enumeration falls back to scanning packs.

Environment layout:
    <store>/indexes/lmdb/
        data.mdb
        lock.mdb
        index_meta.json
"""

import json
import logging
import shutil
import struct
from pathlib import Path
from typing import Iterator, Optional, TYPE_CHECKING

import lmdb
import msgpack

from .index_meta import IndexMeta, create_index_meta, is_index_valid
from .pack import Pack

if TYPE_CHECKING:
    from .cas import ObjectStore, PackLocation

logger = logging.getLogger(__name__)

# DBI names
DBI_OBJECTS_BY_POS = b"objects_by_pos"

ALL_DBIS = [DBI_OBJECTS_BY_POS]

DEFAULT_MAP_SIZE = 1024 * 1024 * 1024

_POS = struct.Struct(">Q")


class IndexEnv:
    """LMDB environment wrapper for the acceleration index."""

    def __init__(self, store_root: Path, readonly: bool = True):
        """Initialize index environment.

        Args:
            store_root: Root directory of the objcat store.
            readonly: Open in read-only mode (default True for enumeration).
        """
        self.store_root = Path(store_root)
        self.index_dir = self.store_root / "indexes" / "lmdb"
        self.meta_path = self.index_dir / "index_meta.json"
        self.readonly = readonly
        self._env: Optional[lmdb.Environment] = None
        self._dbis: dict[bytes, lmdb._Database] = {}

    @property
    def exists(self) -> bool:
        """Check if index directory exists."""
        return self.index_dir.exists() and (self.index_dir / "data.mdb").exists()

    def open(self) -> None:
        """Open the LMDB environment."""
        if self._env is not None:
            return

        if not self.exists and self.readonly:
            raise FileNotFoundError(f"Index not found: {self.index_dir}")

        if not self.readonly:
            self.index_dir.mkdir(parents=True, exist_ok=True)

        self._env = lmdb.open(
            str(self.index_dir),
            map_size=DEFAULT_MAP_SIZE,
            max_dbs=len(ALL_DBIS),
            readonly=self.readonly,
            create=not self.readonly,
            subdir=True,
        )

        for dbi_name in ALL_DBIS:
            self._dbis[dbi_name] = self._env.open_db(
                dbi_name,
                create=not self.readonly,
            )

    def close(self) -> None:
        """Close the LMDB environment."""
        if self._env is not None:
            self._env.close()
            self._env = None
            self._dbis.clear()

    def __enter__(self) -> "IndexEnv":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def get_dbi(self, name: bytes) -> lmdb._Database:
        if name not in self._dbis:
            raise ValueError(f"Unknown DBI: {name}")
        return self._dbis[name]

    @property
    def env(self) -> lmdb.Environment:
        """Get the LMDB environment."""
        if self._env is None:
            raise RuntimeError("Index not open")
        return self._env

    def begin(self, write: bool = False) -> lmdb.Transaction:
        return self.env.begin(write=write)

    def load_meta(self) -> Optional[IndexMeta]:
        """Load index metadata from file.

        Returns:
            IndexMeta if exists and parses, None otherwise.
        """
        if not self.meta_path.exists():
            return None
        try:
            with open(self.meta_path, "r", encoding="utf-8") as f:
                return IndexMeta.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning("ignoring unreadable %s: %s", self.meta_path, e)
            return None

    def save_meta(self, meta: IndexMeta) -> None:
        with open(self.meta_path, "w", encoding="utf-8") as f:
            json.dump(meta.to_dict(), f, indent=2)

    def delete(self) -> None:
        """Delete the entire index directory."""
        self.close()
        if self.index_dir.exists():
            shutil.rmtree(self.index_dir)


class BitmapIndex:
    """Read access to a valid acceleration index."""

    def __init__(self, env: IndexEnv, meta: IndexMeta, packs: list[Pack]):
        self.env = env
        self.meta = meta
        self._packs_by_name = {p.name: p for p in packs if p.name in meta.packs}

    def covers(self, pack: Pack) -> bool:
        """True if the pack's objects are part of this index."""
        return pack.name in self._packs_by_name

    def iter_objects(self) -> Iterator[tuple[str, "PackLocation"]]:
        """Yield (oid, location) for every covered object in pack order."""
        from .cas import PackLocation

        with self.env.begin() as txn:
            cursor = txn.cursor(db=self.env.get_dbi(DBI_OBJECTS_BY_POS))
            for _, value in cursor:
                oid, pack_name, offset = msgpack.unpackb(value, raw=False)
                yield oid, PackLocation(self._packs_by_name[pack_name], offset)

    def close(self) -> None:
        self.env.close()

    def __enter__(self) -> "BitmapIndex":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def open_index(store: "ObjectStore") -> Optional[BitmapIndex]:
    """Open the store's acceleration index if it is present and current.

    Returns:
        BitmapIndex, or None when the index is missing or stale.
    """
    env = IndexEnv(store.store_root, readonly=True)
    if not env.exists:
        return None

    packs = store.packs()
    meta = env.load_meta()
    if not is_index_valid(meta, packs):
        logger.info("acceleration index is stale; falling back to pack scan")
        return None

    try:
        env.open()
    except lmdb.Error as e:
        logger.warning("cannot open acceleration index: %s", e)
        return None
    return BitmapIndex(env, meta, packs)


def build_index(
    store: "ObjectStore",
    packs: Optional[list[Pack]] = None,
    rebuild: bool = False,
) -> dict:
    """Build the acceleration index.

    Args:
        store: Object store to index.
        packs: Packs to cover (default: every pack in the store).
        rebuild: If True, delete any existing index first.

    Returns:
        Build statistics dict.
    """
    if packs is None:
        packs = store.packs()

    env = IndexEnv(store.store_root, readonly=False)
    if env.exists:
        if not rebuild:
            raise FileExistsError(f"Index already exists: {env.index_dir}")
        env.delete()

    env.open()
    try:
        position = 0
        with env.begin(write=True) as txn:
            objects_db = env.get_dbi(DBI_OBJECTS_BY_POS)
            for pack in sorted(packs, key=lambda p: p.name):
                for entry in pack.iter_entries():
                    value = msgpack.packb([entry.oid, pack.name, entry.offset], use_bin_type=True)
                    txn.put(_POS.pack(position), value, db=objects_db)
                    position += 1

        meta = create_index_meta(packs, position)
        env.save_meta(meta)
    finally:
        env.close()

    logger.debug("indexed %d objects from %d packs", position, len(packs))
    return {
        "packs_indexed": len(packs),
        "objects_indexed": position,
        "source_fingerprint": meta.source_fingerprint[:16] + "...",
    }
