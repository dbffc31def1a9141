"""Metadata and fingerprinting for the pack acceleration index.

The index is derived, rebuildable, never truth. The fingerprint covers
the .idx file of every pack the index claims to cover, so repacking or
deleting a pack makes the index stale and enumeration falls back to a
plain pack scan.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .common import PRODUCER, utc_now_z
from .pack import Pack


# Index schema version - bump when the index format changes
INDEX_SCHEMA_VERSION = 1


@dataclass
class IndexMeta:
    """Metadata for the acceleration index."""

    index_schema_version: int
    packs: list[str]
    object_count: int
    source_fingerprint: str
    built_at: str
    producer: dict

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "schema_name": "objcat.index_meta",
            "index_schema_version": self.index_schema_version,
            "packs": self.packs,
            "object_count": self.object_count,
            "source_fingerprint": self.source_fingerprint,
            "built_at": self.built_at,
            "producer": self.producer,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexMeta":
        """Create from dictionary."""
        return cls(
            index_schema_version=data["index_schema_version"],
            packs=data["packs"],
            object_count=data["object_count"],
            source_fingerprint=data["source_fingerprint"],
            built_at=data["built_at"],
            producer=data["producer"],
        )


def compute_file_hash(filepath: Path) -> str:
    """Compute SHA256 hash of a file's contents.

    Args:
        filepath: Path to the file.

    Returns:
        Hex-encoded SHA256 hash.
    """
    hasher = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_source_fingerprint(packs: Iterable[Pack]) -> str:
    """Compute a stable fingerprint over a set of packs.

    Args:
        packs: Packs covered by the index.

    Returns:
        Hex-encoded combined fingerprint.
    """
    hasher = hashlib.sha256()
    for pack in sorted(packs, key=lambda p: p.name):
        hasher.update(f"pack:{pack.name}:".encode())
        hasher.update(compute_file_hash(pack.fingerprint_path).encode())
    return hasher.hexdigest()


def create_index_meta(packs: list[Pack], object_count: int) -> IndexMeta:
    """Create index metadata for a set of packs."""
    return IndexMeta(
        index_schema_version=INDEX_SCHEMA_VERSION,
        packs=sorted(p.name for p in packs),
        object_count=object_count,
        source_fingerprint=compute_source_fingerprint(packs),
        built_at=utc_now_z(),
        producer=PRODUCER.copy(),
    )


def is_index_valid(meta: Optional[IndexMeta], available: list[Pack]) -> bool:
    """Check whether an index still matches the packs on disk.

    Args:
        meta: Loaded index metadata (None if missing).
        available: Packs currently present in the store.

    Returns:
        True if every covered pack exists with an unchanged index file.
    """
    if meta is None:
        return False
    if meta.index_schema_version != INDEX_SCHEMA_VERSION:
        return False

    by_name = {p.name: p for p in available}
    covered = []
    for name in meta.packs:
        pack = by_name.get(name)
        if pack is None:
            return False
        covered.append(pack)

    return compute_source_fingerprint(covered) == meta.source_fingerprint
