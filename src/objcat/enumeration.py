"""Whole-store enumeration for --batch-all-objects.

Produces every distinct identifier in the store exactly once, however
many loose files and packs hold a copy of it.

Ordered mode gathers everything first and yields sorted identifiers.
Unordered mode streams: loose objects first, then the packs covered by
the acceleration index in index order, then any uncovered packs, all
gated by one SeenSet.
"""

import logging
from typing import Iterable, Iterator, Optional

from .cas import ObjectStore, PackLocation

logger = logging.getLogger(__name__)

Enumerated = tuple[str, Optional[PackLocation]]


class SeenSet:
    """Identifiers already emitted during one enumeration."""

    def __init__(self):
        self._seen: set[str] = set()

    def insert(self, oid: str) -> bool:
        """Add oid; True if it was not present before."""
        if oid in self._seen:
            return False
        self._seen.add(oid)
        return True

    def __contains__(self, oid: str) -> bool:
        return oid in self._seen

    def __len__(self) -> int:
        return len(self._seen)


def _gated(items: Iterable[Enumerated], seen: SeenSet) -> Iterator[Enumerated]:
    for oid, location in items:
        if seen.insert(oid):
            yield oid, location


def _loose(store: ObjectStore) -> Iterator[Enumerated]:
    for oid in store.iter_loose():
        yield oid, None


def iter_packed_sources(store: ObjectStore) -> Iterator[Enumerated]:
    """Packed objects, using the acceleration index where it applies."""
    index = store.open_index()
    if index is None:
        logger.debug("no acceleration index; scanning %d packs", len(store.packs()))
        yield from store.iter_packed()
        return

    with index:
        logger.debug("using acceleration index over %d packs", len(index.meta.packs))
        yield from index.iter_objects()
        for pack in store.packs():
            if index.covers(pack):
                continue
            yield from store.iter_pack(pack)


def iter_unordered(store: ObjectStore) -> Iterator[Enumerated]:
    """Stream distinct identifiers in storage order with location hints."""
    seen = SeenSet()
    yield from _gated(_loose(store), seen)
    yield from _gated(iter_packed_sources(store), seen)


def iter_ordered(store: ObjectStore) -> Iterator[Enumerated]:
    """Yield distinct identifiers sorted by hex."""
    collected = {oid for oid, _ in _loose(store)}
    collected.update(oid for oid, _ in iter_packed_sources(store))
    for oid in sorted(collected):
        yield oid, None


def iter_all_objects(store: ObjectStore, unordered: bool = False) -> Iterator[Enumerated]:
    """Enumerate every object in the store exactly once.

    Args:
        store: Object store to enumerate.
        unordered: Stream in storage order instead of sorting.

    Yields:
        (oid, location) pairs; location is a pack hint or None.
    """
    if unordered:
        return iter_unordered(store)
    return iter_ordered(store)
