"""Tests for whole-store enumeration.

Every identifier is produced exactly once, whether it lives loose, in
one pack, in several packs, or in packs covered by the acceleration index.
"""

from pathlib import Path

import pytest

from objcat.bitmap import build_index
from objcat.cas import ObjectStore, PackLocation
from objcat.enumeration import SeenSet, iter_all_objects, iter_ordered, iter_unordered
from objcat.pack import PackWriter
from objcat.store import init_store


@pytest.fixture
def root(tmp_path: Path) -> Path:
    root = tmp_path / "store"
    init_store(root)
    return root


def write_pack(root: Path, contents: list[bytes]) -> list[str]:
    writer = PackWriter(root / "objects" / "pack")
    oids = [writer.add("blob", data) for data in contents]
    writer.write()
    return oids


@pytest.fixture
def mixed_store(root: Path) -> tuple[ObjectStore, set]:
    """Loose objects, two overlapping packs, and a loose copy of a packed object."""
    store = ObjectStore(root)
    loose = {store.put_object("blob", f"loose {i}".encode()) for i in range(5)}
    pack1 = write_pack(root, [b"p1", b"shared", b"p1b"])
    pack2 = write_pack(root, [b"p2", b"shared"])
    dup = store.put_object("blob", b"p2")
    return ObjectStore(root), loose | set(pack1) | set(pack2) | {dup}


class TestSeenSet:
    """Tests for SeenSet."""

    def test_insert_reports_novelty(self):
        seen = SeenSet()
        assert seen.insert("a") is True
        assert seen.insert("a") is False
        assert "a" in seen
        assert len(seen) == 1


class TestOrdered:
    """Tests for sorted enumeration."""

    def test_empty_store(self, root: Path):
        assert list(iter_ordered(ObjectStore(root))) == []

    def test_sorted_and_distinct(self, mixed_store):
        store, expected = mixed_store
        oids = [oid for oid, _ in iter_ordered(store)]
        assert oids == sorted(expected)

    def test_no_location_hints(self, mixed_store):
        store, _ = mixed_store
        assert all(location is None for _, location in iter_ordered(store))


class TestUnordered:
    """Tests for storage-order enumeration."""

    def test_distinct_union(self, mixed_store):
        store, expected = mixed_store
        oids = [oid for oid, _ in iter_unordered(store)]
        assert len(oids) == len(set(oids))
        assert set(oids) == expected

    def test_loose_first_then_packs(self, root: Path):
        store = ObjectStore(root)
        loose = store.put_object("blob", b"loose")
        packed = write_pack(root, [b"packed-1", b"packed-2"])
        store = ObjectStore(root)

        items = list(iter_unordered(store))
        assert items[0] == (loose, None)
        assert [oid for oid, _ in items[1:]] == packed
        assert all(isinstance(location, PackLocation) for _, location in items[1:])

    def test_loose_copy_wins_over_packed(self, root: Path):
        store = ObjectStore(root)
        (packed,) = write_pack(root, [b"twice"])
        assert store.put_object("blob", b"twice") == packed

        items = list(iter_unordered(ObjectStore(root)))
        assert items == [(packed, None)]

    def test_iter_all_objects_dispatch(self, mixed_store):
        store, expected = mixed_store
        assert [o for o, _ in iter_all_objects(store)] == sorted(expected)
        assert {o for o, _ in iter_all_objects(store, unordered=True)} == expected


class TestWithIndex:
    """Enumeration through the acceleration index."""

    def test_index_equals_scan(self, mixed_store):
        store, expected = mixed_store
        before = [oid for oid, _ in iter_unordered(store)]

        build_index(store)
        store = ObjectStore(store.store_root)
        after = [oid for oid, _ in iter_unordered(store)]

        assert len(after) == len(set(after))
        assert set(after) == expected
        assert after == before

    def test_uncovered_pack_still_enumerated(self, root: Path):
        write_pack(root, [b"covered-1", b"covered-2"])
        build_index(ObjectStore(root))
        late = write_pack(root, [b"late", b"covered-1"])

        store = ObjectStore(root)
        index = store.open_index()
        assert index is not None
        with index:
            assert [p.name for p in store.packs() if index.covers(p)] == index.meta.packs
            assert len(index.meta.packs) == 1

        oids = [oid for oid, _ in iter_unordered(store)]
        assert len(oids) == len(set(oids)) == 3
        assert set(late) <= set(oids)

    def test_stale_index_ignored(self, root: Path):
        write_pack(root, [b"one"])
        store = ObjectStore(root)
        build_index(store)

        for path in (root / "objects" / "pack").iterdir():
            path.unlink()
        write_pack(root, [b"two"])

        store = ObjectStore(root)
        assert store.open_index() is None
        assert [oid for oid, _ in iter_unordered(store)] == [o for o, _ in store.iter_packed()]

    def test_ordered_same_with_index(self, mixed_store):
        store, expected = mixed_store
        build_index(store)
        assert [oid for oid, _ in iter_ordered(ObjectStore(store.store_root))] == sorted(expected)
