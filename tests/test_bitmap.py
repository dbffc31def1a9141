"""Tests for the LMDB acceleration index.

Tests verify:
- Build statistics and metadata
- Missing and stale indexes are ignored
- Rebuild semantics
- Covered objects stream in pack order
"""

import json
from pathlib import Path

import pytest

from objcat.bitmap import IndexEnv, build_index, open_index
from objcat.cas import ObjectStore, PackLocation
from objcat.index_meta import INDEX_SCHEMA_VERSION, is_index_valid
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


class TestBuildIndex:
    """Tests for build_index."""

    def test_stats(self, root: Path):
        write_pack(root, [b"a", b"b"])
        write_pack(root, [b"c"])

        stats = build_index(ObjectStore(root))

        assert stats["packs_indexed"] == 2
        assert stats["objects_indexed"] == 3
        assert stats["source_fingerprint"].endswith("...")

    def test_meta_written(self, root: Path):
        write_pack(root, [b"a"])
        store = ObjectStore(root)
        build_index(store)

        meta = json.loads((root / "indexes" / "lmdb" / "index_meta.json").read_text())
        assert meta["schema_name"] == "objcat.index_meta"
        assert meta["index_schema_version"] == INDEX_SCHEMA_VERSION
        assert meta["packs"] == [store.packs()[0].name]
        assert meta["object_count"] == 1

    def test_empty_store(self, root: Path):
        stats = build_index(ObjectStore(root))
        assert stats["packs_indexed"] == 0
        assert stats["objects_indexed"] == 0

    def test_existing_requires_rebuild(self, root: Path):
        write_pack(root, [b"a"])
        store = ObjectStore(root)
        build_index(store)

        with pytest.raises(FileExistsError):
            build_index(store)

        stats = build_index(store, rebuild=True)
        assert stats["objects_indexed"] == 1

    def test_subset_of_packs(self, root: Path):
        write_pack(root, [b"a"])
        write_pack(root, [b"b", b"c"])
        store = ObjectStore(root)
        first = store.packs()[0]

        stats = build_index(store, packs=[first])
        assert stats["packs_indexed"] == 1

        index = open_index(ObjectStore(root))
        assert index is not None
        with index:
            assert index.meta.packs == [first.name]
            assert index.covers(first)
            assert not index.covers(store.packs()[1])


class TestOpenIndex:
    """Tests for open_index."""

    def test_missing(self, root: Path):
        assert open_index(ObjectStore(root)) is None

    def test_current(self, root: Path):
        write_pack(root, [b"a"])
        build_index(ObjectStore(root))

        index = open_index(ObjectStore(root))
        assert index is not None
        index.close()

    def test_new_pack_keeps_index_valid(self, root: Path):
        write_pack(root, [b"a"])
        build_index(ObjectStore(root))
        write_pack(root, [b"b"])

        store = ObjectStore(root)
        index = open_index(store)
        assert index is not None
        with index:
            covered = [p for p in store.packs() if index.covers(p)]
            assert len(covered) == 1

    def test_repack_makes_index_stale(self, root: Path):
        write_pack(root, [b"a"])
        build_index(ObjectStore(root))

        for path in (root / "objects" / "pack").iterdir():
            path.unlink()
        write_pack(root, [b"a", b"b"])

        assert open_index(ObjectStore(root)) is None

    def test_unreadable_meta_is_stale(self, root: Path):
        write_pack(root, [b"a"])
        build_index(ObjectStore(root))
        (root / "indexes" / "lmdb" / "index_meta.json").write_text("{broken")

        assert open_index(ObjectStore(root)) is None

    def test_schema_mismatch_is_stale(self, root: Path):
        write_pack(root, [b"a"])
        store = ObjectStore(root)
        build_index(store)

        env = IndexEnv(root)
        meta = env.load_meta()
        meta.index_schema_version = INDEX_SCHEMA_VERSION + 1
        assert not is_index_valid(meta, store.packs())


class TestIterObjects:
    """Tests for BitmapIndex.iter_objects."""

    def test_pack_order_with_locations(self, root: Path):
        oids = write_pack(root, [b"third", b"first", b"second"])
        store = ObjectStore(root)
        build_index(store)

        index = open_index(ObjectStore(root))
        with index:
            items = list(index.iter_objects())

        assert [oid for oid, _ in items] == oids
        for oid, location in items:
            assert isinstance(location, PackLocation)
            assert location.pack.entry_at(location.offset).oid == oid

    def test_matches_pack_scan(self, root: Path):
        write_pack(root, [b"x1", b"x2"])
        write_pack(root, [b"y1", b"x1"])
        store = ObjectStore(root)
        build_index(store)

        index = open_index(ObjectStore(root))
        with index:
            indexed = [oid for oid, _ in index.iter_objects()]
        assert indexed == [oid for oid, _ in store.iter_packed()]
