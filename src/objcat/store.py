"""Store layout and store.json handling.

Layout of an objcat store:
    <store_root>/
      store.json       # schema, producer and settings
      HEAD             # optional; "ref: refs/heads/<name>" or a hex id
      mailmap          # optional identity map (path set in settings)
      objects/
        sha256/aa/bb/  # loose objects
        pack/          # pack-<name>.pack + pack-<name>.idx
      refs/
        heads/ tags/   # named references
        replace/       # replace refs: file <hex> holds the replacement
      indexes/lmdb/    # acceleration index, derived and disposable
"""

import json
from pathlib import Path
from typing import Optional

from .common import SCHEMA_VERSION, PRODUCER, utc_now_z

STORE_SCHEMA_NAME = "objcat.store"
STORE_JSON = "store.json"

# Directories every store has, relative to its root
STORE_DIRS = (
    "objects/sha256",
    "objects/pack",
    "refs/heads",
    "refs/tags",
    "refs/replace",
)


class StoreExistsError(Exception):
    """Raised by init_store when the target is already in use."""

    def __init__(self, store_root: Path):
        self.store_root = store_root
        super().__init__(f"Store already exists: {store_root}")


class InvalidStoreError(Exception):
    """Raised when a directory is not a usable objcat store."""

    def __init__(self, store_root: Path, reason: str):
        self.store_root = store_root
        self.reason = reason
        super().__init__(f"Not an objcat store ({reason}): {store_root}")


def default_settings() -> dict:
    """Settings written into a freshly initialized store."""
    return {
        "mailmap": "mailmap",
        "attributes": [],
        "filters": {},
        "textconv": {},
    }


def _merged_settings(overrides: Optional[dict]) -> dict:
    settings = default_settings()
    settings.update(overrides or {})
    return settings


def _write_meta(store_root: Path, store_meta: dict) -> None:
    text = json.dumps(store_meta, indent=2) + "\n"
    (store_root / STORE_JSON).write_text(text, encoding="utf-8")


def init_store(
    store_root: Path,
    *,
    allow_reinit: bool = False,
    settings: Optional[dict] = None,
) -> dict:
    """Create an empty store.

    Args:
        store_root: Directory to create the store in.
        allow_reinit: Accept a directory that already has other files.
        settings: Settings merged over default_settings().

    Returns:
        The new store metadata.

    Raises:
        StoreExistsError: If store.json is present, or the directory is
            non-empty and allow_reinit is off.
    """
    store_root = Path(store_root)

    if (store_root / STORE_JSON).exists():
        raise StoreExistsError(store_root)
    if store_root.is_dir() and any(store_root.iterdir()) and not allow_reinit:
        raise StoreExistsError(store_root)

    for rel in STORE_DIRS:
        (store_root / rel).mkdir(parents=True, exist_ok=True)

    store_meta = {
        "schema_name": STORE_SCHEMA_NAME,
        "schema_version": SCHEMA_VERSION,
        "producer": PRODUCER.copy(),
        "created_at": utc_now_z(),
        "settings": _merged_settings(settings),
    }
    _write_meta(store_root, store_meta)
    return store_meta


def load_store(store_root: Path) -> dict:
    """Read and check store.json.

    A store.json without a settings block gets the defaults.

    Raises:
        InvalidStoreError: With the first problem found.
    """
    store_root = Path(store_root)
    if not store_root.is_dir():
        raise InvalidStoreError(store_root, "directory does not exist")

    meta_path = store_root / STORE_JSON
    if not meta_path.is_file():
        raise InvalidStoreError(store_root, "missing store.json")

    try:
        store_meta = json.loads(meta_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidStoreError(store_root, f"store.json is not JSON: {e}")

    if not isinstance(store_meta, dict) or store_meta.get("schema_name") != STORE_SCHEMA_NAME:
        raise InvalidStoreError(store_root, "store.json has the wrong schema_name")
    if not isinstance(store_meta.get("schema_version"), int):
        raise InvalidStoreError(store_root, "store.json has no integer schema_version")

    settings = store_meta.setdefault("settings", default_settings())
    if not isinstance(settings, dict):
        raise InvalidStoreError(store_root, "settings must be an object")
    return store_meta


def save_settings(store_root: Path, settings: dict) -> dict:
    """Replace the settings block of an existing store.

    Returns:
        The updated store metadata.
    """
    store_root = Path(store_root)
    store_meta = load_store(store_root)
    store_meta["settings"] = _merged_settings(settings)
    _write_meta(store_root, store_meta)
    return store_meta


def is_valid_store(store_root: Path) -> bool:
    try:
        load_store(store_root)
    except InvalidStoreError:
        return False
    return True
