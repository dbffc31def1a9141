"""Name resolution: turns user-supplied expressions into identifiers.

Accepted expressions:
- a full 64-digit hex identifier (taken as-is, even if absent)
- a named ref: HEAD, refs/..., or a name under refs/tags or refs/heads
- an abbreviated identifier of at least 4 hex digits
- <rev>:<path>, walked through the tree of <rev>

Trees are stored as text, one entry per line:
    <octal mode> <hex>\\t<name>\\n
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .cas import ObjectNotFoundError, ObjectStore
from .common import (
    MIN_ABBREV,
    MODE_SYMLINK,
    MODE_TREE,
    OBJ_COMMIT,
    OBJ_TAG,
    OBJ_TREE,
    is_full_oid,
    is_hex,
)

logger = logging.getLogger(__name__)

# Symlinks followed within one lookup before declaring a loop
MAX_SYMLINK_DEPTH = 40

# Names allowed as refs at the store root, next to store.json and objects/
TOP_LEVEL_REF = re.compile(r"[A-Z][A-Z_]*")


class LookupKind(Enum):
    """Ways a name can fail to resolve; values are the status words."""

    MISSING = "missing"
    AMBIGUOUS = "ambiguous"
    DANGLING = "dangling"
    LOOP = "loop"
    NOTDIR = "notdir"
    SYMLINK = "symlink"


class LookupFailure(Exception):
    """Raised when an expression does not name exactly one object.

    For SYMLINK, name is the link target that points outside the tree.
    """

    def __init__(self, kind: LookupKind, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{name}: {kind.value}")


class InvalidRefError(Exception):
    """Raised for ref names that are unsafe or malformed."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid ref {name}: {reason}")


@dataclass(frozen=True)
class TreeEntry:
    mode: int
    name: str
    oid: str


@dataclass(frozen=True)
class ResolvedName:
    """Result of a successful lookup; mode is None outside of tree paths."""

    oid: str
    mode: Optional[int] = None
    path: Optional[str] = None


def parse_tree(data: bytes) -> list[TreeEntry]:
    """Parse tree content into entries."""
    entries = []
    for line in data.decode("utf-8", "surrogateescape").splitlines():
        if not line:
            continue
        meta, _, name = line.partition("\t")
        mode, _, oid = meta.partition(" ")
        entries.append(TreeEntry(int(mode, 8), name, oid))
    return entries


def format_tree(entries: list[TreeEntry]) -> bytes:
    """Serialize entries into tree content, sorted by name."""
    lines = [
        f"{entry.mode:o} {entry.oid}\t{entry.name}\n"
        for entry in sorted(entries, key=lambda e: e.name)
    ]
    return "".join(lines).encode("utf-8", "surrogateescape")


def _check_ref_name(name: str) -> None:
    parts = name.split("/")
    if not name or name.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise InvalidRefError(name, "bad path component")


def _ref_candidates(name: str) -> list[str]:
    """Store-relative paths tried, in order, when looking up a ref name."""
    candidates = [f"refs/{name}", f"refs/tags/{name}", f"refs/heads/{name}"]
    if name.startswith("refs/") or TOP_LEVEL_REF.fullmatch(name):
        candidates.insert(0, name)
    return candidates


def _read_ref_file(ref_path: Path) -> Optional[str]:
    try:
        return ref_path.read_bytes().decode("ascii").strip()
    except UnicodeDecodeError:
        logger.debug("ignoring non-text ref file %s", ref_path)
        return None


def update_ref(store_root: Path, name: str, oid: str) -> Path:
    """Point a ref at an identifier.

    Args:
        store_root: Root of the store.
        name: Ref name such as HEAD or refs/heads/main.
        oid: Full identifier.

    Returns:
        Path of the ref file.
    """
    _check_ref_name(name)
    if not (name.startswith("refs/") or TOP_LEVEL_REF.fullmatch(name)):
        raise InvalidRefError(name, "must be under refs/ or an uppercase top-level name")
    if not is_full_oid(oid):
        raise InvalidRefError(name, f"not a full identifier: {oid}")
    ref_path = Path(store_root) / name
    ref_path.parent.mkdir(parents=True, exist_ok=True)
    ref_path.write_text(oid + "\n", encoding="ascii")
    return ref_path


class NameResolver:
    """Resolves expressions against one object store."""

    def __init__(self, store: ObjectStore, follow_symlinks: bool = False):
        self.store = store
        self.follow_symlinks = follow_symlinks

    # ------------------------------------------------------------------
    # Refs and revisions
    # ------------------------------------------------------------------

    def read_ref(self, name: str, depth: int = 0) -> Optional[str]:
        """Read a ref, following symbolic "ref: <name>" entries."""
        try:
            _check_ref_name(name)
        except InvalidRefError:
            return None

        for candidate in _ref_candidates(name):
            ref_path = self.store.store_root / candidate
            if not ref_path.is_file():
                continue
            value = _read_ref_file(ref_path)
            if value is None:
                continue
            if value.startswith("ref: "):
                if depth >= 5:
                    return None
                return self.read_ref(value[5:].strip(), depth + 1)
            if is_full_oid(value):
                return value
        return None

    def resolve_rev(self, rev: str) -> str:
        """Resolve a revision expression (no path part) to an identifier.

        Raises:
            LookupFailure: MISSING or AMBIGUOUS.
        """
        lowered = rev.lower()
        if is_full_oid(lowered):
            return lowered

        oid = self.read_ref(rev)
        if oid is not None:
            return oid

        if len(lowered) >= MIN_ABBREV and is_hex(lowered):
            matches = self.store.find_prefix(lowered)
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise LookupFailure(LookupKind.AMBIGUOUS, rev)

        raise LookupFailure(LookupKind.MISSING, rev)

    def _read(self, oid: str, name: str) -> tuple[str, bytes]:
        try:
            return self.store.read_object(oid)
        except ObjectNotFoundError:
            raise LookupFailure(LookupKind.MISSING, name)

    def peel_to_tree(self, oid: str, name: str) -> str:
        """Follow tags and commits down to a tree identifier."""
        for _ in range(MAX_SYMLINK_DEPTH):
            obj_type, data = self._read(oid, name)
            if obj_type == OBJ_TREE:
                return oid
            if obj_type == OBJ_COMMIT:
                field = b"tree "
            elif obj_type == OBJ_TAG:
                field = b"object "
            else:
                raise LookupFailure(LookupKind.MISSING, name)
            oid = header_field(data, field)
            if oid is None:
                raise LookupFailure(LookupKind.MISSING, name)
        raise LookupFailure(LookupKind.MISSING, name)

    def tree_entries(self, tree_oid: str, name: str) -> list[TreeEntry]:
        obj_type, data = self._read(tree_oid, name)
        if obj_type != OBJ_TREE:
            raise LookupFailure(LookupKind.NOTDIR, name)
        return parse_tree(data)

    # ------------------------------------------------------------------
    # Full expressions
    # ------------------------------------------------------------------

    def resolve(self, expression: str) -> ResolvedName:
        """Resolve an expression to an identifier and optional mode.

        Raises:
            LookupFailure: If the expression does not name one object.
        """
        if ":" in expression:
            rev, path = expression.split(":", 1)
            if not rev:
                raise LookupFailure(LookupKind.MISSING, expression)
            tree = self.peel_to_tree(self.resolve_rev(rev), expression)
            if self.follow_symlinks:
                return self._walk_following(tree, path, expression)
            return self._walk(tree, path, expression)

        return ResolvedName(oid=self.resolve_rev(expression))

    def _walk(self, tree: str, path: str, expression: str) -> ResolvedName:
        parts = [p for p in path.split("/") if p]
        if not parts:
            return ResolvedName(oid=tree, mode=MODE_TREE, path=path)

        current = TreeEntry(MODE_TREE, "", tree)
        for part in parts:
            if current.mode != MODE_TREE:
                raise LookupFailure(LookupKind.MISSING, expression)
            entries = self.tree_entries(current.oid, expression)
            match = next((e for e in entries if e.name == part), None)
            if match is None:
                raise LookupFailure(LookupKind.MISSING, expression)
            current = match

        return ResolvedName(oid=current.oid, mode=current.mode, path="/".join(parts))

    def _walk_following(self, tree: str, path: str, expression: str) -> ResolvedName:
        """Walk a path, following in-tree symlinks at every component."""
        stack = [tree]
        names: list[str] = []
        remaining = [p for p in path.split("/") if p and p != "."]
        followed = 0

        while remaining:
            part = remaining.pop(0)
            if part == "..":
                if len(stack) == 1:
                    if followed:
                        raise LookupFailure(LookupKind.SYMLINK, path)
                    raise LookupFailure(LookupKind.MISSING, expression)
                stack.pop()
                names.pop()
                continue

            entries = self.tree_entries(stack[-1], expression)
            entry = next((e for e in entries if e.name == part), None)
            if entry is None:
                kind = LookupKind.DANGLING if followed else LookupKind.MISSING
                raise LookupFailure(kind, expression)

            if entry.mode == MODE_TREE:
                stack.append(entry.oid)
                names.append(part)
                continue

            if entry.mode == MODE_SYMLINK:
                followed += 1
                if followed > MAX_SYMLINK_DEPTH:
                    raise LookupFailure(LookupKind.LOOP, expression)
                _, target_bytes = self._read(entry.oid, expression)
                target = target_bytes.decode("utf-8", "surrogateescape")
                if target.startswith("/"):
                    raise LookupFailure(LookupKind.SYMLINK, target)
                path = target
                remaining = [p for p in target.split("/") if p and p != "."] + remaining
                continue

            if remaining:
                raise LookupFailure(LookupKind.NOTDIR, expression)
            names.append(part)
            return ResolvedName(oid=entry.oid, mode=entry.mode, path="/".join(names))

        return ResolvedName(oid=stack[-1], mode=MODE_TREE, path="/".join(names))


def header_field(data: bytes, field: bytes) -> Optional[str]:
    """Return the value of a header line of a commit or tag."""
    header = data.split(b"\n\n", 1)[0]
    for line in header.split(b"\n"):
        if line.startswith(field):
            value = line[len(field):].decode("ascii", "replace").strip()
            return value if is_full_oid(value) else None
    return None
