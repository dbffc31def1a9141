"""Single-object queries: cat-file -e/-t/-s/-p, <type> <object>, and
--textconv/--filters outside of batch mode.

Unlike batch mode, an unresolvable name is fatal here.
"""

import logging
from typing import Optional

from .batchio import OutputWriter
from .cas import ObjectNotFoundError, ObjectStore
from .common import (
    MODE_FILE,
    MODE_GITLINK,
    MODE_TREE,
    OBJ_BLOB,
    OBJ_COMMIT,
    OBJ_TAG,
    OBJ_TREE,
    OBJECT_TYPES,
    is_regular_file_mode,
)
from .errors import InvalidObjectError, IntegrityError
from .mailmap import IdentityRewriter
from .resolver import LookupFailure, NameResolver, header_field, parse_tree
from .transform import TextConv, TransformError, WorkingTreeFilter

logger = logging.getLogger(__name__)

# Single-object operations
OPT_EXISTS = "e"
OPT_TYPE = "t"
OPT_SIZE = "s"
OPT_PRETTY = "p"
OPT_TEXTCONV = "c"
OPT_FILTERS = "w"

MAX_PEEL_DEPTH = 40


def _entry_type(mode: int) -> str:
    if mode == MODE_TREE:
        return OBJ_TREE
    if mode == MODE_GITLINK:
        return OBJ_COMMIT
    return OBJ_BLOB


def pretty_tree(data: bytes) -> bytes:
    """Render tree content as "<mode> <type> <hex>\\t<name>" lines."""
    lines = [
        f"{entry.mode:06o} {_entry_type(entry.mode)} {entry.oid}\t{entry.name}\n"
        for entry in parse_tree(data)
    ]
    return "".join(lines).encode("utf-8", "surrogateescape")


class SingleObject:
    """Answers one question about one object."""

    def __init__(
        self,
        store: ObjectStore,
        writer: OutputWriter,
        rewriter: Optional[IdentityRewriter] = None,
        settings: Optional[dict] = None,
    ):
        self.store = store
        self.writer = writer
        self.rewriter = rewriter
        self.settings = settings or {}
        self.resolver = NameResolver(store)

    def _rewrite(self, obj_type: str, data: bytes) -> bytes:
        if self.rewriter is not None and obj_type in (OBJ_COMMIT, OBJ_TAG):
            return self.rewriter.rewrite_headers(data)
        return data

    def _read(self, oid: str, name: str) -> tuple[str, bytes]:
        try:
            return self.store.read_object(oid)
        except ObjectNotFoundError:
            raise InvalidObjectError(f"Not a valid object name {name}", name=name)

    def run(
        self,
        opt: Optional[str],
        obj_name: str,
        exp_type: Optional[str] = None,
        force_path: Optional[str] = None,
    ) -> int:
        """Run one single-object operation.

        Args:
            opt: One of the OPT_* letters, or None for <type> <object>.
            obj_name: Object expression.
            exp_type: Expected type for <type> <object>.
            force_path: Path to use for textconv/filters instead of the
                one in obj_name.

        Returns:
            Exit status (0, or 1 for -e on a missing object).

        Raises:
            InvalidObjectError: If the name or object cannot be read.
        """
        try:
            resolved = self.resolver.resolve(obj_name)
        except LookupFailure:
            raise InvalidObjectError(f"Not a valid object name {obj_name}", name=obj_name)

        oid = resolved.oid
        path = force_path or resolved.path
        mode = resolved.mode if resolved.mode is not None else MODE_FILE

        if opt in (OPT_TEXTCONV, OPT_FILTERS) and not path:
            raise InvalidObjectError(
                f"<object>:<path> required, only <object> '{obj_name}' given",
                name=obj_name,
            )

        if opt == OPT_EXISTS:
            return 0 if self.store.has(self.store.lookup_replace(oid)) else 1

        if opt == OPT_TYPE:
            info = self._info(oid)
            self.writer.write(f"{info.type}\n".encode("ascii"))
            return 0

        if opt == OPT_SIZE:
            info = self._info(oid)
            size = info.size
            if self.rewriter is not None and info.type in (OBJ_COMMIT, OBJ_TAG):
                _, data = self._read(oid, obj_name)
                size = len(self._rewrite(info.type, data))
            self.writer.write(f"{size}\n".encode("ascii"))
            return 0

        if opt == OPT_FILTERS:
            obj_type, data = self._read(oid, obj_name)
            if obj_type == OBJ_BLOB and is_regular_file_mode(mode):
                try:
                    data = WorkingTreeFilter(self.settings).apply(path, mode, data)
                except TransformError as e:
                    raise IntegrityError(str(e), path=path)
            self.writer.write(data)
            return 0

        if opt == OPT_TEXTCONV:
            obj_type, data = self._read(oid, obj_name)
            if obj_type == OBJ_BLOB:
                try:
                    converted = TextConv(self.settings).apply(path, mode, data)
                except TransformError as e:
                    raise IntegrityError(str(e), path=path)
                if converted is not None:
                    self.writer.write(converted)
                    return 0
            return self._pretty(oid, obj_name)

        if opt == OPT_PRETTY:
            return self._pretty(oid, obj_name)

        if opt is None:
            return self._typed(oid, obj_name, exp_type)

        raise InvalidObjectError(f"unknown option: {opt}")

    def _info(self, oid: str):
        try:
            return self.store.read_info(oid)
        except ObjectNotFoundError:
            raise InvalidObjectError("could not get object info", oid=oid)

    def _pretty(self, oid: str, obj_name: str) -> int:
        obj_type = self._info(oid).type

        if obj_type == OBJ_BLOB:
            self.writer.write_stream(self.store.stream_object(oid))
            return 0

        obj_type, data = self._read(oid, obj_name)
        if obj_type == OBJ_TREE:
            self.writer.write(pretty_tree(data))
            return 0

        self.writer.write(self._rewrite(obj_type, data))
        return 0

    def _typed(self, oid: str, obj_name: str, exp_type: Optional[str]) -> int:
        """Print the content of obj_name peeled to exp_type."""
        if exp_type not in OBJECT_TYPES:
            raise InvalidObjectError(f"invalid object type \"{exp_type}\"", type=exp_type)

        if exp_type == OBJ_BLOB:
            blob_oid = oid
            obj_type, data = self._read(oid, obj_name)
            if obj_type == OBJ_TAG:
                blob_oid = header_field(data, b"object ")
                if blob_oid is None:
                    raise InvalidObjectError(f"{oid} not a valid tag", oid=oid)
            try:
                if self.store.read_info(blob_oid).type == OBJ_BLOB:
                    self.writer.write_stream(self.store.stream_object(blob_oid))
                    return 0
            except ObjectNotFoundError:
                pass

        for _ in range(MAX_PEEL_DEPTH):
            obj_type, data = self._read(oid, obj_name)
            if obj_type == exp_type:
                self.writer.write(self._rewrite(obj_type, data))
                return 0
            if obj_type == OBJ_TAG:
                oid = header_field(data, b"object ")
            elif obj_type == OBJ_COMMIT and exp_type == OBJ_TREE:
                oid = header_field(data, b"tree ")
            else:
                oid = None
            if oid is None:
                break

        raise InvalidObjectError(f"objcat cat-file {obj_name}: bad file", name=obj_name)
