"""Per-object query pipeline: resolve, fetch, filter, render, emit.

Every name read from input (or every identifier produced by enumeration)
goes through ObjectQuery and produces either one output record or one
status line. Lookup failures are reported and the batch continues;
contradictions between metadata and content abort the run.
"""

import logging
import re
from typing import Iterable, Optional

from .batchio import OutputWriter, encode_name
from .cas import CorruptObjectError, ObjectNotFoundError, ObjectStore, PackLocation
from .common import MODE_FILE, MODE_GITLINK, OBJ_BLOB, OBJ_COMMIT, OBJ_TAG
from .config import BatchConfig, BatchMode, FilterKind, TransformMode
from .errors import IntegrityError
from .format import ObjectRecord, QueryRequirements, plan, render
from .resolver import LookupFailure, LookupKind, NameResolver
from .transform import TextConv, TransformError, WorkingTreeFilter

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"[ \t]+")

# Failure kinds reported as "<kind> <length><delim><name><delim>"
_LENGTH_PREFIXED = (
    LookupKind.DANGLING,
    LookupKind.LOOP,
    LookupKind.NOTDIR,
    LookupKind.SYMLINK,
)


def compute_requirements(config: BatchConfig) -> QueryRequirements:
    """Everything the run needs from the store for each object.

    Combines the format's own needs with those of the object filter,
    identity rewriting and content transforms.
    """
    contents = config.mode in (BatchMode.CONTENTS, BatchMode.QUEUE_AND_DISPATCH)
    requirements = plan(config.format, contents=contents)

    extra = QueryRequirements(
        type=config.object_filter.enabled or config.use_mailmap,
        size=config.object_filter.kind is FilterKind.BLOB_LIMIT,
        split_rest=config.transform is not TransformMode.NONE,
    )
    return requirements.union(extra)


class ObjectQuery:
    """Runs single-object queries for a batch."""

    def __init__(
        self,
        store: ObjectStore,
        config: BatchConfig,
        writer: OutputWriter,
        resolver: Optional[NameResolver] = None,
    ):
        """Initialize the query pipeline.

        Args:
            store: Object store to query.
            config: Run configuration.
            writer: Destination for records and status lines.
            resolver: Name resolver (default: one built from config).
        """
        self.store = store
        self.config = config
        self.writer = writer
        self.resolver = resolver or NameResolver(store, config.follow_symlinks)
        self.requirements = compute_requirements(config)

        # Enumeration must see raw identifiers, not replacement targets
        self.lookup_replace = not config.all_objects

        # Enumerated identifiers are known to exist; skip the store entirely
        # when nothing else is needed.
        self.skip_object_info = (
            config.all_objects
            and not self.requirements.needs_store
            and not config.object_filter.enabled
            and not config.use_mailmap
        )

        self._filter = WorkingTreeFilter(config.settings)
        self._textconv = TextConv(config.settings)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def split_input(self, line: str) -> tuple[str, Optional[str]]:
        """Split an input line into name and trailing text if needed."""
        if not self.requirements.split_rest:
            return line, None
        m = _WHITESPACE_RE.search(line)
        if m is None:
            return line, None
        return line[:m.start()], line[m.end():]

    def resolve(self, name: str, rest: Optional[str] = None) -> ObjectRecord:
        """Resolve a name to a fresh record.

        Raises:
            LookupFailure: If the name cannot be resolved.
        """
        resolved = self.resolver.resolve(name)
        return ObjectRecord(oid=resolved.oid, name=name, mode=resolved.mode, rest=rest)

    def fetch(self, record: ObjectRecord, location: Optional[PackLocation] = None) -> None:
        """Fill in the metadata the run needs.

        Raises:
            ObjectNotFoundError: If the store does not have the object.
        """
        if location is not None:
            info = self.store.read_info_at(location, self.requirements)
        else:
            info = self.store.read_info(
                record.oid, self.requirements, lookup_replace=self.lookup_replace
            )
        record.type = info.type
        record.size = info.size
        record.disk_size = info.disk_size
        record.delta_base = info.delta_base

        if self.config.use_mailmap and record.type in (OBJ_COMMIT, OBJ_TAG):
            _, data = self.store.read_object(record.oid, lookup_replace=self.lookup_replace)
            record.size = len(self.config.rewriter.rewrite_headers(data))

    def evaluate(self, record: ObjectRecord) -> bool:
        """Apply the object filter; True means the record is reported."""
        return self.config.object_filter.includes(record.type, record.size)

    def materialize(self, record: ObjectRecord) -> Iterable[bytes]:
        """Produce the content to emit for a record.

        Untransformed blobs are streamed in chunks; everything else is
        read whole.

        Raises:
            IntegrityError: If content contradicts the fetched metadata or
                a required transform cannot run.
        """
        oid = record.oid
        try:
            if record.type == OBJ_BLOB:
                return self._materialize_blob(record)

            obj_type, data = self.store.read_object(oid, lookup_replace=self.lookup_replace)
        except ObjectNotFoundError:
            raise IntegrityError(f"object {oid} disappeared", oid=oid)
        except CorruptObjectError as e:
            raise IntegrityError(str(e), oid=oid)

        if self.config.use_mailmap and obj_type in (OBJ_COMMIT, OBJ_TAG):
            data = self.config.rewriter.rewrite_headers(data)

        if obj_type != record.type:
            raise IntegrityError(f"object {oid} changed type!?", oid=oid)
        if (
            self.requirements.size
            and record.size is not None
            and len(data) != record.size
            and not self.config.use_mailmap
        ):
            raise IntegrityError(f"object {oid} changed size!?", oid=oid)

        return [data]

    def _materialize_blob(self, record: ObjectRecord) -> Iterable[bytes]:
        oid = record.oid
        transform = self.config.transform

        if transform is TransformMode.NONE:
            return self.store.stream_object(oid, lookup_replace=self.lookup_replace)

        if not record.rest:
            raise IntegrityError(f"missing path for '{oid}'", oid=oid)

        _, data = self.store.read_object(oid, lookup_replace=self.lookup_replace)
        try:
            if transform is TransformMode.FILTERS:
                data = self._filter.apply(record.rest, MODE_FILE, data)
            else:
                converted = self._textconv.apply(record.rest, MODE_FILE, data)
                if converted is not None:
                    data = converted
        except TransformError as e:
            logger.debug("transform failed: %s", e)
            raise IntegrityError(f"could not convert '{oid}' {record.rest}", oid=oid, path=record.rest)
        return [data]

    # ------------------------------------------------------------------
    # Status reporting
    # ------------------------------------------------------------------

    def report_status(self, name: str, status: str) -> None:
        self.writer.write_status(f"{name} {status}")

    def report_lookup_failure(self, failure: LookupFailure, name: str) -> None:
        """Write the status line for a failed lookup."""
        if failure.kind in _LENGTH_PREFIXED:
            subject = failure.name if failure.kind is LookupKind.SYMLINK else name
            delim = self.writer.delim.decode("ascii")
            length = len(encode_name(subject))
            self.writer.write_status(f"{failure.kind.value} {length}{delim}{subject}")
        else:
            self.report_status(name, failure.kind.value)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def write_object(
        self,
        name: Optional[str],
        record: ObjectRecord,
        contents: bool,
        location: Optional[PackLocation] = None,
    ) -> None:
        """Fetch, filter, render and emit one record."""
        display = name if name is not None else record.oid

        if not self.skip_object_info:
            try:
                self.fetch(record, location)
            except ObjectNotFoundError:
                if record.mode == MODE_GITLINK:
                    self.report_status(record.oid, "submodule")
                else:
                    self.report_status(display, "missing")
                return
            except CorruptObjectError as e:
                raise IntegrityError(str(e), oid=record.oid)

            if not self.evaluate(record):
                if self.config.report_excluded:
                    self.report_status(display, "excluded")
                return

        self.writer.write_record(render(self.config.format, record))

        if contents:
            self.writer.write_stream(self.materialize(record))
            self.writer.write(self.writer.delim)

    def batch_one(self, line: str, contents: Optional[bool] = None) -> None:
        """Query one input line.

        Args:
            line: Raw input record (name, optionally followed by text).
            contents: Emit content too (default: from the batch mode).
        """
        if contents is None:
            contents = self.config.mode is BatchMode.CONTENTS

        name, rest = self.split_input(line)
        try:
            record = self.resolve(name, rest)
        except LookupFailure as failure:
            self.report_lookup_failure(failure, name)
            return

        self.write_object(name, record, contents)

    def batch_known(
        self,
        oid: str,
        location: Optional[PackLocation] = None,
        contents: Optional[bool] = None,
    ) -> None:
        """Query an identifier known to exist (from enumeration)."""
        if contents is None:
            contents = self.config.mode is BatchMode.CONTENTS
        self.write_object(None, ObjectRecord(oid=oid), contents, location)
