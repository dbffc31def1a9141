"""Run-wide configuration for batch queries.

A BatchConfig is built once at startup (normally by the CLI) and passed by
reference into every component. Nothing in the core reads ambient state.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .common import OBJ_BLOB, OBJECT_TYPES
from .errors import UsageError
from .format import DEFAULT_PLAN, FormatPlan
from .mailmap import IdentityRewriter


class BatchMode(Enum):
    CONTENTS = "contents"
    INFO = "info"
    QUEUE_AND_DISPATCH = "queue-and-dispatch"


class TransformMode(Enum):
    NONE = "none"
    FILTERS = "filters"
    TEXTCONV = "textconv"


class FilterKind(Enum):
    DISABLED = "disabled"
    BLOB_NONE = "blob:none"
    BLOB_LIMIT = "blob:limit"
    OBJECT_TYPE = "object:type"


@dataclass(frozen=True)
class ObjectFilter:
    """Which objects a batch run reports on."""

    kind: FilterKind = FilterKind.DISABLED
    blob_limit: int = 0
    object_type: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.kind is not FilterKind.DISABLED

    def includes(self, obj_type: str, size: Optional[int]) -> bool:
        """Decide whether an object passes the filter."""
        if self.kind is FilterKind.DISABLED:
            return True
        if self.kind is FilterKind.BLOB_NONE:
            return obj_type != OBJ_BLOB
        if self.kind is FilterKind.BLOB_LIMIT:
            return obj_type != OBJ_BLOB or size < self.blob_limit
        if self.kind is FilterKind.OBJECT_TYPE:
            return obj_type == self.object_type
        raise AssertionError(f"unhandled filter {self.kind}")


_LIMIT_RE = re.compile(r"^(\d+)([kmg]?)$", re.IGNORECASE)
_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def parse_filter_spec(spec: str) -> ObjectFilter:
    """Parse a --filter argument.

    Accepted: "blob:none", "blob:limit=<n>[kmg]", "object:type=<type>".

    Raises:
        UsageError: For anything else.
    """
    if spec == "blob:none":
        return ObjectFilter(FilterKind.BLOB_NONE)

    if spec.startswith("blob:limit="):
        m = _LIMIT_RE.match(spec[len("blob:limit="):])
        if m is None:
            raise UsageError(f"invalid filter-spec '{spec}'", filter=spec)
        limit = int(m.group(1)) * _UNITS[m.group(2).lower()]
        return ObjectFilter(FilterKind.BLOB_LIMIT, blob_limit=limit)

    if spec.startswith("object:type="):
        obj_type = spec[len("object:type="):]
        if obj_type not in OBJECT_TYPES:
            raise UsageError(f"'{obj_type}' for 'object:type=<type>' is not a valid object type", filter=spec)
        return ObjectFilter(FilterKind.OBJECT_TYPE, object_type=obj_type)

    raise UsageError(f"objects filter not supported: '{spec}'", filter=spec)


@dataclass(frozen=True)
class BatchConfig:
    """Immutable configuration of one batch run.

    Attributes:
        mode: Which batch mode is active.
        format: Compiled output format.
        buffer_output: Defer flushing output until explicitly flushed.
        follow_symlinks: Follow in-tree symlinks in <rev>:<path> names.
        all_objects: Enumerate the store instead of reading names.
        unordered: Emit enumerated objects in pack order.
        transform: Content transform applied to blobs in contents mode.
        input_delim: Input record delimiter.
        output_delim: Output record delimiter.
        object_filter: Which objects to report on.
        report_excluded: Write an "excluded" status for filtered objects;
            when False they are skipped silently.
        flush_on_exit: Dispatch commands still queued at end of input.
        rewriter: Identity rewriter, or None when mailmap is off.
        settings: Store settings (attribute rules, drivers).
    """

    mode: BatchMode = BatchMode.INFO
    format: FormatPlan = DEFAULT_PLAN
    buffer_output: bool = False
    follow_symlinks: bool = False
    all_objects: bool = False
    unordered: bool = False
    transform: TransformMode = TransformMode.NONE
    input_delim: bytes = b"\n"
    output_delim: bytes = b"\n"
    object_filter: ObjectFilter = ObjectFilter()
    report_excluded: bool = True
    flush_on_exit: bool = True
    rewriter: Optional[IdentityRewriter] = None
    settings: dict = field(default_factory=dict)

    @property
    def use_mailmap(self) -> bool:
        return self.rewriter is not None
