"""objcat: batch inspection of a content-addressed object store.

Names (or commands) are read from stdin, resolved against the store and
answered with formatted metadata and optionally raw content.
"""

from .batch import run_batch
from .cas import ObjectStore
from .config import BatchConfig, BatchMode, TransformMode, parse_filter_spec
from .format import compile_format

__all__ = [
    "run_batch",
    "ObjectStore",
    "BatchConfig",
    "BatchMode",
    "TransformMode",
    "parse_filter_spec",
    "compile_format",
]
