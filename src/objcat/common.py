"""Object model constants and identifier helpers shared by every module."""

import hashlib
import re
from datetime import datetime, timezone

# store.json layout version
SCHEMA_VERSION = 1

# Written into store.json and index metadata
PRODUCER = {
    "name": "objcat",
    "version": "0.1.0",
}

# Object types known to the store
OBJ_BLOB = "blob"
OBJ_TREE = "tree"
OBJ_COMMIT = "commit"
OBJ_TAG = "tag"

OBJECT_TYPES = (OBJ_COMMIT, OBJ_TREE, OBJ_BLOB, OBJ_TAG)

# Tree entry modes
MODE_TREE = 0o040000
MODE_FILE = 0o100644
MODE_EXECUTABLE = 0o100755
MODE_SYMLINK = 0o120000
MODE_GITLINK = 0o160000

HEX_LENGTH = 64
NULL_OID = "0" * HEX_LENGTH

# Shortest accepted abbreviated identifier
MIN_ABBREV = 4

_HEX_RE = re.compile(r"^[0-9a-f]+$")


def utc_now_z() -> str:
    """UTC timestamp such as 2025-02-02T12:00:00Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_hex(text: str) -> bool:
    """Check whether text is non-empty lowercase hex."""
    return bool(_HEX_RE.match(text))


def is_full_oid(text: str) -> bool:
    """Check whether text is a full-length object identifier."""
    return len(text) == HEX_LENGTH and is_hex(text)


def object_header(obj_type: str, size: int) -> bytes:
    """Build the framing header that prefixes object content before hashing."""
    return f"{obj_type} {size}\0".encode("ascii")


def hash_object(obj_type: str, data: bytes) -> str:
    """Compute the identifier of an object.

    Args:
        obj_type: One of OBJECT_TYPES.
        data: Raw object content.

    Returns:
        64-character hex identifier.
    """
    if obj_type not in OBJECT_TYPES:
        raise ValueError(f"Invalid object type: {obj_type}")
    hasher = hashlib.sha256()
    hasher.update(object_header(obj_type, len(data)))
    hasher.update(data)
    return hasher.hexdigest()


def is_regular_file_mode(mode: int) -> bool:
    """True for blob modes that represent plain files."""
    return mode in (MODE_FILE, MODE_EXECUTABLE)
