"""Content transforms applied on read: working-tree filters and textconv.

Both are driven by the "settings" block of store.json:

    "attributes": [{"pattern": "*.txt", "eol": "crlf"},
                   {"pattern": "*.bin", "diff": "hex"},
                   {"pattern": "*.dat", "filter": "upper"}],
    "filters": {"upper": {"smudge": "tr a-z A-Z"}},
    "textconv": {"hex": "xxd"}

Patterns without a slash match the basename; later rules override earlier
ones attribute by attribute.
"""

import fnmatch
import logging
import os
import shlex
import subprocess
import tempfile
from typing import Optional

from .common import is_regular_file_mode

logger = logging.getLogger(__name__)


class TransformError(Exception):
    """Raised when a filter or textconv command fails."""

    def __init__(self, path: str, command: str, reason: str):
        self.path = path
        self.command = command
        self.reason = reason
        super().__init__(f"'{command}' failed for {path}: {reason}")


def match_attributes(rules: list[dict], path: str) -> dict:
    """Collect the attributes that apply to a path.

    Args:
        rules: Attribute rules from store settings.
        path: Slash-separated path inside a tree.

    Returns:
        Dict of attribute name to value.
    """
    basename = path.rsplit("/", 1)[-1]
    attrs = {}
    for rule in rules:
        pattern = rule.get("pattern", "")
        target = path if "/" in pattern else basename
        if fnmatch.fnmatchcase(target, pattern.lstrip("/")):
            attrs.update({k: v for k, v in rule.items() if k != "pattern"})
    return attrs


def _run(command: str, path: str, data: Optional[bytes], extra_args: list[str]) -> bytes:
    argv = [arg.replace("%f", path) for arg in shlex.split(command)] + extra_args
    logger.debug("running %s", argv)
    try:
        proc = subprocess.run(argv, input=data, capture_output=True, check=False)
    except (FileNotFoundError, OSError) as e:
        raise TransformError(path, command, str(e))
    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", "replace").strip()
        raise TransformError(path, command, f"exit {proc.returncode}: {stderr}")
    return proc.stdout


def to_crlf(data: bytes) -> bytes:
    """Convert lone LF line endings to CRLF."""
    return data.replace(b"\r\n", b"\n").replace(b"\n", b"\r\n")


class WorkingTreeFilter:
    """Converts stored blob content to what a checkout would produce."""

    def __init__(self, settings: dict):
        self.rules = settings.get("attributes", [])
        self.drivers = settings.get("filters", {})

    def apply(self, path: str, mode: int, data: bytes) -> bytes:
        """Apply smudge filter and eol conversion for path.

        Non-regular files (symlinks, trees, submodules) pass through.
        """
        if not is_regular_file_mode(mode):
            return data

        attrs = match_attributes(self.rules, path)

        driver_name = attrs.get("filter")
        if driver_name:
            smudge = self.drivers.get(driver_name, {}).get("smudge")
            if smudge:
                data = _run(smudge, path, data, [])

        if attrs.get("eol") == "crlf":
            data = to_crlf(data)

        return data


class TextConv:
    """Converts blob content to a human-readable form for display."""

    def __init__(self, settings: dict):
        self.rules = settings.get("attributes", [])
        self.commands = settings.get("textconv", {})

    def command_for(self, path: str) -> Optional[str]:
        driver = match_attributes(self.rules, path).get("diff")
        if not driver:
            return None
        return self.commands.get(driver)

    def apply(self, path: str, mode: int, data: bytes) -> Optional[bytes]:
        """Run the textconv command configured for path.

        Returns:
            Converted content, or None if no textconv applies (the caller
            then falls back to the raw content).
        """
        if not is_regular_file_mode(mode):
            return None

        command = self.command_for(path)
        if command is None:
            return None

        fd, tmp_name = tempfile.mkstemp(prefix="objcat-textconv-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            return _run(command, path, None, [tmp_name])
        finally:
            os.unlink(tmp_name)
