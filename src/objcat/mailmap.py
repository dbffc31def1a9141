"""Identity rewriting for commit and tag headers.

A mailmap file maps the identities recorded in objects to canonical ones.
Supported line forms:

    Proper Name <commit@email>
    <proper@email> <commit@email>
    Proper Name <proper@email> <commit@email>
    Proper Name <proper@email> Commit Name <commit@email>

Only the author, committer and tagger header lines (up to the first blank
line) are rewritten.
"""

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

IDENT_HEADERS = (b"author ", b"committer ", b"tagger ")

_EMAIL_RE = re.compile(r"<([^>]*)>")
_IDENT_RE = re.compile(rb"^(?P<key>author|committer|tagger) (?P<name>.*?) ?<(?P<email>[^>]*)>(?P<tail>.*)$")


class IdentityRewriter:
    """Canonicalizes identities using parsed mailmap entries."""

    def __init__(self):
        # (email, name-or-None) -> (new name or None, new email or None)
        self._entries: dict[tuple[str, Optional[str]], tuple[Optional[str], Optional[str]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def from_file(cls, path: Path) -> "IdentityRewriter":
        """Load a mailmap file; a missing file yields an empty map."""
        rewriter = cls()
        path = Path(path)
        if path.exists():
            rewriter.parse(path.read_text(encoding="utf-8"))
            logger.debug("loaded %d mailmap entries from %s", len(rewriter), path)
        else:
            logger.debug("no mailmap at %s", path)
        return rewriter

    def parse(self, text: str) -> None:
        """Add the entries from mailmap text."""
        for raw_line in text.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line:
                continue
            self._parse_line(line)

    def _parse_line(self, line: str) -> None:
        matches = list(_EMAIL_RE.finditer(line))
        if not matches:
            return

        first = matches[0]
        name1 = line[:first.start()].strip() or None
        email1 = first.group(1).strip()

        if len(matches) == 1:
            self.add(email1, None, name1, None)
            return

        second = matches[1]
        name2 = line[first.end():second.start()].strip() or None
        email2 = second.group(1).strip()
        self.add(email2, name2, name1, email1)

    def add(
        self,
        old_email: str,
        old_name: Optional[str],
        new_name: Optional[str],
        new_email: Optional[str],
    ) -> None:
        """Map (old_name, old_email) to the new name and/or email."""
        key = (old_email.lower(), old_name.lower() if old_name else None)
        self._entries[key] = (new_name, new_email)

    def lookup(self, name: str, email: str) -> tuple[str, str]:
        """Return the canonical (name, email) for an identity."""
        hit = self._entries.get((email.lower(), name.lower()))
        if hit is None:
            hit = self._entries.get((email.lower(), None))
        if hit is None:
            return name, email
        new_name, new_email = hit
        return new_name or name, new_email or email

    def rewrite_headers(self, data: bytes) -> bytes:
        """Rewrite identity header lines of a commit or tag.

        Args:
            data: Raw commit or tag content.

        Returns:
            Content with canonical identities; the length may change.
        """
        if not self._entries:
            return data

        header, sep, body = data.partition(b"\n\n")
        lines = header.split(b"\n")
        changed = False

        for i, line in enumerate(lines):
            if not line.startswith(IDENT_HEADERS):
                continue
            m = _IDENT_RE.match(line)
            if m is None:
                continue
            name = m.group("name").decode("utf-8", "surrogateescape")
            email = m.group("email").decode("utf-8", "surrogateescape")
            new_name, new_email = self.lookup(name, email)
            if (new_name, new_email) == (name, email):
                continue
            lines[i] = b"%s %s <%s>%s" % (
                m.group("key"),
                new_name.encode("utf-8", "surrogateescape"),
                new_email.encode("utf-8", "surrogateescape"),
                m.group("tail"),
            )
            changed = True

        if not changed:
            return data
        return b"\n".join(lines) + sep + body
