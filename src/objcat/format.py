"""Format templates for batch output records.

A format string such as "%(objectname) %(objecttype) %(objectsize)" is
compiled once into a FormatPlan. The plan is then used twice:

- plan() walks the atoms to find out which metadata the store must be
  asked for, so nothing unused is ever fetched.
- render() walks them again to stringify a resolved ObjectRecord.

Both passes are pure functions of their arguments.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .common import NULL_OID
from .errors import FormatError


DEFAULT_FORMAT = "%(objectname) %(objecttype) %(objectsize)"


class Atom(Enum):
    """Placeholders understood inside %( )."""

    OBJECTNAME = "objectname"
    OBJECTTYPE = "objecttype"
    OBJECTSIZE = "objectsize"
    OBJECTSIZE_DISK = "objectsize:disk"
    REST = "rest"
    DELTABASE = "deltabase"
    OBJECTMODE = "objectmode"


ATOMS_BY_NAME = {atom.value: atom for atom in Atom}

Segment = Union[str, Atom]


@dataclass(frozen=True)
class FormatPlan:
    """Compiled format: literal strings interleaved with atoms."""

    segments: tuple[Segment, ...]
    source: str

    @property
    def atoms(self) -> tuple[Atom, ...]:
        return tuple(s for s in self.segments if isinstance(s, Atom))

    @property
    def is_default(self) -> bool:
        return self.source == DEFAULT_FORMAT


@dataclass(frozen=True)
class QueryRequirements:
    """Metadata a run needs from the store for each object."""

    type: bool = False
    size: bool = False
    disk_size: bool = False
    delta_base: bool = False
    split_rest: bool = False

    def union(self, other: "QueryRequirements") -> "QueryRequirements":
        return QueryRequirements(
            type=self.type or other.type,
            size=self.size or other.size,
            disk_size=self.disk_size or other.disk_size,
            delta_base=self.delta_base or other.delta_base,
            split_rest=self.split_rest or other.split_rest,
        )

    @property
    def needs_store(self) -> bool:
        """True if any field has to come from the object store."""
        return self.type or self.size or self.disk_size or self.delta_base


@dataclass
class ObjectRecord:
    """Everything known about one queried object.

    mode None stands for "no mode known" (the object was not reached
    through a tree path).
    """

    oid: str
    name: Optional[str] = None
    type: Optional[str] = None
    size: Optional[int] = None
    disk_size: Optional[int] = None
    delta_base: Optional[str] = None
    mode: Optional[int] = None
    rest: Optional[str] = None


# Requirement each atom contributes during planning
_ATOM_REQUIREMENTS = {
    Atom.OBJECTNAME: QueryRequirements(),
    Atom.OBJECTTYPE: QueryRequirements(type=True),
    Atom.OBJECTSIZE: QueryRequirements(size=True),
    Atom.OBJECTSIZE_DISK: QueryRequirements(disk_size=True),
    Atom.REST: QueryRequirements(split_rest=True),
    Atom.DELTABASE: QueryRequirements(delta_base=True),
    Atom.OBJECTMODE: QueryRequirements(),
}


def compile_format(text: str) -> FormatPlan:
    """Compile a format string.

    "%%" is a literal percent sign, and a "%" not followed by "(" is kept
    as-is.

    Raises:
        FormatError: For an unterminated "%(" or an unknown atom.
    """
    segments: list[Segment] = []
    literal = []
    i = 0
    n = len(text)

    while i < n:
        pos = text.find("%", i)
        if pos < 0:
            literal.append(text[i:])
            break

        literal.append(text[i:pos])
        nxt = text[pos + 1:pos + 2]

        if nxt == "%":
            literal.append("%")
            i = pos + 2
            continue
        if nxt != "(":
            literal.append("%")
            i = pos + 1
            continue

        end = text.find(")", pos + 2)
        if end < 0:
            raise FormatError(
                f"bad batch format: element '{text[pos:]}' does not end in ')'",
                format=text,
            )
        name = text[pos + 2:end]
        atom = ATOMS_BY_NAME.get(name)
        if atom is None:
            raise FormatError(f"bad batch format: %({name})", format=text, atom=name)

        if literal:
            joined = "".join(literal)
            if joined:
                segments.append(joined)
            literal = []
        segments.append(atom)
        i = end + 1

    tail = "".join(literal)
    if tail:
        segments.append(tail)

    return FormatPlan(segments=tuple(segments), source=text)


DEFAULT_PLAN = compile_format(DEFAULT_FORMAT)


def plan(format_plan: FormatPlan, contents: bool = False) -> QueryRequirements:
    """Compute the metadata a format needs.

    Args:
        format_plan: Compiled format.
        contents: True when object content will be emitted; the type is
            then always needed to decide whether to stream.

    Returns:
        The minimal QueryRequirements.
    """
    requirements = QueryRequirements(type=contents)
    for atom in format_plan.atoms:
        requirements = requirements.union(_ATOM_REQUIREMENTS[atom])
    return requirements


def _render_atom(atom: Atom, record: ObjectRecord) -> str:
    if atom is Atom.OBJECTNAME:
        return record.oid
    if atom is Atom.OBJECTTYPE:
        return record.type or ""
    if atom is Atom.OBJECTSIZE:
        return "" if record.size is None else str(record.size)
    if atom is Atom.OBJECTSIZE_DISK:
        return "" if record.disk_size is None else str(record.disk_size)
    if atom is Atom.REST:
        return record.rest or ""
    if atom is Atom.DELTABASE:
        return record.delta_base or NULL_OID
    if atom is Atom.OBJECTMODE:
        return "" if record.mode is None else f"{record.mode:06o}"
    raise AssertionError(f"unhandled atom {atom}")


def render(format_plan: FormatPlan, record: ObjectRecord) -> bytes:
    """Render a record through a compiled format (without the delimiter)."""
    if format_plan.is_default:
        return f"{record.oid} {record.type} {record.size}".encode("ascii")

    parts = []
    for segment in format_plan.segments:
        if isinstance(segment, Atom):
            parts.append(_render_atom(segment, record))
        else:
            parts.append(segment)
    return "".join(parts).encode("utf-8", "surrogateescape")
