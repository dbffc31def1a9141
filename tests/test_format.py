"""Tests for format compilation, planning and rendering."""

import pytest

from objcat.common import MODE_FILE, MODE_TREE, NULL_OID
from objcat.errors import FormatError
from objcat.format import (
    Atom,
    DEFAULT_FORMAT,
    DEFAULT_PLAN,
    ObjectRecord,
    QueryRequirements,
    compile_format,
    plan,
    render,
)

OID = "ab" * 32


class TestCompileFormat:
    """Tests for compile_format."""

    def test_default_format_segments(self):
        """The default format alternates atoms and single spaces."""
        assert DEFAULT_PLAN.segments == (
            Atom.OBJECTNAME, " ", Atom.OBJECTTYPE, " ", Atom.OBJECTSIZE,
        )
        assert DEFAULT_PLAN.is_default

    def test_double_percent_is_literal(self):
        fmt = compile_format("100%% %(objectname)")
        assert fmt.segments == ("100% ", Atom.OBJECTNAME)

    def test_lone_percent_kept(self):
        fmt = compile_format("%x %")
        assert fmt.segments == ("%x %",)
        assert fmt.atoms == ()

    def test_all_atoms_known(self):
        fmt = compile_format(
            "%(objectname)%(objecttype)%(objectsize)%(objectsize:disk)"
            "%(rest)%(deltabase)%(objectmode)"
        )
        assert set(fmt.atoms) == set(Atom)

    def test_unterminated_atom_rejected(self):
        with pytest.raises(FormatError) as exc_info:
            compile_format("%(objectname")
        assert "does not end in ')'" in str(exc_info.value)

    def test_unknown_atom_rejected(self):
        with pytest.raises(FormatError) as exc_info:
            compile_format("%(objectcolor)")
        assert str(exc_info.value) == "bad batch format: %(objectcolor)"
        assert exc_info.value.details["atom"] == "objectcolor"


class TestPlan:
    """Planning must request exactly what the format renders."""

    def test_name_only_needs_nothing(self):
        requirements = plan(compile_format("%(objectname)"))
        assert requirements == QueryRequirements()
        assert not requirements.needs_store

    def test_default_needs_type_and_size(self):
        assert plan(DEFAULT_PLAN) == QueryRequirements(type=True, size=True)

    def test_disk_size_only(self):
        requirements = plan(compile_format("%(objectsize:disk)"))
        assert requirements == QueryRequirements(disk_size=True)

    def test_deltabase_only(self):
        requirements = plan(compile_format("%(deltabase)"))
        assert requirements == QueryRequirements(delta_base=True)

    def test_rest_requests_split_but_not_store(self):
        requirements = plan(compile_format("%(objectname) %(rest)"))
        assert requirements.split_rest
        assert not requirements.needs_store

    def test_objectmode_needs_no_store(self):
        assert not plan(compile_format("%(objectmode)")).needs_store

    def test_contents_adds_type(self):
        requirements = plan(compile_format("%(objectname)"), contents=True)
        assert requirements == QueryRequirements(type=True)


class TestRender:
    """Tests for render."""

    def test_default_format(self):
        record = ObjectRecord(oid=OID, type="blob", size=12)
        assert render(DEFAULT_PLAN, record) == f"{OID} blob 12".encode()

    def test_missing_fields_render_empty(self):
        fmt = compile_format("[%(objecttype)|%(objectsize)|%(objectsize:disk)|%(rest)]")
        assert render(fmt, ObjectRecord(oid=OID)) == b"[|||]"

    def test_mode_rendered_as_octal(self):
        fmt = compile_format("%(objectmode)")
        assert render(fmt, ObjectRecord(oid=OID, mode=MODE_FILE)) == b"100644"
        assert render(fmt, ObjectRecord(oid=OID, mode=MODE_TREE)) == b"040000"
        assert render(fmt, ObjectRecord(oid=OID)) == b""

    def test_deltabase_defaults_to_null_oid(self):
        fmt = compile_format("%(deltabase)")
        assert render(fmt, ObjectRecord(oid=OID)) == NULL_OID.encode()
        assert render(fmt, ObjectRecord(oid=OID, delta_base="cd" * 32)) == ("cd" * 32).encode()

    def test_rest_rendered_verbatim(self):
        fmt = compile_format("%(objectname) %(rest)")
        record = ObjectRecord(oid=OID, rest="path/to file")
        assert render(fmt, record) == f"{OID} path/to file".encode()

    def test_default_format_round_trip(self):
        """Rendered default records parse back into the same fields."""
        record = ObjectRecord(oid=OID, type="commit", size=4096)
        oid, obj_type, size = render(compile_format(DEFAULT_FORMAT), record).decode().split(" ")
        assert (oid, obj_type, int(size)) == (OID, "commit", 4096)
