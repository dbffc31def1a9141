"""Tests for working-tree filters and textconv."""

import pytest

from objcat.common import MODE_FILE, MODE_SYMLINK
from objcat.transform import TextConv, TransformError, WorkingTreeFilter, match_attributes, to_crlf


class TestMatchAttributes:
    """Tests for match_attributes."""

    RULES = [
        {"pattern": "*.txt", "eol": "crlf", "diff": "text"},
        {"pattern": "docs/*.txt", "diff": "docs"},
        {"pattern": "/top.md", "filter": "upper"},
    ]

    def test_basename_pattern(self):
        assert match_attributes(self.RULES, "a/b/readme.txt") == {"eol": "crlf", "diff": "text"}

    def test_later_rule_overrides(self):
        assert match_attributes(self.RULES, "docs/guide.txt") == {"eol": "crlf", "diff": "docs"}

    def test_anchored_pattern(self):
        assert match_attributes(self.RULES, "top.md") == {"filter": "upper"}

    def test_no_match(self):
        assert match_attributes(self.RULES, "image.png") == {}


class TestToCrlf:
    """Tests for to_crlf."""

    def test_converts_lone_lf(self):
        assert to_crlf(b"a\nb\n") == b"a\r\nb\r\n"

    def test_existing_crlf_untouched(self):
        assert to_crlf(b"a\r\nb\n") == b"a\r\nb\r\n"


class TestWorkingTreeFilter:
    """Tests for WorkingTreeFilter."""

    SETTINGS = {
        "attributes": [
            {"pattern": "*.up", "filter": "upper"},
            {"pattern": "*.crlf", "filter": "upper", "eol": "crlf"},
            {"pattern": "*.fail", "filter": "broken"},
            {"pattern": "*.nodriver", "filter": "absent"},
        ],
        "filters": {"upper": {"smudge": "tr a-z A-Z"}, "broken": {"smudge": "false"}},
    }

    def test_smudge(self):
        assert WorkingTreeFilter(self.SETTINGS).apply("x.up", MODE_FILE, b"abc\n") == b"ABC\n"

    def test_smudge_then_eol(self):
        result = WorkingTreeFilter(self.SETTINGS).apply("x.crlf", MODE_FILE, b"ab\ncd\n")
        assert result == b"AB\r\nCD\r\n"

    def test_unknown_driver_passes_through(self):
        assert WorkingTreeFilter(self.SETTINGS).apply("x.nodriver", MODE_FILE, b"abc") == b"abc"

    def test_symlink_passes_through(self):
        assert WorkingTreeFilter(self.SETTINGS).apply("x.up", MODE_SYMLINK, b"target") == b"target"

    def test_failing_command(self):
        with pytest.raises(TransformError) as exc_info:
            WorkingTreeFilter(self.SETTINGS).apply("x.fail", MODE_FILE, b"abc")
        assert exc_info.value.path == "x.fail"
        assert exc_info.value.command == "false"

    def test_missing_executable(self):
        settings = {
            "attributes": [{"pattern": "*", "filter": "gone"}],
            "filters": {"gone": {"smudge": "objcat-no-such-program-xyz"}},
        }
        with pytest.raises(TransformError):
            WorkingTreeFilter(settings).apply("x", MODE_FILE, b"abc")


class TestTextConv:
    """Tests for TextConv."""

    SETTINGS = {
        "attributes": [{"pattern": "*.conv", "diff": "shout"}, {"pattern": "*.odd", "diff": "nocmd"}],
        "textconv": {"shout": "tr a-z A-Z"},
    }

    def test_no_driver_returns_none(self):
        assert TextConv(self.SETTINGS).apply("plain.txt", MODE_FILE, b"abc") is None

    def test_driver_without_command_returns_none(self):
        assert TextConv(self.SETTINGS).command_for("x.odd") is None
        assert TextConv(self.SETTINGS).apply("x.odd", MODE_FILE, b"abc") is None

    def test_converts_via_temp_file(self):
        settings = {
            "attributes": [{"pattern": "*.conv", "diff": "cat"}],
            "textconv": {"cat": "cat"},
        }
        assert TextConv(settings).apply("x.conv", MODE_FILE, b"payload\n") == b"payload\n"

    def test_non_regular_file(self):
        assert TextConv(self.SETTINGS).apply("x.conv", MODE_SYMLINK, b"abc") is None
