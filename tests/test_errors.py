"""Tests for the error module.

Tests verify:
- Exceptions carry codes and details
- Error envelope structure is correct
- Factory functions produce correct errors
- Text and JSON output are well formed
"""

import io
import json
from pathlib import Path

import jsonschema
import pytest

from objcat.errors import (
    BAD_FORMAT,
    INTEGRITY_ERROR,
    INTERNAL_ERROR,
    OUTPUT_ERROR,
    PROTOCOL_ERROR,
    STORE_EXISTS,
    STORE_INVALID,
    STORE_NOT_FOUND,
    USAGE_ERROR,
    ErrorEnvelope,
    FormatError,
    IntegrityError,
    ObjcatError,
    OutputError,
    ProtocolError,
    UsageError,
    from_exception,
    print_error,
    store_exists,
    store_invalid,
    store_not_found,
)


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_codes(self):
        assert UsageError("x").code == USAGE_ERROR
        assert FormatError("x").code == BAD_FORMAT
        assert ProtocolError("x").code == PROTOCOL_ERROR
        assert IntegrityError("x").code == INTEGRITY_ERROR
        assert ObjcatError("x").code == INTERNAL_ERROR

    def test_details_kept(self):
        error = IntegrityError("object abc changed type!?", oid="abc")
        assert error.message == "object abc changed type!?"
        assert error.details == {"oid": "abc"}
        assert str(error) == "object abc changed type!?"

    def test_output_error_wraps_cause(self):
        cause = BrokenPipeError(32, "Broken pipe")
        error = OutputError(cause)
        assert error.code == OUTPUT_ERROR
        assert error.cause is cause
        assert error.message == "unable to write to stdout: Broken pipe"


class TestErrorEnvelope:
    """Tests for ErrorEnvelope."""

    def test_to_dict_structure(self):
        """Error dict should have correct structure."""
        error = ErrorEnvelope(
            code="TEST_ERROR",
            message="Test message",
            hints=["Hint 1", "Hint 2"],
            details={"key": "value"},
        )
        assert error.to_dict() == {
            "error": {
                "code": "TEST_ERROR",
                "message": "Test message",
                "hints": ["Hint 1", "Hint 2"],
                "details": {"key": "value"},
            }
        }

    def test_to_json_parses(self):
        error = ErrorEnvelope(code="X", message="m")
        assert json.loads(error.to_json())["error"]["code"] == "X"

    def test_text_prefix_fatal(self):
        out = io.StringIO()
        ErrorEnvelope(code=INTEGRITY_ERROR, message="broken", hints=["look"]).print_text(out)
        assert out.getvalue() == "fatal: broken\n  hint: look\n"

    def test_text_prefix_usage(self):
        out = io.StringIO()
        ErrorEnvelope(code=USAGE_ERROR, message="bad flags").print_text(out)
        assert out.getvalue() == "usage: bad flags\n"


class TestFactories:
    """Tests for factory functions."""

    def test_from_usage_exception(self):
        envelope = from_exception(UsageError("'-z' requires a batch mode"))
        assert envelope.code == USAGE_ERROR
        assert envelope.message == "'-z' requires a batch mode"
        assert envelope.hints

    def test_from_protocol_exception(self):
        envelope = from_exception(ProtocolError("unknown command: 'x'", line="x"))
        assert envelope.code == PROTOCOL_ERROR
        assert envelope.details == {"line": "x"}
        assert envelope.hints == []

    def test_store_factories(self):
        assert store_not_found("/s").code == STORE_NOT_FOUND
        assert store_invalid("/s", "missing store.json").message == (
            "Invalid store: /s (missing store.json)"
        )
        assert store_exists("/s").details == {"path": "/s"}


class TestPrintError:
    """Tests for print_error."""

    def test_json_mode(self):
        out = io.StringIO()
        print_error(store_not_found("/s"), json_mode=True, file=out)
        assert json.loads(out.getvalue())["error"]["code"] == STORE_NOT_FOUND

    def test_text_mode(self):
        out = io.StringIO()
        print_error(store_not_found("/s"), file=out)
        assert out.getvalue().startswith("fatal: Store does not exist: /s\n")


class TestErrorSchemaValidation:
    """Envelopes validate against schemas/error.schema.json."""

    @pytest.fixture
    def error_schema(self) -> dict:
        schema_path = Path(__file__).parent.parent / "schemas" / "error.schema.json"
        with open(schema_path) as f:
            return json.load(f)

    def test_full_envelope(self, error_schema):
        error = ErrorEnvelope(
            code="TEST_ERROR",
            message="Test message",
            hints=["Hint 1"],
            details={"key": "value"},
        )
        jsonschema.validate(error.to_dict(), error_schema)

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: store_not_found("/path"),
            lambda: store_invalid("/path", "reason"),
            lambda: store_exists("/path"),
            lambda: from_exception(UsageError("'-z' requires a batch mode")),
            lambda: from_exception(IntegrityError("object x changed type!?", oid="x")),
            lambda: from_exception(OutputError(BrokenPipeError(32, "Broken pipe"))),
        ],
    )
    def test_all_factories_validate(self, error_schema, factory):
        jsonschema.validate(factory().to_dict(), error_schema)

    def test_missing_message_rejected(self, error_schema):
        envelope = ErrorEnvelope(code="X", message="m").to_dict()
        del envelope["error"]["message"]
        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(envelope, error_schema)
