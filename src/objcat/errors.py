"""Errors that end a run, their codes, and how the CLI prints them.

Per-item lookup failures never reach this module: they are reported as
status lines by the query pipeline. Everything here terminates the run.
"""

import json
import sys
from dataclasses import dataclass, field


# =============================================================================
# Error Codes
# =============================================================================

STORE_NOT_FOUND = "STORE_NOT_FOUND"
STORE_INVALID = "STORE_INVALID"
STORE_EXISTS = "STORE_EXISTS"

USAGE_ERROR = "USAGE_ERROR"
BAD_FORMAT = "BAD_FORMAT"
PROTOCOL_ERROR = "PROTOCOL_ERROR"
INTEGRITY_ERROR = "INTEGRITY_ERROR"
OUTPUT_ERROR = "OUTPUT_ERROR"
OBJECT_INVALID = "OBJECT_INVALID"

INTERNAL_ERROR = "INTERNAL_ERROR"

# Process exit codes used by the CLI boundary
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FATAL = 128
EXIT_USAGE = 129


# =============================================================================
# Exceptions
# =============================================================================


class ObjcatError(Exception):
    """Base class for errors that terminate a run."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)


class UsageError(ObjcatError):
    """Raised for conflicting or incomplete command-line options."""

    code = USAGE_ERROR


class FormatError(ObjcatError):
    """Raised when a format string cannot be compiled."""

    code = BAD_FORMAT


class ProtocolError(ObjcatError):
    """Raised for malformed input in batch-command mode."""

    code = PROTOCOL_ERROR


class IntegrityError(ObjcatError):
    """Raised when a collaborator contradicts itself within one run."""

    code = INTEGRITY_ERROR


class InvalidObjectError(ObjcatError):
    """Raised when a name cannot be resolved outside of batch mode."""

    code = OBJECT_INVALID


class OutputError(ObjcatError):
    """Raised when writing to the output stream fails."""

    code = OUTPUT_ERROR

    def __init__(self, cause: OSError):
        self.cause = cause
        super().__init__(f"unable to write to stdout: {cause.strerror or cause}")


# =============================================================================
# Error Envelope
# =============================================================================


@dataclass
class ErrorEnvelope:
    """What the CLI prints for a run-terminating error.

    Rendered either as "<prefix>: <message>" plus hint lines, or with
    --json as {"error": {code, message, hints, details}}.
    """

    code: str
    message: str
    hints: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        body = {
            "code": self.code,
            "message": self.message,
            "hints": list(self.hints),
            "details": dict(self.details),
        }
        return {"error": body}

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def print_json(self, file=None) -> None:
        print(self.to_json(), file=file or sys.stderr)

    def print_text(self, file=None) -> None:
        file = file or sys.stderr
        prefix = "usage" if self.code == USAGE_ERROR else "fatal"
        print(f"{prefix}: {self.message}", file=file)
        for hint in self.hints:
            print(f"  hint: {hint}", file=file)


# =============================================================================
# Factory Functions
# =============================================================================


def from_exception(exc: ObjcatError) -> ErrorEnvelope:
    """Wrap a raised ObjcatError in an envelope."""
    hints = []
    if isinstance(exc, UsageError):
        hints.append("Run: objcat cat-file --help")
    elif isinstance(exc, IntegrityError):
        hints.append("The store may be corrupt; run with --verbose for details")
    return ErrorEnvelope(
        code=exc.code,
        message=exc.message,
        hints=hints,
        details=dict(exc.details),
    )


def store_not_found(path: str) -> ErrorEnvelope:
    return ErrorEnvelope(
        code=STORE_NOT_FOUND,
        message=f"Store does not exist: {path}",
        hints=[f"Run: objcat init {path}", "Or pass --store <dir>"],
        details={"path": path},
    )


def store_invalid(path: str, reason: str = "") -> ErrorEnvelope:
    message = f"Invalid store: {path}" + (f" ({reason})" if reason else "")
    return ErrorEnvelope(
        code=STORE_INVALID,
        message=message,
        hints=["A store is created by 'objcat init' and holds a store.json"],
        details={"path": path, "reason": reason},
    )


def store_exists(path: str) -> ErrorEnvelope:
    return ErrorEnvelope(
        code=STORE_EXISTS,
        message=f"Store already exists: {path}",
        hints=["Choose an empty or missing directory"],
        details={"path": path},
    )


def print_error(error: ErrorEnvelope, json_mode: bool = False, file=None) -> None:
    """Print an envelope as JSON or text (default destination: stderr)."""
    if json_mode:
        error.print_json(file)
    else:
        error.print_text(file)
