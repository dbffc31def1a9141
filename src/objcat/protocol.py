"""Line-oriented command protocol for --batch-command.

Each input record is one command:

    contents <name>    query <name> and emit its content
    info <name>        query <name>, metadata only
    flush              run every queued command, then flush output

Without output buffering commands run as soon as they are read and flush
is an error. With buffering, contents/info are queued until the next
flush (or end of input).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Union

from .config import BatchConfig
from .errors import ProtocolError
from .query import ObjectQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contents:
    arg: str


@dataclass(frozen=True)
class Info:
    arg: str


@dataclass(frozen=True)
class Flush:
    pass


Command = Union[Contents, Info, Flush]
QueuedCommand = Union[Contents, Info]

# Command name -> (variant, takes arguments)
COMMANDS = {
    "contents": (Contents, True),
    "info": (Info, True),
    "flush": (Flush, False),
}


def parse_command(line: str) -> Command:
    """Parse one protocol line.

    Raises:
        ProtocolError: For empty lines, leading whitespace, unknown
            commands or a wrong number of arguments.
    """
    if not line:
        raise ProtocolError("empty command in input")
    if line[0].isspace():
        raise ProtocolError(f"whitespace before command: '{line}'", line=line)

    name, sep, arg = line.partition(" ")
    spec = COMMANDS.get(name)
    if spec is None:
        raise ProtocolError(f"unknown command: '{line}'", line=line)

    variant, takes_args = spec
    if takes_args:
        if not sep:
            raise ProtocolError(f"{name} requires arguments", line=line)
        return variant(arg)

    if sep:
        raise ProtocolError(f"{name} takes no arguments", line=line)
    return variant()


class CommandProtocol:
    """Reads commands and dispatches them to an ObjectQuery."""

    def __init__(self, query: ObjectQuery, config: BatchConfig):
        self.query = query
        self.config = config
        self.pending: list[QueuedCommand] = []

    def execute(self, command: QueuedCommand) -> None:
        if isinstance(command, Contents):
            self.query.batch_one(command.arg, contents=True)
        elif isinstance(command, Info):
            self.query.batch_one(command.arg, contents=False)
        else:
            raise AssertionError(f"not a queueable command: {command!r}")

    def flush(self) -> None:
        """Run the pending queue in arrival order, then flush output."""
        if not self.config.buffer_output:
            raise ProtocolError("flush is only for --buffer mode")

        logger.debug("dispatching %d queued commands", len(self.pending))
        queued, self.pending = self.pending, []
        for command in queued:
            self.execute(command)
        self.query.writer.flush()

    def handle(self, command: Command) -> None:
        """Run, queue or flush a parsed command."""
        if isinstance(command, Flush):
            self.flush()
        elif not self.config.buffer_output:
            self.execute(command)
        else:
            self.pending.append(command)

    def run(self, records: Iterable[str]) -> None:
        """Process every command record until input ends."""
        for line in records:
            self.handle(parse_command(line))

        if self.pending:
            if self.config.flush_on_exit:
                self.flush()
            else:
                logger.debug("dropping %d queued commands at exit", len(self.pending))
                self.pending.clear()
