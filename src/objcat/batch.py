"""Batch run boundary.

Wires a BatchConfig to its input source: names read from stdin, commands
read from stdin, or the whole store. Errors propagate to the caller; only
the CLI turns them into exit codes.
"""

import logging
from typing import BinaryIO, Optional

from .batchio import OutputWriter, iter_records
from .cas import ObjectStore
from .config import BatchConfig, BatchMode
from .enumeration import iter_all_objects
from .protocol import CommandProtocol
from .query import ObjectQuery

logger = logging.getLogger(__name__)


def make_writer(stream: BinaryIO, config: BatchConfig) -> OutputWriter:
    return OutputWriter(stream, buffered=config.buffer_output, delim=config.output_delim)


def run_all_objects(query: ObjectQuery, store: ObjectStore, config: BatchConfig) -> int:
    """Query every object in the store once."""
    count = 0
    for oid, location in iter_all_objects(store, unordered=config.unordered):
        query.batch_known(oid, location)
        count += 1
    logger.debug("enumerated %d objects", count)
    return count


def run_batch(
    store: ObjectStore,
    config: BatchConfig,
    stdin: BinaryIO,
    stdout: BinaryIO,
    writer: Optional[OutputWriter] = None,
) -> None:
    """Run one batch according to config.

    Args:
        store: Object store to query.
        config: Run configuration.
        stdin: Binary input (ignored in all-objects mode).
        stdout: Binary output.
        writer: Pre-built writer (default: built from config).

    Raises:
        ObjcatError: For protocol, integrity and output errors.
    """
    writer = writer or make_writer(stdout, config)
    query = ObjectQuery(store, config, writer)
    logger.debug("batch mode=%s requirements=%s", config.mode.value, query.requirements)

    try:
        if config.all_objects:
            run_all_objects(query, store, config)
            return

        records = iter_records(stdin, config.input_delim)
        if config.mode is BatchMode.QUEUE_AND_DISPATCH:
            CommandProtocol(query, config).run(records)
            return

        for line in records:
            query.batch_one(line)
    finally:
        writer.flush()
