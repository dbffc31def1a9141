"""Command-line interface for objcat."""

import argparse
import logging
import sys
from pathlib import Path

from .batch import run_batch
from .batchio import OutputWriter
from .bitmap import build_index
from .cas import CorruptObjectError, ObjectStore
from .common import OBJ_BLOB, OBJECT_TYPES, PRODUCER, hash_object, is_full_oid
from .config import BatchConfig, BatchMode, ObjectFilter, TransformMode, parse_filter_spec
from .errors import (
    EXIT_FAILURE,
    EXIT_FATAL,
    EXIT_OK,
    EXIT_USAGE,
    ErrorEnvelope,
    IntegrityError,
    ObjcatError,
    UsageError,
    from_exception,
    print_error,
    store_exists,
    store_invalid,
    store_not_found,
)
from .format import DEFAULT_FORMAT, DEFAULT_PLAN, compile_format
from .mailmap import IdentityRewriter
from .pack import PackFormatError
from .resolver import InvalidRefError, update_ref
from .single import OPT_FILTERS, OPT_TEXTCONV, SingleObject
from .store import InvalidStoreError, StoreExistsError, init_store, load_store

logger = logging.getLogger(__name__)

BATCH_OPTIONS = ("--batch", "--batch-check", "--batch-command")

CAT_FILE_USAGE = """\
objcat cat-file <type> <object>
       objcat cat-file (-e | -p | -t | -s) <object>
       objcat cat-file (--textconv | --filters) [<rev>:<path> | --path=<path> <rev>]
       objcat cat-file (--batch | --batch-check | --batch-command) [--batch-all-objects]
                       [--buffer] [--follow-symlinks] [--unordered]
                       [--textconv | --filters] [-z] [-Z]"""


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(message)


class BatchOption(argparse.Action):
    """--batch, --batch-check and --batch-command, each with optional format.

    The format is only taken from the "--batch=<format>" spelling; see
    pin_batch_formats().
    """

    def __init__(self, option_strings, dest, mode=None, **kwargs):
        self.mode = mode
        super().__init__(option_strings, dest, nargs="?", **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        if namespace.batch_mode is not None:
            raise UsageError("only one batch option may be specified")
        namespace.batch_mode = self.mode
        namespace.batch_format = values


def pin_batch_formats(argv: list[str]) -> list[str]:
    """Spell bare batch options with the default format attached.

    "--batch fmt" must not read "fmt" as the format, so a bare batch option
    becomes "--batch=<default format>" before argparse sees it. Arguments
    after "--" are left alone.
    """
    pinned = []
    for i, arg in enumerate(argv):
        if arg == "--":
            return pinned + argv[i:]
        if arg in BATCH_OPTIONS:
            arg = f"{arg}={DEFAULT_FORMAT}"
        pinned.append(arg)
    return pinned


def configure_logging(verbose: bool) -> None:
    """Send diagnostics to stderr; stdout carries data only."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def store_error(e: InvalidStoreError) -> ErrorEnvelope:
    """Envelope for a store that is missing or unusable."""
    if not Path(e.store_root).exists():
        return store_not_found(str(e.store_root))
    return store_invalid(str(e.store_root), e.reason)


def open_store(store_root: Path) -> tuple[ObjectStore, dict]:
    """Open a store and return it with its settings.

    Raises:
        InvalidStoreError: If store_root is not an objcat store.
    """
    store_meta = load_store(store_root)
    return ObjectStore(store_root), store_meta["settings"]


# =============================================================================
# Maintenance commands
# =============================================================================


def cmd_init(args: argparse.Namespace) -> int:
    """Handle the init command."""
    store_root = Path(args.store)

    try:
        store_meta = init_store(store_root)
    except StoreExistsError:
        print_error(store_exists(str(store_root)))
        return EXIT_FAILURE

    print(f"Initialized store: {store_root}")
    if args.verbose:
        print(f"  Schema version: {store_meta['schema_version']}")
        print(f"  Created: {store_meta['created_at']}")
    return EXIT_OK


def cmd_hash_object(args: argparse.Namespace) -> int:
    """Handle the hash-object command."""
    if args.type not in OBJECT_TYPES:
        print_error(from_exception(UsageError(f"invalid object type \"{args.type}\"")))
        return EXIT_USAGE

    inputs = []
    if args.stdin:
        inputs.append(sys.stdin.buffer.read())
    for filename in args.files:
        try:
            inputs.append(Path(filename).read_bytes())
        except OSError as e:
            print(f"Error: cannot read {filename}: {e}", file=sys.stderr)
            return EXIT_FAILURE

    store = None
    if args.write:
        try:
            store, _ = open_store(Path(args.store))
        except InvalidStoreError as e:
            print_error(store_error(e))
            return EXIT_FAILURE

    for data in inputs:
        if store is not None:
            oid = store.put_object(args.type, data)
        else:
            oid = hash_object(args.type, data)
        print(oid)
    return EXIT_OK


def cmd_pack(args: argparse.Namespace) -> int:
    """Handle the pack command."""
    try:
        store, _ = open_store(Path(args.store))
    except InvalidStoreError as e:
        print_error(store_error(e))
        return EXIT_FAILURE

    pack = store.pack_loose(prune=args.prune)
    if pack is None:
        print("Nothing to pack.")
        return EXIT_OK

    print(f"Wrote {pack.name}")
    if args.verbose:
        print(f"  Objects: {len(pack)}")
        print(f"  Pruned loose objects: {'yes' if args.prune else 'no'}")
    return EXIT_OK


def cmd_update_ref(args: argparse.Namespace) -> int:
    """Handle the update-ref command."""
    store_root = Path(args.store)
    try:
        load_store(store_root)
        ref_path = update_ref(store_root, args.ref, args.oid)
    except InvalidStoreError as e:
        print_error(store_error(e))
        return EXIT_FAILURE
    except InvalidRefError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.verbose:
        print(f"{args.ref} -> {args.oid} ({ref_path})")
    return EXIT_OK


def cmd_replace(args: argparse.Namespace) -> int:
    """Handle the replace command."""
    try:
        store, _ = open_store(Path(args.store))
    except InvalidStoreError as e:
        print_error(store_error(e))
        return EXIT_FAILURE

    for oid in (args.oid, args.replacement):
        if not is_full_oid(oid):
            print(f"Error: not a full object identifier: {oid}", file=sys.stderr)
            return EXIT_FAILURE

    store.add_replace(args.oid, args.replacement)
    return EXIT_OK


def cmd_index_build(args: argparse.Namespace) -> int:
    """Handle the index-build command."""
    try:
        store, _ = open_store(Path(args.store))
    except InvalidStoreError as e:
        print_error(store_error(e))
        return EXIT_FAILURE

    try:
        print("Building acceleration index...")
        stats = build_index(store, rebuild=args.rebuild)
    except FileExistsError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("  hint: use --rebuild to replace it", file=sys.stderr)
        return EXIT_FAILURE

    print("Index built successfully:")
    print(f"  Packs indexed: {stats['packs_indexed']}")
    print(f"  Objects indexed: {stats['objects_indexed']}")
    if args.verbose:
        print(f"  Fingerprint: {stats['source_fingerprint']}")
    return EXIT_OK


# =============================================================================
# cat-file
# =============================================================================


def check_cat_file_usage(args: argparse.Namespace) -> None:
    """Reject option combinations before any input is read.

    Raises:
        UsageError: For the first violated rule.
    """
    batch = args.batch_mode is not None
    transform = args.opt in (OPT_TEXTCONV, OPT_FILTERS)

    if args.filter is not None and not batch:
        raise UsageError("objects filter only supported in batch mode")

    if args.path is not None and not transform:
        raise UsageError("'--path=<path|tree-ish>' needs '--filters' or '--textconv'")

    if not batch:
        for flag, given in (
            ("--follow-symlinks", args.follow_symlinks),
            ("--buffer", args.buffer is not None),
            ("--batch-all-objects", args.batch_all_objects),
            ("-z", args.input_nul),
            ("-Z", args.nul),
        ):
            if given:
                raise UsageError(f"'{flag}' requires a batch mode")
        return

    if args.opt is not None and not transform:
        raise UsageError(f"'-{args.opt}' is incompatible with batch mode")
    if args.args:
        raise UsageError("batch modes take no arguments")


def build_batch_config(args: argparse.Namespace, store_root: Path, settings: dict) -> BatchConfig:
    """Turn parsed cat-file options into a BatchConfig.

    Raises:
        UsageError: For a bad --filter.
        FormatError: For a bad format string.
    """
    fmt = DEFAULT_PLAN if args.batch_format is None else compile_format(args.batch_format)

    if args.opt == OPT_TEXTCONV:
        transform = TransformMode.TEXTCONV
    elif args.opt == OPT_FILTERS:
        transform = TransformMode.FILTERS
    else:
        transform = TransformMode.NONE

    object_filter = ObjectFilter()
    if args.filter is not None:
        object_filter = parse_filter_spec(args.filter)

    input_delim = output_delim = b"\n"
    if args.input_nul:
        input_delim = b"\0"
    if args.nul:
        input_delim = output_delim = b"\0"

    rewriter = None
    if args.use_mailmap:
        rewriter = IdentityRewriter.from_file(store_root / settings.get("mailmap", "mailmap"))

    buffer_output = args.buffer
    if buffer_output is None:
        buffer_output = args.batch_all_objects

    return BatchConfig(
        mode=args.batch_mode,
        format=fmt,
        buffer_output=buffer_output,
        follow_symlinks=args.follow_symlinks,
        all_objects=args.batch_all_objects,
        unordered=args.unordered,
        transform=transform,
        input_delim=input_delim,
        output_delim=output_delim,
        object_filter=object_filter,
        # Enumeration skips filtered objects silently
        report_excluded=not args.batch_all_objects,
        flush_on_exit=args.flush_on_exit,
        rewriter=rewriter,
        settings=settings,
    )


def run_single(args: argparse.Namespace, store: ObjectStore, store_root: Path, settings: dict) -> int:
    """Run a single-object cat-file invocation."""
    opt = args.opt
    exp_type = None

    if opt is not None:
        if not args.args:
            if opt in (OPT_TEXTCONV, OPT_FILTERS):
                flag = "--textconv" if opt == OPT_TEXTCONV else "--filters"
                raise UsageError(f"<rev> required with '{flag}'")
            raise UsageError(f"<object> required with '-{opt}'")
        if len(args.args) != 1:
            raise UsageError("too many arguments")
        obj_name = args.args[0]
    elif not args.args:
        raise UsageError("<type> <object> required")
    elif len(args.args) != 2:
        raise UsageError(
            f"only two arguments allowed in <type> <object> mode, not {len(args.args)}"
        )
    else:
        exp_type, obj_name = args.args

    rewriter = None
    if args.use_mailmap:
        rewriter = IdentityRewriter.from_file(store_root / settings.get("mailmap", "mailmap"))

    writer = OutputWriter(sys.stdout.buffer)
    single = SingleObject(store, writer, rewriter=rewriter, settings=settings)
    try:
        return single.run(opt, obj_name, exp_type=exp_type, force_path=args.path)
    finally:
        writer.flush()


def cmd_cat_file(args: argparse.Namespace) -> int:
    """Handle the cat-file command.

    Usage errors exit 129, fatal errors 128. A missing object under -e
    exits 1 without output.
    """
    store_root = Path(args.store)
    json_mode = args.json

    try:
        check_cat_file_usage(args)
        store, settings = open_store(store_root)

        if args.batch_mode is None:
            return run_single(args, store, store_root, settings)

        config = build_batch_config(args, store_root, settings)
        run_batch(store, config, sys.stdin.buffer, sys.stdout.buffer)
        return EXIT_OK

    except UsageError as e:
        print_error(from_exception(e), json_mode)
        return EXIT_USAGE
    except InvalidStoreError as e:
        print_error(store_error(e), json_mode)
        return EXIT_FATAL
    except (CorruptObjectError, PackFormatError) as e:
        logger.debug("store corruption: %s", e)
        print_error(from_exception(IntegrityError(str(e))), json_mode)
        return EXIT_FATAL
    except ObjcatError as e:
        print_error(from_exception(e), json_mode)
        return EXIT_FATAL


def build_parser() -> argparse.ArgumentParser:
    """Build the objcat argument parser."""
    parser = ArgumentParser(
        prog="objcat",
        description="Batch inspection of a content-addressed object store",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {PRODUCER['version']}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init command
    init_parser = subparsers.add_parser("init", help="Initialize a new store")
    init_parser.add_argument("store", help="Store root directory to initialize")
    init_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    init_parser.set_defaults(func=cmd_init)

    # hash-object command
    hash_parser = subparsers.add_parser("hash-object", help="Compute object identifiers")
    hash_parser.add_argument("files", nargs="*", help="Files to hash")
    hash_parser.add_argument("-t", dest="type", default=OBJ_BLOB, help="Object type (default: blob)")
    hash_parser.add_argument("-w", dest="write", action="store_true", help="Write the object into the store")
    hash_parser.add_argument("--stdin", action="store_true", help="Read the object from stdin")
    hash_parser.add_argument("--store", default=".", help="Store root directory")
    hash_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    hash_parser.set_defaults(func=cmd_hash_object)

    # pack command
    pack_parser = subparsers.add_parser("pack", help="Move loose objects into a pack")
    pack_parser.add_argument("--store", default=".", help="Store root directory")
    pack_parser.add_argument("--prune", action="store_true", help="Delete packed loose objects")
    pack_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    pack_parser.set_defaults(func=cmd_pack)

    # update-ref command
    ref_parser = subparsers.add_parser("update-ref", help="Point a ref at an object")
    ref_parser.add_argument("ref", help="Ref name (e.g. HEAD, refs/heads/main)")
    ref_parser.add_argument("oid", help="Full object identifier")
    ref_parser.add_argument("--store", default=".", help="Store root directory")
    ref_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    ref_parser.set_defaults(func=cmd_update_ref)

    # replace command
    replace_parser = subparsers.add_parser("replace", help="Replace one object with another on read")
    replace_parser.add_argument("oid", help="Object to replace")
    replace_parser.add_argument("replacement", help="Object served in its place")
    replace_parser.add_argument("--store", default=".", help="Store root directory")
    replace_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    replace_parser.set_defaults(func=cmd_replace)

    # index-build command
    index_parser = subparsers.add_parser(
        "index-build", help="Build LMDB acceleration index over packs"
    )
    index_parser.add_argument("--store", default=".", help="Store root directory")
    index_parser.add_argument(
        "--rebuild", action="store_true", help="Delete existing index before building"
    )
    index_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    index_parser.set_defaults(func=cmd_index_build)

    # cat-file command
    cat_parser = subparsers.add_parser(
        "cat-file", help="Show object content, type or size", usage=CAT_FILE_USAGE,
        allow_abbrev=False,
    )
    cat_parser.add_argument("args", nargs="*", help="<object>, or <type> <object>")

    single = cat_parser.add_mutually_exclusive_group()
    single.add_argument("-e", dest="opt", action="store_const", const="e", help="Check if <object> exists")
    single.add_argument("-p", dest="opt", action="store_const", const="p", help="Pretty-print <object> content")
    single.add_argument("-t", dest="opt", action="store_const", const="t", help="Show object type")
    single.add_argument("-s", dest="opt", action="store_const", const="s", help="Show object size")
    single.add_argument(
        "--textconv", dest="opt", action="store_const", const=OPT_TEXTCONV,
        help="Run textconv on object content",
    )
    single.add_argument(
        "--filters", dest="opt", action="store_const", const=OPT_FILTERS,
        help="Run working-tree filters on object content",
    )
    single.add_argument(
        "--batch-all-objects", action="store_true",
        help="Ignore stdin and query every object in the store",
    )

    cat_parser.set_defaults(batch_mode=None, batch_format=None, buffer=None)
    cat_parser.add_argument(
        "--batch", dest="batch_format", action=BatchOption, mode=BatchMode.CONTENTS,
        metavar="FORMAT", help="Show full contents of objects named on stdin",
    )
    cat_parser.add_argument(
        "--batch-check", dest="batch_format", action=BatchOption, mode=BatchMode.INFO,
        metavar="FORMAT", help="Like --batch, but without contents",
    )
    cat_parser.add_argument(
        "--batch-command", dest="batch_format", action=BatchOption,
        mode=BatchMode.QUEUE_AND_DISPATCH, metavar="FORMAT",
        help="Read commands from stdin",
    )
    cat_parser.add_argument(
        "--buffer", dest="buffer", action="store_true", default=None,
        help="Buffer batch output",
    )
    cat_parser.add_argument(
        "--no-buffer", dest="buffer", action="store_false", help="Flush after every record"
    )
    cat_parser.add_argument("--follow-symlinks", action="store_true", help="Follow in-tree symlinks")
    cat_parser.add_argument("--unordered", action="store_true", help="Do not sort enumerated objects")
    cat_parser.add_argument("--path", help="Path to use for --textconv/--filters")
    cat_parser.add_argument("--filter", metavar="SPEC", help="Object filter (batch mode only)")
    cat_parser.add_argument("-z", dest="input_nul", action="store_true", help="Input is NUL-terminated")
    cat_parser.add_argument("-Z", dest="nul", action="store_true", help="Input and output are NUL-terminated")
    cat_parser.add_argument(
        "--use-mailmap", "--mailmap", dest="use_mailmap", action="store_true",
        help="Rewrite identities using the store mailmap",
    )
    cat_parser.add_argument(
        "--no-flush-on-exit", dest="flush_on_exit", action="store_false",
        help=argparse.SUPPRESS,
    )
    cat_parser.add_argument("--store", default=".", help="Store root directory")
    cat_parser.add_argument("--json", action="store_true", help="Print errors as JSON")
    cat_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    cat_parser.set_defaults(func=cmd_cat_file)

    return parser


def main(argv: list[str] = None) -> int:
    """Main entry point."""
    parser = build_parser()

    try:
        args = parser.parse_args(pin_batch_formats(sys.argv[1:] if argv is None else argv))
    except UsageError as e:
        print_error(from_exception(e))
        return EXIT_USAGE

    if not args.command:
        parser.print_help()
        return EXIT_OK

    configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
