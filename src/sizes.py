#!/usr/bin/env python3
"""
sizes - Hierarchical disk usage report.

Walks a directory tree, adds every file's size to each of its ancestors, and
prints the result as an indented report sorted by size. Hard links are
counted once and the scan stays on the filesystem of the root by default.
The report can be opened in $EDITOR instead of being printed.
"""

import argparse
import logging
import os
import shlex
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, TextIO

logger = logging.getLogger(__name__)

# (power, suffix) pairs, largest first.
HUMAN_BUCKETS = [
    (10**15, "p"),
    (10**12, "t"),
    (10**9, "g"),
    (10**6, "m"),
    (10**3, "k"),
    (1, ""),
]

VIM_MODELINE = "# vim: set foldmethod=indent shiftwidth=2 foldlevel=1 :"

# Width of the size column.
SIZE_WIDTH = 7


class ConfigurationError(Exception):
    """Raised for fatal problems detected before the traversal starts."""


class Unit(Enum):
    """Enumeration of the units a report can be printed in."""

    BYTES = "bytes"
    KILOBYTES = "kilobytes"
    MEGABYTES = "megabytes"
    GIGABYTES = "gigabytes"
    HUMAN = "human"


# Divisor and suffix of every fixed unit.
FIXED_UNITS = {
    Unit.BYTES: (1, ""),
    Unit.KILOBYTES: (10**3, "k"),
    Unit.MEGABYTES: (10**6, "m"),
    Unit.GIGABYTES: (10**9, "g"),
}


class FilterOutcome(Enum):
    """What the walker should do with a visited entry."""

    INCLUDE = "include"
    EXCLUDE_SUBTREE = "exclude-subtree"
    EXCLUDE_SELF = "exclude-self"
    DEDUPLICATE = "deduplicate"


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with colors.

        Args:
            record (logging.LogRecord):
                The log record to format.

        Returns:
            str:
                The formatted log message with ANSI color codes.

        """
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


@dataclass
class SizeNode:
    """Aggregated size of one path segment and everything below it.

    Attributes:
        total_bytes (int):
            Sum of the sizes of all files below this node (or of the node
            itself when it is a file).
        children (dict[str, SizeNode]):
            Child nodes keyed by path segment (empty for leaves).

    """

    total_bytes: int = 0
    children: dict[str, "SizeNode"] = field(default_factory=dict)

    @property
    def is_leaf(self) -> bool:
        return not self.children


@dataclass(frozen=True)
class EntryStat:
    """The part of a stat result the walker and the filter look at."""

    device: int
    inode: int
    size: int
    is_dir: bool = False
    is_file: bool = False
    nlink: int = 1

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "EntryStat":
        return cls(
            device=st.st_dev,
            inode=st.st_ino,
            size=st.st_size,
            is_dir=stat.S_ISDIR(st.st_mode),
            is_file=stat.S_ISREG(st.st_mode),
            nlink=st.st_nlink,
        )


@dataclass(frozen=True)
class TraversalConfig:
    """Settings resolved once before the traversal begins.

    Attributes:
        root (str):
            Absolute path of the directory (or file) to scan.
        excludes (frozenset[str]):
            Entry names skipped at any depth.
        squash_hardlinks (bool):
            Count a file reachable through several hard links only once.
        one_file_system (bool):
            Skip entries that live on a different device than the root.
        max_depth (int | None):
            Entries deeper than this are folded into their ancestor at this
            depth (None for no limit).
        root_device (int | None):
            Device id of the root, set when one_file_system is enabled.

    """

    root: str
    excludes: frozenset[str] = frozenset()
    squash_hardlinks: bool = True
    one_file_system: bool = True
    max_depth: int | None = None
    root_device: int | None = None


@dataclass
class TraversalState:
    """Mutable state owned by a single traversal."""

    seen_inodes: set[tuple[int, int]] = field(default_factory=set)
    visited: int = 0
    pruned: int = 0
    errors: int = 0


@dataclass(frozen=True)
class DisplayOptions:
    """How the aggregated tree is printed.

    Attributes:
        unit (Unit):
            Fixed unit for every size, or HUMAN to pick one per value.
        commify (bool):
            Insert thousands separators into the integer part of sizes.
        max_depth (int | None):
            Do not expand nodes deeper than this (None for no limit).
        absolute (bool):
            Label entries with absolute paths and indent them by their
            distance from the filesystem root.
        vim (bool):
            Append a vim modeline that folds the report by indentation.

    """

    unit: Unit = Unit.HUMAN
    commify: bool = False
    max_depth: int | None = None
    absolute: bool = False
    vim: bool = False


# -- Unit scaling --


def human_size(size: int) -> str:
    """
    Convert a size in bytes to a short human-readable string.

    The largest unit in which the value exceeds 9 is printed with one
    decimal. Failing that, the largest unit in which it exceeds 0.9 is
    printed with two decimals. Byte counts are always printed as plain
    integers.

    Args:
        size (int):
            Size in bytes.

    Returns:
        str:
            The scaled size with its unit suffix.

    Examples:
        >>> human_size(9_500_000_000)
        '9.5g'
        >>> human_size(5_000_000)
        '5000.0k'
        >>> human_size(105)
        '105'

    """
    for power, suffix in HUMAN_BUCKETS:
        if size / power > 9:
            return scaled(size, power, suffix, 1)
    for power, suffix in HUMAN_BUCKETS:
        if size / power > 0.9:
            return scaled(size, power, suffix, 2)
    return str(size)


def scaled(size: int, power: int, suffix: str, decimals: int) -> str:
    if power == 1:
        return str(size)
    return f"{size / power:.{decimals}f}{suffix}"


def fixed_size(size: int, unit: Unit) -> str:
    """
    Convert a size in bytes to a fixed unit, truncating to an integer.

    A value that truncates to zero is printed as "0.00" so that it does not
    read as an empty entry.

    Args:
        size (int):
            Size in bytes.
        unit (Unit):
            One of the fixed units (not Unit.HUMAN).

    Returns:
        str:
            The truncated size with its unit suffix.

    Examples:
        >>> fixed_size(999, Unit.KILOBYTES)
        '0.00k'
        >>> fixed_size(2_500_000, Unit.MEGABYTES)
        '2m'

    """
    divisor, suffix = FIXED_UNITS[unit]
    whole = size // divisor
    if whole == 0:
        return f"{whole:.2f}{suffix}"
    return f"{whole}{suffix}"


def commify(text: str) -> str:
    """Insert thousands separators into the leading integer part of text."""
    digits = len(text) - len(text.lstrip("0123456789"))
    if digits == 0:
        return text
    return f"{int(text[:digits]):,}{text[digits:]}"


def format_size(size: int, options: DisplayOptions) -> str:
    """
    Format a size according to the display options.

    Args:
        size (int):
            Size in bytes.
        options (DisplayOptions):
            Unit and separator settings.

    Returns:
        str:
            The formatted size.

    """
    if options.unit is Unit.HUMAN:
        text = human_size(size)
    else:
        text = fixed_size(size, options.unit)
    if options.commify:
        text = commify(text)
    return text


# -- Filtering --


def classify(
    segments: list[str],
    entry: EntryStat,
    config: TraversalConfig,
    state: TraversalState,
) -> FilterOutcome:
    """
    Decide how the walker treats an entry.

    Args:
        segments (list[str]):
            Path segments from the root to the entry.
        entry (EntryStat):
            The entry's stat metadata (not following symlinks).
        config (TraversalConfig):
            Traversal settings.
        state (TraversalState):
            Traversal state; the entry's inode is recorded here the first
            time a hard-linked file is seen.

    Returns:
        FilterOutcome:
            EXCLUDE_SUBTREE for entries on another device, EXCLUDE_SELF when
            any segment is an excluded name, DEDUPLICATE for a regular file
            whose inode was already counted, INCLUDE otherwise.

    Note:
        Only regular files take part in hard-link squashing; directories
        and symlinks are never deduplicated.

    """
    if (
        config.one_file_system
        and config.root_device is not None
        and entry.device != config.root_device
    ):
        return FilterOutcome.EXCLUDE_SUBTREE

    if any(segment in config.excludes for segment in segments):
        return FilterOutcome.EXCLUDE_SELF

    # A file with a single link cannot be met twice, so only multi-link
    # files are remembered.
    if config.squash_hardlinks and entry.is_file and entry.nlink > 1:
        key = (entry.device, entry.inode)
        if key in state.seen_inodes:
            return FilterOutcome.DEDUPLICATE
        state.seen_inodes.add(key)

    return FilterOutcome.INCLUDE


# -- Aggregation --


class SizeAggregator:
    """Builds the SizeNode tree from (path segments, size) records."""

    def __init__(self) -> None:
        self.root = SizeNode()

    def record(self, segments: Iterable[str], size: int) -> None:
        """
        Add size to the root and to every node along segments.

        Missing nodes are created on the way, so the total of every node
        stays equal to the sum of its children after each call.

        Args:
            segments (Iterable[str]):
                Path segments from the root to the entry.
            size (int):
                Number of bytes contributed by the entry.

        """
        node = self.root
        node.total_bytes += size
        for segment in segments:
            child = node.children.get(segment)
            if child is None:
                child = node.children[segment] = SizeNode()
            child.total_bytes += size
            node = child


# -- Traversal --


class FileSystem:
    """The operating system calls made by the walker."""

    def listdir(self, path: str) -> list[str]:
        with os.scandir(path) as it:
            return [entry.name for entry in it]

    def lstat(self, path: str) -> EntryStat:
        return EntryStat.from_stat(os.stat(path, follow_symlinks=False))

    def stat(self, path: str) -> EntryStat:
        return EntryStat.from_stat(os.stat(path))


def split_names(values: list[str]) -> list[str]:
    """Split repeated and comma-separated names into a flat list."""
    names = []
    for value in values:
        names.extend(value.split(","))
    return [name.strip() for name in names if name.strip()]


def resolve_config(
    root: str,
    excludes: Iterable[str] = (),
    squash_hardlinks: bool = True,
    one_file_system: bool = True,
    max_depth: int | None = None,
    fs: FileSystem | None = None,
) -> TraversalConfig:
    """
    Validate the traversal settings and build a TraversalConfig.

    Args:
        root (str):
            Path to scan.
        excludes (Iterable[str]):
            Entry names to skip at any depth.
        squash_hardlinks (bool):
            Count hard-linked files once.
        one_file_system (bool):
            Stay on the device of the root.
        max_depth (int | None):
            Depth at which deeper entries are folded into their ancestor.
        fs (FileSystem | None):
            File system to query (defaults to the real one).

    Returns:
        TraversalConfig:
            The resolved configuration.

    Raises:
        ConfigurationError: If the root does not exist or max_depth is
            negative.

    """
    fs = fs or FileSystem()
    abs_root = os.path.abspath(root)
    if max_depth is not None and max_depth < 0:
        raise ConfigurationError(f"Invalid max depth: {max_depth}")
    try:
        root_stat = fs.stat(abs_root)
    except FileNotFoundError:
        raise ConfigurationError(f"The path '{abs_root}' does not exist.") from None
    except OSError as e:
        raise ConfigurationError(f"Cannot access '{abs_root}': {e}") from e
    return TraversalConfig(
        root=abs_root,
        excludes=frozenset(excludes),
        squash_hardlinks=squash_hardlinks,
        one_file_system=one_file_system,
        max_depth=max_depth,
        root_device=root_stat.device if one_file_system else None,
    )


def walk(
    config: TraversalConfig,
    aggregator: SizeAggregator,
    fs: FileSystem | None = None,
    state: TraversalState | None = None,
) -> TraversalState:
    """
    Scan the tree below config.root and feed every entry to the aggregator.

    Args:
        config (TraversalConfig):
            Traversal settings.
        aggregator (SizeAggregator):
            Receives one record per counted entry.
        fs (FileSystem | None):
            File system to scan (defaults to the real one).
        state (TraversalState | None):
            State to continue from (a fresh one by default).

    Returns:
        TraversalState:
            The state after the walk, with the visit and error counters.

    Note:
        Symlinks are counted by the size of the link and never followed.
        Unreadable entries are logged as warnings and skipped.

    """
    fs = fs or FileSystem()
    if state is None:
        state = TraversalState()

    try:
        root_stat = fs.stat(config.root)
    except OSError as e:
        state.errors += 1
        logger.error(f"Cannot access {config.root}: {e}")
        return state
    if not root_stat.is_dir:
        aggregator.record([], root_stat.size)
        state.visited += 1
        return state

    _walk_directory(config.root, [], config, aggregator, fs, state)
    return state


def _walk_directory(
    path: str,
    segments: list[str],
    config: TraversalConfig,
    aggregator: SizeAggregator,
    fs: FileSystem,
    state: TraversalState,
) -> None:
    try:
        names = fs.listdir(path)
    except OSError as e:
        state.errors += 1
        logger.warning(f"Cannot read directory {path}: {e}")
        return

    for name in names:
        child_path = os.path.join(path, name)
        child_segments = [*segments, name]
        try:
            entry = fs.lstat(child_path)
        except OSError as e:
            state.errors += 1
            logger.warning(f"Cannot access {child_path}: {e}")
            continue
        state.visited += 1

        outcome = classify(child_segments, entry, config, state)
        if outcome is FilterOutcome.EXCLUDE_SUBTREE:
            state.pruned += 1
            continue
        if outcome is FilterOutcome.EXCLUDE_SELF:
            # Everything below carries the excluded segment as well.
            state.pruned += 1
            continue

        if entry.is_dir or outcome is FilterOutcome.DEDUPLICATE:
            size = 0
        else:
            size = entry.size
        if config.max_depth is None:
            aggregator.record(child_segments, size)
        else:
            aggregator.record(child_segments[: config.max_depth], size)

        if entry.is_dir:
            _walk_directory(child_path, child_segments, config, aggregator, fs, state)


# -- Rendering --


def sort_key(item: tuple[str, SizeNode]) -> tuple[int, int, str]:
    """Sort key: larger totals first, then shorter names, then by name."""
    name, node = item
    return (-node.total_bytes, len(name), name)


def sort_children(node: SizeNode) -> list[tuple[str, SizeNode]]:
    return sorted(node.children.items(), key=sort_key)


def path_segments(path: str) -> list[str]:
    return [part for part in path.split(os.sep) if part]


def render(root: SizeNode, options: DisplayOptions, root_path: str) -> Iterator[str]:
    """
    Produce the report lines for an aggregated tree, parents first.

    Args:
        root (SizeNode):
            Root of the aggregated tree.
        options (DisplayOptions):
            Formatting settings.
        root_path (str):
            Path the tree was built from, used for labels and, with
            options.absolute, for the indentation of the root.

    Yields:
        str:
            One formatted report line per displayed node, followed by the
            vim modeline when options.vim is set.

    """
    root_path = os.path.abspath(root_path)
    base_depth = len(path_segments(root_path)) if options.absolute else 0
    yield from _render_node(root, [], base_depth, options, root_path)
    if options.vim:
        yield VIM_MODELINE


def _render_node(
    node: SizeNode,
    segments: list[str],
    base_depth: int,
    options: DisplayOptions,
    root_path: str,
) -> Iterator[str]:
    if options.absolute:
        label = os.path.join(root_path, *segments)
    else:
        label = os.path.join(*segments) if segments else "."
    indent = "  " * (base_depth + len(segments))
    size = format_size(node.total_bytes, options).rjust(SIZE_WIDTH)
    yield f"{indent}{size} {label}"

    if options.max_depth is not None and len(segments) >= options.max_depth:
        return
    for name, child in sort_children(node):
        yield from _render_node(child, [*segments, name], base_depth, options, root_path)


def write_report(lines: Iterable[str], stream: TextIO) -> None:
    for line in lines:
        print(line, file=stream)


def edit_report(lines: Iterable[str], editor: str) -> None:
    """
    Write the report to a temporary file and open it in an editor.

    Args:
        lines (Iterable[str]):
            Report lines.
        editor (str):
            Editor command line, as found in $EDITOR.

    Raises:
        subprocess.CalledProcessError: If the editor exits with an error.
        OSError: If the file cannot be written or the editor cannot start.

    """
    with tempfile.NamedTemporaryFile(
        "w", prefix="sizes-", suffix=".txt", delete=False, errors="surrogateescape"
    ) as handle:
        write_report(lines, handle)
        report_path = handle.name
    try:
        logger.info(f"Opening {report_path} with {editor}")
        subprocess.run([*shlex.split(editor), report_path], check=True)
    finally:
        os.unlink(report_path)


# -- Command line --


def resolve_unit(units: list[Unit] | None) -> Unit:
    """Pick the unit requested on the command line (human by default)."""
    requested = set(units or [])
    if len(requested) > 1:
        names = ", ".join(sorted(unit.value for unit in requested))
        raise ConfigurationError(f"Conflicting unit options: {names}")
    if requested:
        return requested.pop()
    return Unit.HUMAN


def resolve_editor() -> str:
    editor = os.environ.get("EDITOR", "").strip()
    if not editor:
        raise ConfigurationError("--edit requires the EDITOR environment variable.")
    try:
        shlex.split(editor)
    except ValueError as e:
        raise ConfigurationError(f"Cannot parse EDITOR '{editor}': {e}") from e
    return editor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Report cumulative disk usage as an indented tree sorted by size.",
        add_help=False,
    )
    # -h selects human-readable units, so help is long-form only.
    parser.add_argument(
        "--help",
        action="help",
        help="Show this help message and exit",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Directory to scan (default: current directory)",
    )
    parser.add_argument(
        "--dir",
        default=None,
        help="Directory to scan, same as the positional argument",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="Skip entries with this name at any depth (can be used multiple times or comma-separated)",
    )
    parser.add_argument(
        "--squash-hardlinks",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Count hard-linked files only once",
    )
    parser.add_argument(
        "-x",
        "--one-file-system",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Skip directories on other filesystems",
    )
    for short, long, unit, help_text in (
        ("-b", "--bytes", Unit.BYTES, "Print sizes in bytes"),
        ("-k", "--kilobytes", Unit.KILOBYTES, "Print sizes in kilobytes"),
        ("-m", "--megabytes", Unit.MEGABYTES, "Print sizes in megabytes"),
        ("-g", "--gigabytes", Unit.GIGABYTES, "Print sizes in gigabytes"),
        ("-h", "--human", Unit.HUMAN, "Pick a unit per size (default)"),
    ):
        parser.add_argument(
            short,
            long,
            dest="units",
            action="append_const",
            const=unit,
            help=help_text,
        )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=None,
        help="Fold entries deeper than this into their ancestor",
    )
    parser.add_argument(
        "--commify",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Insert thousands separators into sizes",
    )
    parser.add_argument(
        "--absolute",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Show absolute paths, indented from the filesystem root",
    )
    parser.add_argument(
        "--vim",
        action="store_true",
        help="Append a vim modeline that folds the report by indentation",
    )
    parser.add_argument(
        "--edit",
        action="store_true",
        help="Open the report in $EDITOR instead of printing it",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Report unreadable entries and a scan summary",
    )
    return parser


def setup_logging(verbose: bool) -> None:
    logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.ERROR)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the sizes report.

    Parses command-line arguments, resolves the configuration, scans the
    tree and prints the report (or opens it in an editor).

    Returns:
        int:
            Process exit status.

    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.path is not None and args.dir is not None:
        parser.error("give the directory either as an argument or with --dir")

    setup_logging(args.verbose)

    try:
        options = DisplayOptions(
            unit=resolve_unit(args.units),
            commify=args.commify,
            max_depth=args.max_depth,
            absolute=args.absolute,
            vim=args.vim,
        )
        editor = resolve_editor() if args.edit else None
        config = resolve_config(
            root=args.path or args.dir or ".",
            excludes=split_names(args.exclude),
            squash_hardlinks=args.squash_hardlinks,
            one_file_system=args.one_file_system,
            max_depth=args.max_depth,
        )
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    aggregator = SizeAggregator()
    state = walk(config, aggregator)
    logger.info(
        f"Scanned {state.visited} entries under {config.root} "
        f"({state.pruned} skipped, {state.errors} unreadable)"
    )

    lines = render(aggregator.root, options, config.root)
    if editor is None:
        # Undecodable file names come back from os.scandir as lone surrogates.
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(errors="surrogateescape")
        write_report(lines, sys.stdout)
        return 0
    try:
        edit_report(lines, editor)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.error(f"Editor failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
