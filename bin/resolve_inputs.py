#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
# ]
# ///

"""
Resolve the read inputs of an analysis from paths and `.list` files.

A list file holds one reference per line. Blank lines and lines whose first
non-whitespace character is `#` are skipped; every other line is trimmed and
taken literally. List files may name further list files; each list file is
expanded at most once per resolution.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple, Protocol

import polars as pl
from filter_matching import (
    BASENAME,
    IDENTITY,
    FilterSpec,
    InvalidFilterError,
    partition_matching,
)
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

LIST_FILE_SUFFIX = ".list"
LIST_FILE_COMMENT_START = "#"

# Tokens that denote a stream rather than a file and are kept verbatim
STREAM_TOKENS = {"-", "stdin"}


# ------------------------------- DATA TYPES -------------------------------- #


class ResourceNotFoundError(FileNotFoundError):
    """A list file named as input could not be opened."""


class EntryKind(Enum):
    """Classification of one list-file line."""

    BLANK = auto()
    COMMENT = auto()
    REFERENCE = auto()


class ListFileEntry(NamedTuple):
    """One classified list-file line: (kind, trimmed text)."""

    kind: EntryKind
    text: str


def normalize_path(text: str) -> str:
    """Canonical string form used for resource identity."""
    text = text.strip()
    if not text or text in STREAM_TOKENS:
        return text
    return os.path.normpath(text)


@dataclass(frozen=True)
class ResourceReference:
    """
    One resolved analysis input.

    Equality and hashing use only the normalized path; tags are opaque
    metadata supplied by the caller.
    """

    path: str
    tags: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))


class FileSystem(Protocol):
    def is_list_file(self, path: str) -> bool: ...

    def read_lines(self, path: str) -> list[str]: ...


class LocalFileSystem:
    """List-file access against the local disk."""

    def is_list_file(self, path: str) -> bool:
        return Path(path).name.lower().endswith(LIST_FILE_SUFFIX)

    def read_lines(self, path: str) -> list[str]:
        try:
            with open(path, encoding="utf-8") as handle:
                return handle.read().splitlines()
        except OSError as exc:
            msg = f"Unable to read list file '{path}': {exc}"
            logger.error(msg)
            raise ResourceNotFoundError(msg) from exc


# ------------------------------ LIST PARSING ------------------------------- #


def classify_line(line: str) -> ListFileEntry:
    """Classify a single list-file line as blank, comment, or reference."""
    text = line.strip()
    if not text:
        return ListFileEntry(EntryKind.BLANK, "")
    if text.startswith(LIST_FILE_COMMENT_START):
        return ListFileEntry(EntryKind.COMMENT, text)
    return ListFileEntry(EntryKind.REFERENCE, text)


def expand_entries(
    entries: Iterable[str],
    filesystem: FileSystem | None = None,
) -> Iterator[tuple[str, str]]:
    """
    Yield (reference, origin) pairs in encounter order.

    `origin` is the top-level input entry the reference came from, so callers
    can carry per-entry metadata onto expanded references. Nested list files
    are expanded depth-first through an explicit stack; a list file already
    expanded during this call is skipped.
    """
    fs = filesystem if filesystem is not None else LocalFileSystem()
    visited: set[str] = set()

    for entry in entries:
        # `entry` stays untouched as the origin key for tag lookups
        text = entry.strip()
        if not fs.is_list_file(text):
            yield text, entry
            continue

        stack: list[str] = [text]
        while stack:
            candidate = stack.pop()
            if not fs.is_list_file(candidate):
                yield candidate, entry
                continue

            key = normalize_path(candidate)
            if key in visited:
                logger.warning(f"List file '{candidate}' already expanded; skipping.")
                continue
            visited.add(key)

            lines = fs.read_lines(candidate)
            references = [
                parsed.text
                for parsed in map(classify_line, lines)
                if parsed.kind is EntryKind.REFERENCE
            ]
            logger.debug(
                f"List file '{candidate}': {len(lines)} lines, {len(references)} references",
            )
            # reversed so the stack pops them in file order
            stack.extend(reversed(references))


# -------------------------------- RESOLVERS -------------------------------- #


def unpack_set(
    entries: Iterable[str],
    filesystem: FileSystem | None = None,
) -> set[str]:
    """Expand list files among `entries` and return the distinct references."""
    return {ref for ref, _ in expand_entries(entries, filesystem)}


unpack = unpack_set


def unpack_bam_file_list(
    entries: Iterable[str],
    filesystem: FileSystem | None = None,
    tags: Mapping[str, Sequence[str]] | None = None,
) -> list[ResourceReference]:
    """
    Expand `entries` into ResourceReferences, first-seen order, no duplicates.

    `tags` maps an input entry to its tags; references read from a list file
    inherit the tags of that list file.
    """
    entries = list(entries)
    tags = tags or {}
    seen: set[ResourceReference] = set()
    resolved: list[ResourceReference] = []
    for ref, origin in expand_entries(entries, filesystem):
        reference = ResourceReference(ref, tuple(tags.get(origin, ())))
        if reference in seen:
            logger.debug(f"Dropping duplicate input '{reference.path}'")
            continue
        seen.add(reference)
        resolved.append(reference)

    logger.info(f"Resolved {len(resolved)} input(s) from {len(entries)} entries")
    return resolved


def _matching_any(
    refs: Sequence[ResourceReference],
    specs: Sequence[FilterSpec],
    project: Callable[[str], str],
) -> set[ResourceReference]:
    hits: set[ResourceReference] = set()
    for exact in (True, False):
        filters = [s.filter for s in specs if s.exact is exact]
        if filters:
            matched, _ = partition_matching(
                refs, lambda r: project(r.path), filters, exact
            )
            hits.update(matched)
    return hits


def filter_references(
    refs: Sequence[ResourceReference],
    include: Sequence[FilterSpec] = (),
    exclude: Sequence[FilterSpec] = (),
    project: Callable[[str], str] = IDENTITY,
) -> list[ResourceReference]:
    """
    Keep references selected by any include filter (all, when none are
    given), then drop those selected by any exclude filter. Order is kept.
    """
    kept = list(refs)
    if include:
        hits = _matching_any(kept, include, project)
        kept = [r for r in kept if r in hits]
    if exclude:
        hits = _matching_any(kept, exclude, project)
        kept = [r for r in kept if r not in hits]
    logger.debug(f"Filtering kept {len(kept)} of {len(refs)} inputs")
    return kept


def parse_tag_option(value: str) -> tuple[str, tuple[str, ...]]:
    """Parse `ENTRY=TAG[,TAG...]` into (entry, tags)."""
    entry, sep, raw = value.rpartition("=")
    if not sep or not entry:
        msg = f"Tag option must look like ENTRY=TAG[,TAG...], got {value!r}"
        raise ValueError(msg)
    return entry, tuple(t for t in (p.strip() for p in raw.split(",")) if t)


def write_manifest(refs: Sequence[ResourceReference], output_path: Path) -> None:
    """Save resolved references and their tags as a TSV using polars."""
    manifest = pl.DataFrame(
        {
            "path": [r.path for r in refs],
            "tags": [",".join(r.tags) for r in refs],
        },
        schema={"path": pl.String, "tags": pl.String},
    )
    manifest.write_csv(output_path, separator="\t")
    logger.info(f"Saved manifest of {len(refs)} inputs to {output_path}")


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    match verbose - quiet:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case _:
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Resolve read inputs from paths and .list files, then apply\n"
            "include/exclude filters. Prints one resolved path per line."
        ),
    )
    p.add_argument(
        "-I",
        "--input",
        dest="entries",
        action="append",
        required=True,
        help="Input path or .list file (repeatable)",
    )
    p.add_argument(
        "--include",
        action="append",
        default=[],
        help="Keep only inputs matching this filter (repeatable)",
    )
    p.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="Drop inputs matching this filter (repeatable)",
    )
    p.add_argument(
        "--exact",
        action="store_true",
        help="Compare filters literally instead of as regular expressions",
    )
    p.add_argument(
        "--match-on",
        choices=["path", "name"],
        default="path",
        help="Key the filters are compared against (default: path)",
    )
    p.add_argument(
        "--tag",
        action="append",
        default=[],
        metavar="ENTRY=TAG[,TAG...]",
        help="Attach tags to an input entry (repeatable)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        default=None,
        help="Write resolved paths here instead of stdout",
    )
    p.add_argument(
        "--manifest",
        default=None,
        help="Also write a path/tags TSV manifest",
    )

    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        tags = dict(parse_tag_option(t) for t in args.tag)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    project = BASENAME if args.match_on == "name" else IDENTITY
    include = [FilterSpec(f, args.exact) for f in args.include]
    exclude = [FilterSpec(f, args.exact) for f in args.exclude]

    try:
        refs = unpack_bam_file_list(args.entries, tags=tags)
        refs = filter_references(refs, include, exclude, project)
    except (ResourceNotFoundError, InvalidFilterError) as e:
        logger.error(f"Input resolution failed: {e}")
        sys.exit(1)

    lines = "".join(f"{r.path}\n" for r in refs)
    if args.out_path:
        Path(args.out_path).write_text(lines, encoding="utf-8")
    else:
        sys.stdout.write(lines)

    if args.manifest:
        write_manifest(refs, Path(args.manifest))

    logger.success(f"Resolved {len(refs)} input(s)")


if __name__ == "__main__":
    main()
