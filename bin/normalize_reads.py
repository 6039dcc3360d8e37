#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import sys
from array import array
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger
from pydantic import Field, ValidationError
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Tag holding pre-recalibration qualities as a phred+33 string
ORIGINAL_QUALITY_TAG = "OQ"

# Highest phred score representable in a printable SAM quality string
MAX_PHRED = 93

# Emit a progress debug line after this many reads
DEBUG_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


class FormatError(ValueError):
    """A read carries an encoding this tool cannot interpret."""


class CigarOperator(IntEnum):
    """SAM CIGAR operators keyed by their BAM op codes."""

    MATCH = 0  # M
    INS = 1  # I
    DEL = 2  # D
    REF_SKIP = 3  # N
    SOFT_CLIP = 4  # S
    HARD_CLIP = 5  # H
    PAD = 6  # P
    EQUAL = 7  # =
    DIFF = 8  # X

    @property
    def symbol(self) -> str:
        return "MIDNSHP=X"[self]

    @property
    def consumes_reference(self) -> bool:
        return self in REF_CONSUME

    @property
    def consumes_query(self) -> bool:
        return self in QRY_CONSUME


REF_CONSUME = frozenset(
    {
        CigarOperator.MATCH,
        CigarOperator.DEL,
        CigarOperator.REF_SKIP,
        CigarOperator.EQUAL,
        CigarOperator.DIFF,
    }
)
QRY_CONSUME = frozenset(
    {
        CigarOperator.MATCH,
        CigarOperator.INS,
        CigarOperator.SOFT_CLIP,
        CigarOperator.EQUAL,
        CigarOperator.DIFF,
    }
)


@pydantic_dataclass(frozen=True)
class FormattingPolicy:
    """
    How reads are post-processed on their way to the analysis.

    allow_missing_qualities: fill reads lacking base qualities instead of
        passing them through untouched.
    default_base_quality: phred score used for the fill.
    use_original_qualities: restore qualities from the OQ tag when present.
    """

    allow_missing_qualities: bool = False
    default_base_quality: int = Field(default=30, ge=0, le=MAX_PHRED)
    use_original_qualities: bool = False


@dataclass
class FormattingStats:
    """Running counts kept by a ReadFormattingIterator."""

    reads: int = 0
    cigars_consolidated: int = 0
    qualities_restored: int = 0
    qualities_filled: int = 0


# ---------------------------- CIGAR UTILITIES ------------------------------ #


def _checked_operator(op: int, ln: int) -> CigarOperator:
    try:
        operator = CigarOperator(op)
    except ValueError:
        msg = f"Unrecognized CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        logger.error(msg)
        raise FormatError(msg) from None
    if ln < 0:
        msg = f"Negative CIGAR length {ln} for operation {operator.symbol}"
        logger.error(msg)
        raise FormatError(msg)
    return operator


class CigarOp(NamedTuple):
    """One CIGAR run: (operator, run length)."""

    op: CigarOperator
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple, validating the op code and length."""
        op, ln = t
        return CigarOp(_checked_operator(op, ln), ln)

    def to_tuple(self) -> tuple[int, int]:
        return (int(self.op), self.length)


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar | None:
        """
        Convert pysam's list[(op, len)] to a Cigar. Returns None if input is None.
        """
        if cig_raw is None:
            return None
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [run.to_tuple() for run in self]

    def push_compact(self, op: CigarOperator, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores zero lengths.
        """
        if ln == 0:
            return
        if self and self[-1].op == op:
            self[-1] = CigarOp(op, self[-1].length + ln)
            return
        self.append(CigarOp(op, ln))

    def reference_length(self) -> int:
        return sum(run.length for run in self if run.op in REF_CONSUME)

    def query_length(self) -> int:
        return sum(run.length for run in self if run.op in QRY_CONSUME)

    def to_string(self) -> str:
        """SAM text form, '*' for an empty CIGAR."""
        if not self:
            return "*"
        return "".join(f"{run.length}{run.op.symbol}" for run in self)


def consolidate_cigar(ops: Iterable[tuple[int, int]]) -> Cigar:
    """
    Collapse a CIGAR to its canonical form.

    Zero-length runs are dropped and neighbouring runs with the same operator
    are merged, so "3M0M5M0M" becomes "8M" and "4M0I4M" becomes "8M". Per-op
    totals, and with them the reference span, are unchanged.
    """
    src = Cigar.from_pysam(ops) or Cigar()
    out = Cigar()
    for run in src:
        out.push_compact(run.op, run.length)

    # Negative invariant: no zero-length runs, no equal neighbours
    assert all(run.length > 0 for run in out), f"Zero-length run left in {out}"
    assert all(a.op != b.op for a, b in zip(out, out[1:])), (
        f"Adjacent runs share an operator in {out.to_string()}"
    )
    # Positive invariant: reference span preserved
    assert out.reference_length() == src.reference_length(), (
        f"Consolidation changed reference span: {src.reference_length()} -> {out.reference_length()}"
    )
    return out


# --------------------------- READ NORMALIZATION ---------------------------- #


def consolidate_cigar_in_place(aln: pysam.AlignedSegment) -> bool:
    """Rewrite the read's CIGAR in canonical form. Returns True if it changed."""
    cig_raw = aln.cigartuples
    if not cig_raw:
        return False

    try:
        cig = consolidate_cigar(cig_raw)
    except FormatError as exc:
        msg = f"Malformed CIGAR on read '{aln.query_name}': {exc}"
        raise FormatError(msg) from exc

    new_raw = cig.to_pysam()
    if new_raw == [tuple(t) for t in cig_raw]:
        return False

    logger.trace(f"Consolidated CIGAR for '{aln.query_name}' to {cig.to_string()}")
    aln.cigartuples = new_raw
    return True


def restore_original_qualities(aln: pysam.AlignedSegment) -> bool:
    """Replace qualities with the OQ tag contents. Returns True if replaced."""
    if not aln.has_tag(ORIGINAL_QUALITY_TAG):
        return False
    seq = aln.query_sequence
    if not seq:
        # no bases (SEQ '*', e.g. secondary alignments) to attach qualities to
        logger.debug(f"Skip OQ restore: the read '{aln.query_name}' has no query_sequence.")
        return False
    original = pysam.qualitystring_to_array(aln.get_tag(ORIGINAL_QUALITY_TAG))
    if len(original) != len(seq):
        msg = (
            f"Base qualities and read bases differ in length for '{aln.query_name}': "
            f"{ORIGINAL_QUALITY_TAG}={len(original)}, seq={len(seq)}"
        )
        logger.error(msg)
        raise FormatError(msg)
    aln.query_qualities = original
    return True


def fill_missing_qualities(aln: pysam.AlignedSegment, quality: int) -> bool:
    """Give a read without qualities a constant array. Returns True if filled."""
    if aln.query_qualities is not None:
        return False
    seq = aln.query_sequence
    if not seq:
        return False
    aln.query_qualities = array("B", [quality] * len(seq))
    return True


def _check_quality_length(aln: pysam.AlignedSegment) -> None:
    qual = aln.query_qualities
    seq = aln.query_sequence
    if qual is None or seq is None:
        return
    if len(qual) != len(seq):
        msg = (
            f"Base qualities and read bases differ in length for '{aln.query_name}': "
            f"qual={len(qual)}, seq={len(seq)}"
        )
        logger.error(msg)
        raise FormatError(msg)


def normalize_read(
    aln: pysam.AlignedSegment,
    policy: FormattingPolicy,
    stats: FormattingStats | None = None,
) -> pysam.AlignedSegment:
    """
    Normalize one read in place and return it.

    The CIGAR is consolidated, original qualities are restored when the
    policy asks for it, and missing qualities are filled when tolerated.
    """
    stats = stats if stats is not None else FormattingStats()
    stats.reads += 1

    if consolidate_cigar_in_place(aln):
        stats.cigars_consolidated += 1
    if policy.use_original_qualities and restore_original_qualities(aln):
        stats.qualities_restored += 1
    if policy.allow_missing_qualities and fill_missing_qualities(
        aln, policy.default_base_quality
    ):
        stats.qualities_filled += 1

    _check_quality_length(aln)
    return aln


class ReadFormattingIterator:
    """
    Wrap a read source so every read is normalized as it is pulled.

    Each __next__ pulls exactly one read from upstream; the end of the source
    ends this iterator. The iterator is single pass. close() (or leaving a
    `with` block) closes the upstream source when it has a close method.
    """

    def __init__(
        self,
        source: Iterable[pysam.AlignedSegment],
        policy: FormattingPolicy | None = None,
    ) -> None:
        self._source = source
        self._reads: Iterator[pysam.AlignedSegment] = iter(source)
        self.policy = policy if policy is not None else FormattingPolicy()
        self.stats = FormattingStats()

    def __iter__(self) -> ReadFormattingIterator:
        return self

    def __next__(self) -> pysam.AlignedSegment:
        aln = next(self._reads)
        return normalize_read(aln, self.policy, self.stats)

    def close(self) -> None:
        close = getattr(self._source, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> ReadFormattingIterator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


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


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = "Output/input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by its extension.

    Writers copy the header from a template AlignmentFile when given one,
    otherwise from a header dict. CRAM needs a reference filename.
    """
    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening for {'write' if write else 'read'}: {path} (mode={mode})")
    if not write:
        return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)

    if isinstance(template_or_header, pysam.AlignmentFile):
        return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
    if isinstance(template_or_header, dict):
        return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
    msg = f"Writing requires either a template AlignmentFile or a header dict, got {type(template_or_header)}"
    logger.error(msg)
    raise ValueError(msg)


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    policy: FormattingPolicy,
) -> FormattingStats:
    """
    Stream input -> output, normalizing every read on the way through.

    Closing `inp` and `outp` is left to the caller.
    """
    reads = ReadFormattingIterator(inp, policy)
    for aln in reads:
        outp.write(aln)
        if reads.stats.reads % DEBUG_EVERY == 0:
            logger.debug(f"Progress: {reads.stats}")

    logger.info(
        f"Process totals: reads={reads.stats.reads}, "
        f"cigars_consolidated={reads.stats.cigars_consolidated}, "
        f"qualities_restored={reads.stats.qualities_restored}, "
        f"qualities_filled={reads.stats.qualities_filled}",
    )
    return reads.stats


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Normalize aligned reads in SAM/BAM/CRAM before analysis:\n"
            "  - CIGARs are consolidated (zero-length runs dropped, equal neighbours merged)\n"
            "  - original qualities can be restored from the OQ tag\n"
            "  - reads lacking base qualities can be given a default quality"
        ),
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        required=True,
        help="Output SAM/BAM/CRAM",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Qualities
    quality_group = p.add_argument_group("Quality Configuration")
    quality_group.add_argument(
        "--allow-missing-quals",
        action="store_true",
        help="Fill reads that have no base qualities with --default-base-quality",
    )
    quality_group.add_argument(
        "--default-base-quality",
        type=int,
        default=30,
        help=f"Phred score used to fill missing qualities (0-{MAX_PHRED}, default: 30)",
    )
    quality_group.add_argument(
        "--use-original-quals",
        action="store_true",
        help="Replace base qualities with the OQ tag where present",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
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
    logger.info("Starting normalization run.")

    try:
        policy = FormattingPolicy(
            allow_missing_qualities=bool(args.allow_missing_quals),
            default_base_quality=args.default_base_quality,
            use_original_qualities=bool(args.use_original_quals),
        )
    except ValidationError as e:
        logger.error(f"Invalid quality configuration: {e}")
        sys.exit(1)
    logger.debug(f"FormattingPolicy: {policy}")

    input_alignment = open_alignment(
        args.in_path,
        write=False,
        reference=args.reference,
    )
    try:
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template_or_header=input_alignment,
            reference=args.reference,
        )
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        stats = process_stream(input_alignment, output_alignment, policy)
    except FormatError as e:
        logger.error(f"Normalization failed: {e}")
        sys.exit(1)
    finally:
        output_alignment.close()
        input_alignment.close()

    logger.success(
        f"Reads: {stats.reads} | CIGARs consolidated: {stats.cigars_consolidated} | "
        f"Qualities restored: {stats.qualities_restored} | "
        f"Qualities filled: {stats.qualities_filled}",
    )
    logger.info("Normalization run complete.")


if __name__ == "__main__":
    main()
