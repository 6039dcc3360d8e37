# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for read normalization and input resolution.

This module puts bin/ on the import path and provides shared fixtures: a mock
AlignedSegment, small SAM/BAM files, and list-file builders.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence for testing alignment."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without building pysam records."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ATCGATCGATCG",
        query_qualities: list[int] | None = None,
        cigartuples: list[tuple[int, int]] | None = None,
        tags: dict[str, Any] | None = None,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        self.query_qualities = query_qualities
        self.cigartuples = cigartuples
        self._tags = dict(tags or {})

    def has_tag(self, tag: str) -> bool:
        return tag in self._tags

    def get_tag(self, tag: str) -> Any:
        return self._tags[tag]


class RecordingSource:
    """Iterable read source that records pulls and whether it was closed."""

    def __init__(self, reads: list[Any]) -> None:
        self._reads = iter(reads)
        self.pulls = 0
        self.closed = False

    def __iter__(self) -> "RecordingSource":
        return self

    def __next__(self) -> Any:
        read = next(self._reads)
        self.pulls += 1
        return read

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def mock_unconsolidated_read() -> MockAlignedSegment:
    """A read whose CIGAR 3M0M5M0M should collapse to 8M."""
    return MockAlignedSegment(
        query_name="unconsolidated_read",
        query_sequence="ATCGATCG",
        query_qualities=[30] * 8,
        cigartuples=[(0, 3), (0, 0), (0, 5), (0, 0)],
    )


@pytest.fixture
def mock_no_quality_read() -> MockAlignedSegment:
    """A mapped read without base qualities."""
    return MockAlignedSegment(
        query_name="no_quality_read",
        query_sequence="ATCGATCGAT",
        query_qualities=None,
        cigartuples=[(0, 10)],
    )


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "test_reference", "LN": len(reference_sequence)}],
        "PG": [{"ID": "test", "PN": "normalize_reads_test", "VN": "0.1.0"}],
    }


def make_read(
    qname: str,
    seq: str,
    cigar: list[tuple[int, int]],
    ref_start: int = 0,
    quals: list[int] | None = None,
    tags: list[tuple[str, Any]] | None = None,
) -> pysam.AlignedSegment:
    """Build a mapped pysam read on reference 0."""
    read = pysam.AlignedSegment()
    read.query_name = qname
    read.query_sequence = seq
    if quals is not None:
        read.query_qualities = quals
    read.cigartuples = cigar
    read.reference_id = 0
    read.reference_start = ref_start
    read.mapping_quality = 60
    if tags:
        read.set_tags(tags)
    return read


@pytest.fixture
def sample_bam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """BAM file with reads needing consolidation, quality fill, and neither."""
    bam_path = temp_dir / "sample.bam"
    header = create_sam_header(reference_sequence)

    reads = [
        make_read("split_match", "ATCGATCG", [(0, 3), (0, 0), (0, 5)], 0, [30] * 8),
        make_read("zero_insert", "ATCGATCG", [(0, 4), (1, 0), (0, 4)], 4, [25] * 8),
        make_read("no_quals", "ATCGATCGAT", [(0, 10)], 8),
        make_read("clean", "ATCGAT", [(4, 2), (0, 4)], 12, [20] * 6),
        make_read(
            "with_oq",
            "ATCG",
            [(0, 4)],
            16,
            [10] * 4,
            tags=[("OQ", "IIII")],
        ),
    ]
    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam_file:
        for read in reads:
            bam_file.write(read)

    return bam_path


@pytest.fixture
def write_list_file(temp_dir: Path) -> Callable[..., Path]:
    """Return a helper writing `lines` to `<temp_dir>/<name>.list`."""

    def _write(name: str, *lines: str) -> Path:
        path = temp_dir / f"{name}.list"
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def example_bam_path(temp_dir: Path) -> str:
    """Path string of a BAM referenced from list files (never opened)."""
    return str(temp_dir / "exampleBAM.bam")


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
