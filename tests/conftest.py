# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the scramble / scram_merge tests.

Provides real SAM/BAM/CRAM files written with pysam for integration tests,
and in-memory fake streams and records for exercising the merge logic
without touching disk.
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

# Now we can import the modules we're testing
from alignment_io import AlignmentIOError, AlignmentRecord


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence for CRAM tests."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


@pytest.fixture
def reference_fasta(temp_dir: Path, reference_sequence: str) -> Path:
    """Create a simple reference FASTA file."""
    ref_path = temp_dir / "reference.fasta"
    with open(ref_path, "w") as f:
        f.write(">test_reference\n")
        f.write(f"{reference_sequence}\n")
    return ref_path


def create_sam_header(references: list[tuple[str, int]] | None = None) -> dict[str, Any]:
    """Create a coordinate-sorted SAM header; chr1:1000 and chr2:800 by default."""
    if references is None:
        references = [("chr1", 1000), ("chr2", 800)]
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in references],
        "PG": [{"ID": "test", "PN": "scramtools_test", "VN": "0.1.0"}],
    }


def build_segment(
    qname: str,
    reference_id: int,
    reference_start: int,
    *,
    is_reverse: bool = False,
    read_number: int | None = None,
    sequence: str = "ATCGATCGAT",
) -> pysam.AlignedSegment:
    """
    Build a pysam read. reference_id -1 makes an unmapped read; read_number
    1 or 2 makes it one end of a pair.
    """
    read = pysam.AlignedSegment()
    read.query_name = qname
    read.query_sequence = sequence
    read.query_qualities = [30] * len(sequence)
    read.flag = 0
    if read_number is not None:
        read.is_paired = True
        read.is_read1 = read_number == 1
        read.is_read2 = read_number == 2  # noqa: PLR2004
    if reference_id < 0:
        read.is_unmapped = True
        read.reference_id = -1
        read.reference_start = -1
    else:
        read.reference_id = reference_id
        read.reference_start = reference_start
        read.cigartuples = [(0, len(sequence))]
        read.mapping_quality = 60
    read.is_reverse = is_reverse
    return read


ReadSpec = tuple[str, int, int] | tuple[str, int, int, bool]


def write_alignment_file(
    path: Path,
    reads: list[ReadSpec],
    header: dict[str, Any] | None = None,
    reference: Path | None = None,
) -> Path:
    """Write (qname, reference_id, start[, is_reverse]) reads to SAM/BAM/CRAM by extension."""
    modes = {".sam": "w", ".bam": "wb", ".cram": "wc"}
    kwargs = {}
    if reference is not None:
        kwargs["reference_filename"] = str(reference)
    with pysam.AlignmentFile(
        str(path),
        modes[path.suffix],
        header=header or create_sam_header(),
        **kwargs,
    ) as out:
        for spec in reads:
            qname, ref_id, start = spec[:3]
            is_reverse = spec[3] if len(spec) > 3 else False  # noqa: PLR2004
            out.write(build_segment(qname, ref_id, start, is_reverse=is_reverse))
    return path


def read_names(path: Path, reference: Path | None = None) -> list[str]:
    """Query names of every record in an alignment file, in file order."""
    kwargs = {}
    if reference is not None:
        kwargs["reference_filename"] = str(reference)
    with pysam.AlignmentFile(str(path), "r", **kwargs) as fh:
        return [read.query_name for read in fh.fetch(until_eof=True)]


@pytest.fixture
def lane_a_bam(temp_dir: Path) -> Path:
    """Sorted BAM: chr1:10, chr1:30, chr2:5, then an unmapped read."""
    return write_alignment_file(
        temp_dir / "lane_a.bam",
        [("a1", 0, 10), ("a2", 0, 30), ("a3", 1, 5), ("a4", -1, -1)],
    )


@pytest.fixture
def lane_b_bam(temp_dir: Path) -> Path:
    """Sorted BAM: chr1:20, chr1:30, chr2:1."""
    return write_alignment_file(
        temp_dir / "lane_b.bam",
        [("b1", 0, 20), ("b2", 0, 30), ("b3", 1, 1)],
    )


@pytest.fixture
def indexed_bam(temp_dir: Path) -> Path:
    """Sorted, indexed BAM spread over both references."""
    bam_path = write_alignment_file(
        temp_dir / "indexed.bam",
        [("r1", 0, 10), ("r2", 0, 200), ("r3", 0, 500), ("r4", 1, 50)],
    )
    pysam.index(str(bam_path))
    return bam_path


@pytest.fixture
def sample_cram_file(temp_dir: Path, reference_fasta: Path, reference_sequence: str) -> Path:
    """CRAM encoded against `reference_fasta`."""
    header = create_sam_header([("test_reference", len(reference_sequence))])
    return write_alignment_file(
        temp_dir / "sample.cram",
        [("c1", 0, 0), ("c2", 0, 12), ("c3", 0, 40)],
        header=header,
        reference=reference_fasta,
    )


class FakeStream:
    """In-memory stand-in for AlignmentStream used by merge unit tests."""

    def __init__(
        self,
        records: list[AlignmentRecord] | None = None,
        path: str = "fake",
        fail_on_read: int | None = None,
        fail_on_write: int | None = None,
    ) -> None:
        self.path = path
        self.pending = list(records or [])
        self.written: list[AlignmentRecord] = []
        self.reads = 0
        self.close_calls = 0
        self.reference_set: object | None = None
        self.fail_on_read = fail_on_read
        self.fail_on_write = fail_on_write

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def read_record(self) -> AlignmentRecord | None:
        assert not self.closed, f"read from closed fake stream {self.path}"
        self.reads += 1
        if self.fail_on_read is not None and self.reads >= self.fail_on_read:
            raise AlignmentIOError(f"simulated read failure on {self.path}")
        if not self.pending:
            return None
        return self.pending.pop(0)

    def write_record(self, record: AlignmentRecord) -> None:
        assert not self.closed, f"write to closed fake stream {self.path}"
        if self.fail_on_write is not None and len(self.written) + 1 >= self.fail_on_write:
            raise AlignmentIOError(f"simulated write failure on {self.path}")
        self.written.append(record)

    def set_reference_set(self, reference_set: object | None) -> None:
        self.reference_set = reference_set

    def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def fake_stream() -> type[FakeStream]:
    """The FakeStream class, for building lanes and outputs."""
    return FakeStream


@pytest.fixture
def make_record() -> Callable[..., AlignmentRecord]:
    """Factory for payload-tagged AlignmentRecords."""

    def _make(
        reference_id: int,
        position: int,
        tag: str | None = None,
        *,
        is_reverse: bool = False,
        is_second_of_pair: bool = False,
    ) -> AlignmentRecord:
        return AlignmentRecord(
            reference_id=reference_id,
            position=position,
            is_reverse=is_reverse,
            is_second_of_pair=is_second_of_pair,
            payload=tag,
        )

    return _make


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
