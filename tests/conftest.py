# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the cluster-splitting tests.

This module provides shared fixtures for testing aggregate_alignments.py: a
record factory, an in-memory output channel, and helpers that write small
SAM/BAM inputs and cluster tables to a temporary directory.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from aggregate_alignments import AlignmentRecord, Cigar


class ListChannel:
    """In-memory stand-in for AlignmentChannel."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.records: list[AlignmentRecord] = []
        self.num_written = 0
        self.close_calls = 0

    def write(self, record: AlignmentRecord) -> None:
        self.records.append(record)
        self.num_written += 1

    def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def out_dir(temp_dir: Path) -> Path:
    """An empty, existing output directory."""
    path = temp_dir / "clusters"
    path.mkdir()
    return path


@pytest.fixture
def make_record() -> Callable[..., AlignmentRecord]:
    """Factory for AlignmentRecord values with sensible defaults."""

    def _make(
        sequence: str = "ACGTACGTACGTACGTACGTACGT",
        cigar: str | None = None,
        alignment_start: int = 100,
        barcode: str | None = "AAACCCGG-1",
        **kwargs: Any,
    ) -> AlignmentRecord:
        attributes = {} if barcode is None else {"CB": barcode}
        attributes.update(kwargs.pop("attributes", {}))
        return AlignmentRecord(
            alignment_start=alignment_start,
            sequence=sequence,
            qualities=tuple(range(len(sequence))),
            cigar=Cigar.parse(cigar if cigar is not None else f"{len(sequence)}M"),
            attributes=attributes,
            **kwargs,
        )

    return _make


@pytest.fixture
def list_channel_opener() -> Callable[[Path], ListChannel]:
    """Channel factory for ClusterRouter that keeps records in memory."""
    return ListChannel


@pytest.fixture
def reference_sequence() -> str:
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG" * 5


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "chr1", "LN": len(reference_sequence)}],
    }


def write_alignments(
    path: Path,
    reference_sequence: str,
    reads: list[dict[str, Any]],
) -> Path:
    """
    Write `reads` to a SAM/BAM file. Each read is a dict with keys
    name, seq, cigar (string or None), pos (0-based, -1 for unmapped),
    and optionally reverse, mate_pos, tlen and tags.
    """
    mode = "wb" if path.suffix == ".bam" else "w"
    header = create_sam_header(reference_sequence)
    with pysam.AlignmentFile(str(path), mode, header=header) as handle:
        for read in reads:
            aln = pysam.AlignedSegment(handle.header)
            aln.query_name = read["name"]
            mapped = read["pos"] >= 0
            flag = 0 if mapped else 4
            if read.get("reverse"):
                flag |= 16
            aln.flag = flag
            aln.reference_id = 0 if mapped else -1
            aln.reference_start = read["pos"]
            aln.mapping_quality = 60 if mapped else 0
            if read.get("cigar"):
                aln.cigarstring = read["cigar"]
            aln.next_reference_id = 0 if read.get("mate_pos", -1) >= 0 else -1
            aln.next_reference_start = read.get("mate_pos", -1)
            aln.template_length = read.get("tlen", 0)
            aln.query_sequence = read["seq"]
            aln.query_qualities = pysam.qualitystring_to_array("I" * len(read["seq"]))
            aln.set_tags(list(read.get("tags", {}).items()))
            handle.write(aln)
    return path


def write_cluster_table(path: Path, lines: list[str]) -> Path:
    path.write_text("".join(f"{line}\n" for line in lines))
    return path


@pytest.fixture
def sample_bam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """
    Five reads: a forward read, a reverse read and an unmapped read in
    barcode AAA (cluster A), a read in barcode CCC (cluster B) and a read
    without a barcode.
    """
    reads = [
        {
            "name": "fwd",
            "seq": "GGGGACGTACGTACGTACGTACGT",
            "cigar": "4S20M",
            "pos": 99,
            "mate_pos": 199,
            "tlen": 150,
            "tags": {"CB": "AAA"},
        },
        {
            "name": "rev",
            "seq": "ACGTACGTACGTACGTACGTTTTTT",
            "cigar": "20M5S",
            "pos": 199,
            "reverse": True,
            "mate_pos": 99,
            "tlen": -150,
            "tags": {"CB": "AAA"},
        },
        {
            "name": "clusterB",
            "seq": "ACGTACGTACGTACGTACGTACGT",
            "cigar": "4S20M",
            "pos": 49,
            "tags": {"CB": "CCC"},
        },
        {
            "name": "untagged",
            "seq": "ACGTACGTACGTACGTACGTACGT",
            "cigar": "24M",
            "pos": 9,
        },
        {
            "name": "unmapped",
            "seq": "TTTTACGTACGTACGTACGTACGT",
            "cigar": None,
            "pos": -1,
            "tags": {"CB": "AAA"},
        },
    ]
    return write_alignments(temp_dir / "sample.bam", reference_sequence, reads)


@pytest.fixture
def sample_cluster_table(temp_dir: Path) -> Path:
    return write_cluster_table(
        temp_dir / "clusters.tsv",
        ["AAA\tA", "CCC,B", "GGG\tC"],
    )


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect loguru messages at DEBUG and above."""
    from loguru import logger

    messages: list[str] = []
    sink_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(sink_id)
