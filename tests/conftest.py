# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for extract_subreads testing.

This module provides shared fixtures for testing extract_subreads.py: in-memory
reads and region tables, plus FASTA/FASTQ/BAM read files and region table files
written to a temporary directory.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from extract_subreads import (
    HQRegion,
    Read,
    ReadInterval,
    RegionTable,
    RegionTableEntry,
)

MOVIE = "m54006_160504_020705"


def make_read(
    hole_number: int,
    length: int,
    base: str = "A",
    with_qualities: bool = True,
    **kwargs,
) -> Read:
    """A read of `length` copies of `base`, titled like a PacBio ZMW read."""
    return Read.from_strings(
        hole_number=hole_number,
        title=f"{MOVIE}/{hole_number}",
        sequence=base * length,
        qualities=[20] * length if with_qualities else None,
        **kwargs,
    )


def patterned_sequence(length: int) -> str:
    """Non-repetitive-looking sequence so slices are distinguishable."""
    return ("ACGT" * (length // 4 + 1))[:length]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def hole7_entry() -> RegionTableEntry:
    """Hole 7: HQ region 10-90 (score 800), zero-length adapters at 30 and 60."""
    entry = RegionTableEntry(hole_number=7, hq_region=HQRegion(10, 90, 800))
    entry.add_adapter(ReadInterval(30, 30))
    entry.add_adapter(ReadInterval(60, 60))
    return entry


@pytest.fixture
def hole7_table(hole7_entry: RegionTableEntry) -> RegionTable:
    return RegionTable([hole7_entry])


@pytest.fixture
def hole7_read() -> Read:
    """Length-100 read for hole 7 with a distinguishable base pattern."""
    sequence = patterned_sequence(100)
    return Read.from_strings(
        hole_number=7,
        title=f"{MOVIE}/7",
        sequence=sequence,
        qualities=list(range(100)),
    )


@pytest.fixture
def region_table_file(temp_dir: Path) -> Path:
    """
    Region table text file:
      hole 7: HQ 10-90 score 800, adapters 28-32 and 58-62
      hole 8: HQ 0-40 score 500, no adapters
      hole 9: adapters only (no HQ region)
    """
    path = temp_dir / "regions.tsv"
    path.write_text(
        "# hole_number\tregion_type\tstart\tend\tscore\n"
        "7\tHQRegion\t10\t90\t800\n"
        "7\tAdapter\t28\t32\t0\n"
        "7\tAdapter\t58\t62\t0\n"
        "7\tInsert\t0\t28\t0\n"
        "\n"
        "8\t2\t0\t40\t500\n"
        "9\t0\t20\t25\t0\n",
    )
    return path


@pytest.fixture
def fasta_reads_file(temp_dir: Path) -> Path:
    """FASTA with holes 7, 8 and 9 (lengths 100, 50, 60)."""
    path = temp_dir / "reads.fasta"
    with open(path, "w") as f:
        for hole, length in ((7, 100), (8, 50), (9, 60)):
            f.write(f">{MOVIE}/{hole}\n{patterned_sequence(length)}\n")
    return path


@pytest.fixture
def fastq_reads_file(temp_dir: Path) -> Path:
    """FASTQ with holes 7 and 8, every base at Phred 30 ('?')."""
    path = temp_dir / "reads.fastq"
    with open(path, "w") as f:
        for hole, length in ((7, 100), (8, 50)):
            f.write(f"@{MOVIE}/{hole}\n{patterned_sequence(length)}\n+\n{'?' * length}\n")
    return path


def _unaligned_segment(name: str, sequence: str | None = None) -> pysam.AlignedSegment:
    read = pysam.AlignedSegment()
    read.query_name = name
    if sequence:
        read.query_sequence = sequence
        read.query_qualities = pysam.qualitystring_to_array("5" * len(sequence))
    read.flag = 4
    read.reference_id = -1
    read.reference_start = -1
    read.next_reference_id = -1
    read.next_reference_start = -1
    return read


@pytest.fixture
def ccs_reads_file(temp_dir: Path) -> Path:
    """
    Consensus BAM aligned with fasta_reads_file (holes 7, 8, 9). Only hole 8
    has a consensus sequence; the others are empty records.
    """
    path = temp_dir / "ccs.bam"
    header = {"HD": {"VN": "1.6", "SO": "unknown"}}

    with pysam.AlignmentFile(str(path), "wb", header=header) as bam_file:
        bam_file.write(_unaligned_segment(f"{MOVIE}/7/ccs"))
        bam_file.write(_unaligned_segment(f"{MOVIE}/8/ccs", "GATTACA"))
        bam_file.write(_unaligned_segment(f"{MOVIE}/9/ccs"))

    return path


@pytest.fixture
def unaligned_bam_file(temp_dir: Path) -> Path:
    """
    Unaligned BAM with hole 7 (zm tag, simulated si/sp tags) and hole 12 whose
    hole number is only present in the read name.
    """
    path = temp_dir / "subreads.bam"
    header = {"HD": {"VN": "1.6", "SO": "unknown"}}

    with pysam.AlignmentFile(str(path), "wb", header=header) as bam_file:
        read = _unaligned_segment(f"{MOVIE}/7", patterned_sequence(100))
        read.set_tag("zm", 7)
        read.set_tag("si", 3)
        read.set_tag("sp", 12345)
        bam_file.write(read)
        bam_file.write(_unaligned_segment(f"{MOVIE}/12", "ACGTACGTAC"))

    return path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
