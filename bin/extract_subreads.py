#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import bisect
import sys
from array import array
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence
    from pathlib import Path
    from typing import TextIO

# ------------------------------- CONSTANTS -------------------------------- #

PROGRAM = "extract_subreads"

# Symbol written over bases outside the HQ window in mask mode
MASK_SYMBOL = b"N"

# HQ region scores are expected accuracy * 10
MAX_HQ_SCORE: int = 1000

# Phred value written for bases that carry no quality (FASTA input, bare consensus)
MISSING_QUALITY: int = 0
PHRED_OFFSET: int = 33

DEFAULT_FASTA_LINE_LENGTH: int = 50

# Emit a progress debug line after reading this many reads
DEBUG_EVERY: int = 100_000

# BAM aux tags
HOLE_NUMBER_TAG = "zm"
SIMULATED_INDEX_TAG = "si"
SIMULATED_COORDINATE_TAG = "sp"

FASTX_SUFFIXES = (".fa", ".fasta", ".fna", ".fq", ".fastq")
FASTQ_SUFFIXES = (".fq", ".fastq")
ALIGNMENT_SUFFIXES = (".sam", ".bam")

_COMPLEMENT = str.maketrans("ACGTNacgtn", "TGCANtgcan")


# ------------------------------- DATA TYPES -------------------------------- #


class OutputFormat(Enum):
    """Text format of the emitted records."""

    FASTA = auto()
    FASTQ = auto()


class RegionType(Enum):
    """Region annotation kinds, numbered as in PacBio region tables."""

    ADAPTER = 0
    INSERT = 1
    HQ_REGION = 2

    @staticmethod
    def parse(token: str) -> RegionType:
        """Accept either the region name or its numeric code."""
        key = token.strip().lower()
        if key.isdigit():
            return RegionType(int(key))
        match key:
            case "adapter":
                return RegionType.ADAPTER
            case "insert":
                return RegionType.INSERT
            case "hqregion" | "hq_region":
                return RegionType.HQ_REGION
        msg = f"unknown region type {token!r}"
        raise ValueError(msg)


class ReadInterval(NamedTuple):
    """Half-open [start, end) range of base offsets into a read."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return max(0, self.end - self.start)


class HQRegion(NamedTuple):
    """High-quality region of a read and its score (0-1000)."""

    start: int
    end: int
    score: int


class TrimWindow(NamedTuple):
    """
    Resolved HQ window for one read. `found` is False when the window is the
    whole-read fallback, in which case `score` is 0.
    """

    start: int
    end: int
    score: int
    found: bool


@dataclass(frozen=True)
class ExtractionConfig:
    """Options controlling how subreads are derived and written."""

    trim_by_region: bool = False
    mask_by_region: bool = False
    split_subreads: bool = True
    min_subread_length: int = 0  # subreads must be strictly longer than this
    min_read_score: int = 0  # per-read HQ score gate
    hole_numbers: frozenset[int] | None = None  # None or empty: no filtering
    print_only_best: bool = False
    print_ccs: bool = False  # write every input read whole, no region processing
    output_format: OutputFormat = OutputFormat.FASTA
    line_length: int = DEFAULT_FASTA_LINE_LENGTH  # 0 writes each field on one line
    include_simulated_metadata: bool = False

    def validate(self) -> None:
        """Raise ValueError for conflicting or out-of-range options."""
        if self.trim_by_region and self.mask_by_region:
            msg = "You cannot both trim and mask regions. Use one or the other."
            raise ValueError(msg)
        if self.min_subread_length < 0:
            msg = f"Minimum subread length must be non-negative, got {self.min_subread_length}"
            raise ValueError(msg)
        if not 0 <= self.min_read_score <= MAX_HQ_SCORE:
            msg = f"Minimum read score must be between 0 and {MAX_HQ_SCORE}, got {self.min_read_score}"
            raise ValueError(msg)
        if self.line_length < 0:
            msg = f"Line length must be non-negative, got {self.line_length}"
            raise ValueError(msg)

    def wants_hole(self, hole_number: int) -> bool:
        return not self.hole_numbers or hole_number in self.hole_numbers


@dataclass
class Read:
    """
    One read as handed over by a read source. `bases` is owned by the read
    and is overwritten in place when masking.
    """

    hole_number: int
    title: str
    bases: bytearray
    qualities: array | None = None
    simulated_sequence_index: int | None = None
    simulated_coordinate: int | None = None

    @classmethod
    def from_strings(
        cls,
        hole_number: int,
        title: str,
        sequence: str,
        qualities: Iterable[int] | None = None,
        simulated_sequence_index: int | None = None,
        simulated_coordinate: int | None = None,
    ) -> Read:
        return cls(
            hole_number=hole_number,
            title=title,
            bases=bytearray(sequence, "ascii"),
            qualities=None if qualities is None else array("B", qualities),
            simulated_sequence_index=simulated_sequence_index,
            simulated_coordinate=simulated_coordinate,
        )

    @property
    def length(self) -> int:
        return len(self.bases)

    @property
    def sequence(self) -> str:
        return self.bases.decode("ascii")


@dataclass(frozen=True)
class SubreadRecord:
    """A titled view onto part of a parent read."""

    read: Read
    interval: ReadInterval
    title: str
    score: int = 0  # interval length * HQ score

    @property
    def length(self) -> int:
        return self.interval.length

    @property
    def sequence(self) -> str:
        return self.read.bases[self.interval.start : self.interval.end].decode("ascii")

    @property
    def qualities(self) -> array | None:
        if self.read.qualities is None:
            return None
        return self.read.qualities[self.interval.start : self.interval.end]


class StreamTotals(NamedTuple):
    """Counters reported at the end of a run."""

    reads_seen: int
    reads_filtered: int  # not in the hole-number list
    reads_empty: int
    reads_without_subreads: int
    records_written: int
    consensus_written: int


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
    delta = verbose - quiet
    match delta:
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
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ----------------------------- REGION TABLE -------------------------------- #


def _collapse_intervals(intervals: Sequence[ReadInterval]) -> list[ReadInterval]:
    """Merge overlapping or touching intervals of a start-sorted sequence."""
    out: list[ReadInterval] = []
    for interval in intervals:
        if out and interval.start <= out[-1].end:
            last = out[-1]
            out[-1] = ReadInterval(last.start, max(last.end, interval.end))
            continue
        out.append(interval)
    return out


@dataclass
class RegionTableEntry:
    """Region annotations for one hole number."""

    hole_number: int
    hq_region: HQRegion | None = None
    adapters: list[ReadInterval] = field(default_factory=list)

    def add_adapter(self, interval: ReadInterval) -> None:
        """Insert an adapter interval, keeping the list sorted by start."""
        assert interval.end >= interval.start, (
            f"Adapter interval end precedes start for hole {self.hole_number}: {interval}"
        )
        bisect.insort(self.adapters, interval)

    def subread_intervals(
        self,
        read_length: int,
        include_adapters: bool = False,  # noqa: FBT001, FBT002
        collapse_overlap: bool = True,  # noqa: FBT001, FBT002
    ) -> list[ReadInterval]:
        """
        Intervals between consecutive adapters, plus read start to the first
        adapter and the last adapter to read end, clipped to [0, read_length].
        Zero-length gaps are omitted.
        """
        assert read_length >= 0, f"Read length must be non-negative, got {read_length}"

        delimiters = [
            ReadInterval(min(a.start, read_length), min(a.end, read_length))
            for a in self.adapters
        ]
        if collapse_overlap:
            delimiters = _collapse_intervals(delimiters)

        out: list[ReadInterval] = []
        cursor = 0
        for adapter in delimiters:
            if adapter.start > cursor:
                out.append(ReadInterval(cursor, adapter.start))
            if include_adapters and adapter.length > 0:
                out.append(adapter)
            cursor = adapter.end
        if read_length > cursor:
            out.append(ReadInterval(cursor, read_length))

        if include_adapters and not collapse_overlap:
            out.sort()

        # Negative invariant: nothing may fall outside the read
        assert all(0 <= iv.start < iv.end <= read_length for iv in out), (
            f"Subread interval outside read bounds for hole {self.hole_number}: {out}"
        )
        return out


class RegionTable:
    """Region table entries keyed by hole number. Read-only once loaded."""

    def __init__(self, entries: Iterable[RegionTableEntry] = ()) -> None:
        self._entries: dict[int, RegionTableEntry] = {
            entry.hole_number: entry for entry in entries
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, hole_number: object) -> bool:
        return hole_number in self._entries

    def has_entry(self, hole_number: int) -> bool:
        return hole_number in self._entries

    def entry_for(self, hole_number: int) -> RegionTableEntry:
        """Return the entry for `hole_number`; raises KeyError when absent."""
        return self._entries[hole_number]


def _parse_region_row(fields: list[str]) -> tuple[int, RegionType, int, int, int]:
    """Validate one `hole_number region_type start end score` row."""
    if len(fields) != 5:  # noqa: PLR2004
        msg = f"expected 5 columns, found {len(fields)}"
        raise ValueError(msg)
    hole_token, type_token, start_token, end_token, score_token = fields
    region_type = RegionType.parse(type_token)
    hole_number, start, end, score = (
        int(hole_token),
        int(start_token),
        int(end_token),
        int(score_token),
    )
    if hole_number < 0 or start < 0 or end < 0:
        msg = f"hole number and offsets must be non-negative: {fields}"
        raise ValueError(msg)
    if end < start:
        msg = f"region end {end} precedes start {start}"
        raise ValueError(msg)
    if region_type is RegionType.HQ_REGION and not 0 <= score <= MAX_HQ_SCORE:
        msg = f"HQ region score {score} outside 0-{MAX_HQ_SCORE}"
        raise ValueError(msg)
    return hole_number, region_type, start, end, score


def load_region_table(path: str | Path) -> RegionTable:
    """
    Read a whitespace-separated region table with columns
    `hole_number region_type start end score`. Blank lines and lines starting
    with '#' are ignored. Insert rows are skipped: subreads are derived from
    adapter boundaries.
    """
    entries: dict[int, RegionTableEntry] = {}
    inserts_skipped = 0

    logger.debug(f"Opening region table: {path}")
    with open(path) as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                hole_number, region_type, start, end, score = _parse_region_row(
                    stripped.split(),
                )
            except ValueError as err:
                msg = f"{path}:{line_number}: malformed region row ({err})"
                logger.error(msg)
                raise ValueError(msg) from err

            entry = entries.setdefault(hole_number, RegionTableEntry(hole_number))
            match region_type:
                case RegionType.ADAPTER:
                    entry.add_adapter(ReadInterval(start, end))
                case RegionType.HQ_REGION:
                    if entry.hq_region is not None:
                        msg = f"{path}:{line_number}: second HQ region for hole {hole_number}"
                        logger.error(msg)
                        raise ValueError(msg)
                    entry.hq_region = HQRegion(start, end, score)
                case RegionType.INSERT:
                    inserts_skipped += 1

    logger.info(f"Loaded region table {path}: {len(entries)} hole numbers")
    if inserts_skipped:
        logger.debug(f"Skipped {inserts_skipped} insert rows in {path}")
    return RegionTable(entries.values())


# ----------------------------- READ SOURCES -------------------------------- #


@dataclass(frozen=True)
class ReadSourceCapabilities:
    """What a read source can supply beyond name and bases."""

    supports_quality: bool = False
    supports_simulated: bool = False


def parse_hole_number(name: str) -> int:
    """Hole number from a PacBio read name `movie/hole[/start_end]`."""
    parts = name.split("/")
    if len(parts) >= 2 and parts[1].isdigit():  # noqa: PLR2004
        return int(parts[1])
    msg = f"Cannot determine hole number from read name {name!r} (expected movie/hole[/...])"
    raise ValueError(msg)


def _strip_gz(path: str) -> str:
    lower = path.lower()
    return lower[: -len(".gz")] if lower.endswith(".gz") else lower


class FastxReadSource:
    """Reads from FASTA/FASTQ (optionally gzipped) through pysam.FastxFile."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.capabilities = ReadSourceCapabilities(
            supports_quality=_strip_gz(path).endswith(FASTQ_SUFFIXES),
            supports_simulated=False,
        )
        self._handle = pysam.FastxFile(path)

    def __enter__(self) -> FastxReadSource:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()

    def __iter__(self) -> Iterator[Read]:
        for record in self._handle:
            qualities = (
                None
                if record.quality is None
                else pysam.qualitystring_to_array(record.quality)
            )
            yield Read(
                hole_number=parse_hole_number(record.name),
                title=record.name,
                bases=bytearray(record.sequence or "", "ascii"),
                qualities=qualities,
            )

    def close(self) -> None:
        self._handle.close()


def _optional_int_tag(aln: pysam.AlignedSegment, tag: str) -> int | None:
    return int(aln.get_tag(tag)) if aln.has_tag(tag) else None


def _read_from_alignment(aln: pysam.AlignedSegment) -> Read:
    """
    Build a Read in original read orientation. Region offsets refer to the
    read as sequenced, so reverse-strand records are flipped back.
    """
    name = aln.query_name
    hole_number = _optional_int_tag(aln, HOLE_NUMBER_TAG)
    if hole_number is None:
        hole_number = parse_hole_number(name)

    seq: str = aln.query_sequence or ""
    qual = aln.query_qualities
    if aln.is_reverse:
        seq = seq.translate(_COMPLEMENT)[::-1]
        qual = None if qual is None else array("B", reversed(qual))

    return Read(
        hole_number=hole_number,
        title=name,
        bases=bytearray(seq, "ascii"),
        qualities=qual,
        simulated_sequence_index=_optional_int_tag(aln, SIMULATED_INDEX_TAG),
        simulated_coordinate=_optional_int_tag(aln, SIMULATED_COORDINATE_TAG),
    )


class BamReadSource:
    """
    Reads from SAM/BAM through pysam.AlignmentFile. Unaligned PacBio BAMs are
    the usual input; secondary and supplementary records are skipped.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.capabilities = ReadSourceCapabilities(
            supports_quality=True,
            supports_simulated=True,
        )
        self.skipped_nonprimary = 0
        mode = "rb" if path.lower().endswith(".bam") else "r"
        self._handle = pysam.AlignmentFile(path, mode, check_sq=False)

    def __enter__(self) -> BamReadSource:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()

    def __iter__(self) -> Iterator[Read]:
        for aln in self._handle.fetch(until_eof=True):
            if aln.is_secondary or aln.is_supplementary:
                self.skipped_nonprimary += 1
                continue
            yield _read_from_alignment(aln)

    def close(self) -> None:
        if self.skipped_nonprimary:
            logger.debug(
                f"Skipped {self.skipped_nonprimary} secondary/supplementary records in {self.path}",
            )
        self._handle.close()


def open_read_source(path: str) -> FastxReadSource | BamReadSource:
    """Pick a read source from the file extension."""
    base = _strip_gz(path)
    if base.endswith(ALIGNMENT_SUFFIXES) and not path.lower().endswith(".gz"):
        logger.debug(f"Opening alignment read source: {path}")
        return BamReadSource(path)
    if base.endswith(FASTX_SUFFIXES):
        logger.debug(f"Opening FASTA/FASTQ read source: {path}")
        return FastxReadSource(path)
    msg = "Read input must end with .fa, .fasta, .fna, .fq, .fastq (optionally .gz), .sam, or .bam"
    logger.error(msg)
    raise ValueError(msg)


# ---------------------------- SUBREAD LOGIC -------------------------------- #


def resolve_trim(
    read: Read,
    region_table: RegionTable,
    config: ExtractionConfig,
) -> TrimWindow:
    """
    HQ window for `read`. Falls back to the whole read with score 0 when the
    read has no entry or no HQ region, or when neither trimming nor masking is
    enabled.
    """
    fallback = TrimWindow(0, read.length, 0, False)
    if not (config.trim_by_region or config.mask_by_region):
        return fallback
    if not region_table.has_entry(read.hole_number):
        return fallback
    hq = region_table.entry_for(read.hole_number).hq_region
    if hq is None:
        return fallback
    return TrimWindow(
        min(hq.start, read.length),
        min(hq.end, read.length),
        hq.score,
        True,
    )


def mask_read(read: Read, window: TrimWindow) -> None:
    """Overwrite bases outside [window.start, window.end) with N, in place."""
    length_before = read.length
    if window.start > 0:
        read.bases[: window.start] = MASK_SYMBOL * window.start
    if window.end < read.length:
        read.bases[window.end :] = MASK_SYMBOL * (read.length - window.end)

    # Positive invariant: masking never changes the read length
    assert read.length == length_before, (
        f"Masking changed length of '{read.title}': {length_before} -> {read.length}"
    )


def generate_intervals(
    read: Read,
    region_table: RegionTable,
    split_subreads: bool,  # noqa: FBT001
) -> list[ReadInterval]:
    """
    Candidate subread intervals. Without splitting this is the whole read.
    With splitting, a read missing from the region table yields nothing.
    """
    if not split_subreads:
        return [ReadInterval(0, read.length)]
    if not region_table.has_entry(read.hole_number):
        return []
    return region_table.entry_for(read.hole_number).subread_intervals(
        read.length,
        include_adapters=False,
        collapse_overlap=True,
    )


def clip_interval(
    interval: ReadInterval,
    window: TrimWindow,
    trim_by_region: bool,  # noqa: FBT001
) -> ReadInterval:
    """Intersect with the HQ window in trim mode; otherwise return unchanged."""
    if not trim_by_region:
        return interval
    return ReadInterval(max(interval.start, window.start), min(interval.end, window.end))


def keep_interval(interval: ReadInterval, hq_score: int, config: ExtractionConfig) -> bool:
    if interval.start >= interval.end:
        return False
    if interval.end - interval.start <= config.min_subread_length:
        return False
    return hq_score >= config.min_read_score


def build_title(read: Read, interval: ReadInterval, config: ExtractionConfig) -> str:
    """
    Read title, plus `/start_end` when splitting and the simulated origin
    when requested. Coordinates are offsets into the untrimmed read.
    """
    title = read.title
    if config.split_subreads:
        title += f"/{interval.start}_{interval.end}"
    if config.include_simulated_metadata:
        if read.simulated_sequence_index is None or read.simulated_coordinate is None:
            msg = f"Read '{read.title}' carries no simulated sequence index/coordinate"
            raise ValueError(msg)
        title += (
            f"/chrIndex_{read.simulated_sequence_index}"
            f"/position_{read.simulated_coordinate}"
        )
    return title


def derive_subreads(
    read: Read,
    region_table: RegionTable,
    config: ExtractionConfig,
) -> list[SubreadRecord]:
    """Resolve, mask, split, clip and filter one read into titled subreads."""
    window = resolve_trim(read, region_table, config)
    logger.trace(f"Trim window for hole {read.hole_number}: {window}")

    if config.mask_by_region:
        mask_read(read, window)

    subreads: list[SubreadRecord] = []
    for interval in generate_intervals(read, region_table, config.split_subreads):
        clipped = clip_interval(interval, window, config.trim_by_region)
        if not keep_interval(clipped, window.score, config):
            continue
        subreads.append(
            SubreadRecord(
                read=read,
                interval=clipped,
                title=build_title(read, clipped, config),
                score=clipped.length * window.score,
            ),
        )

    # Negative invariant: subreads stay inside the read (and the window when trimming)
    lo, hi = (window.start, window.end) if config.trim_by_region else (0, read.length)
    assert all(lo <= s.interval.start < s.interval.end <= hi for s in subreads), (
        f"Subread outside [{lo}, {hi}) for '{read.title}': {[s.interval for s in subreads]}"
    )
    return subreads


def select_best(subreads: Iterable[SubreadRecord]) -> SubreadRecord | None:
    """Highest weighted score; the first one seen wins ties."""
    best: SubreadRecord | None = None
    best_score = -1
    for subread in subreads:
        if subread.score > best_score:
            best = subread
            best_score = subread.score
    return best


# ------------------------------ FORMATTING --------------------------------- #


def _wrap(text: str, line_length: int) -> list[str]:
    if line_length <= 0 or not text:
        return [text]
    return [text[i : i + line_length] for i in range(0, len(text), line_length)]


def quality_string(qualities: Sequence[int] | None, length: int) -> str:
    """Phred+33 string, or the missing-quality sentinel for every base."""
    if qualities is None:
        return chr(MISSING_QUALITY + PHRED_OFFSET) * length
    assert len(qualities) == length, (
        f"Quality/sequence length mismatch: qual={len(qualities)}, seq={length}"
    )
    return pysam.qualities_to_qualitystring(qualities, offset=PHRED_OFFSET)


def format_record(
    title: str,
    sequence: str,
    qualities: Sequence[int] | None,
    output_format: OutputFormat,
    line_length: int,
) -> str:
    match output_format:
        case OutputFormat.FASTA:
            lines = [f">{title}", *_wrap(sequence, line_length)]
        case OutputFormat.FASTQ:
            quals = quality_string(qualities, len(sequence))
            lines = [
                f"@{title}",
                *_wrap(sequence, line_length),
                "+",
                *_wrap(quals, line_length),
            ]
    return "\n".join(lines) + "\n"


def format_sequence(
    record: SubreadRecord | Read,
    output_format: OutputFormat,
    line_length: int,
) -> str:
    """Serialize a subread, or a whole read such as a consensus sequence."""
    return format_record(
        record.title,
        record.sequence,
        record.qualities,
        output_format,
        line_length,
    )


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(  # noqa: C901, PLR0912
    reads: Iterable[Read],
    out: TextIO,
    region_table: RegionTable,
    config: ExtractionConfig,
    ccs_reads: Iterable[Read] | None = None,
) -> StreamTotals:
    """
    Derive and write subreads for every read, one read at a time.

    Processing behavior:
    - Advances the consensus stream once per read (best-only mode only), so the
      two streams stay aligned index-for-index
    - Skips reads outside the hole-number list and zero-length reads
    - In CCS mode writes each read whole
    - Otherwise writes every surviving subread, or in best-only mode the
      consensus read when it is non-empty, else the best-scoring subread

    Args:
        reads: Primary reads
        out: Text sink for FASTA/FASTQ records
        region_table: Region annotations keyed by hole number
        config: Extraction options (validated by the caller)
        ccs_reads: Consensus reads aligned with `reads`, if any

    Returns:
        StreamTotals with per-run counters
    """
    # Positive invariant: trim and mask are mutually exclusive
    assert not (config.trim_by_region and config.mask_by_region), (
        "Configuration enables both trimming and masking"
    )
    assert config.line_length >= 0, f"Line length must be non-negative, got {config.line_length}"

    fmt = config.output_format
    ccs_iter = iter(ccs_reads) if ccs_reads is not None and config.print_only_best else None

    seen = 0
    filtered = 0
    empty = 0
    without_subreads = 0
    written = 0
    consensus_written = 0

    for read in reads:
        seen += 1
        if seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: reads={seen}, written={written}, consensus={consensus_written}, "
                f"filtered={filtered}, empty={empty}, without_subreads={without_subreads}",
            )

        consensus = next(ccs_iter, None) if ccs_iter is not None else None

        if not config.wants_hole(read.hole_number):
            filtered += 1
            continue
        if read.length == 0:
            empty += 1
            continue

        if config.print_ccs:
            out.write(format_sequence(read, fmt, config.line_length))
            written += 1
            continue

        subreads = derive_subreads(read, region_table, config)
        if not subreads:
            without_subreads += 1

        if not config.print_only_best:
            for subread in subreads:
                out.write(format_sequence(subread, fmt, config.line_length))
                written += 1
            continue

        best = select_best(subreads)
        if consensus is not None and consensus.length > 0:
            out.write(format_sequence(consensus, fmt, config.line_length))
            consensus_written += 1
        elif best is not None:
            out.write(format_sequence(best, fmt, config.line_length))
            written += 1

    # Final invariant: every read is accounted for at most once by the skip counters
    assert filtered + empty + without_subreads <= seen, (
        f"Counter inconsistency: seen={seen}, filtered={filtered}, empty={empty}, "
        f"without_subreads={without_subreads}"
    )

    totals = StreamTotals(
        reads_seen=seen,
        reads_filtered=filtered,
        reads_empty=empty,
        reads_without_subreads=without_subreads,
        records_written=written,
        consensus_written=consensus_written,
    )
    logger.info(f"Process totals: {totals}")
    return totals


def extract_file(  # noqa: PLR0913
    in_path: str,
    out_path: str,
    region_table: RegionTable,
    config: ExtractionConfig,
    ccs_path: str | None = None,
) -> StreamTotals:
    """Open the read, consensus and output files and run process_stream over them."""
    reader = open_read_source(in_path)
    try:
        if config.include_simulated_metadata and not reader.capabilities.supports_simulated:
            msg = f"{in_path} cannot supply simulated coordinates; use a SAM/BAM input"
            logger.error(msg)
            raise ValueError(msg)
        if (
            config.output_format is OutputFormat.FASTQ
            and not reader.capabilities.supports_quality
        ):
            logger.warning(
                f"{in_path} has no base qualities; FASTQ records will use Phred {MISSING_QUALITY}.",
            )

        ccs_reader = None
        if ccs_path is not None and config.print_only_best:
            logger.info(f"Reading consensus sequences from {ccs_path}")
            ccs_reader = open_read_source(ccs_path)
        try:
            with open(out_path, "w") as out:
                return process_stream(reader, out, region_table, config, ccs_reader)
        finally:
            if ccs_reader is not None:
                ccs_reader.close()
    finally:
        reader.close()


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog=PROGRAM,
        description=(
            "Write subreads of PacBio reads as FASTA or FASTQ.\n"
            "Reads are split on adapter boundaries from a region table and, with\n"
            "--trim-by-region, clipped to the high-quality region. --mask-by-region\n"
            "keeps subread boundaries but replaces low-quality bases with 'N'.\n"
            "Most of the time you will want --trim-by-region."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        required=True,
        help="Input reads (FASTA/FASTQ, optionally gzipped, or SAM/BAM)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        required=True,
        help="Output FASTA/FASTQ file",
    )
    p.add_argument(
        "--regions",
        dest="regions",
        default=None,
        help="Region table: hole_number, region_type, start, end, score per line",
    )
    p.add_argument(
        "--ccs-reads",
        dest="ccs_path",
        default=None,
        help="Consensus reads in the same order as the input (used with --best)",
    )

    # Region handling
    region_group = p.add_argument_group("Region Handling")
    region_group.add_argument(
        "--trim-by-region",
        action="store_true",
        help="Trim away low quality regions",
    )
    region_group.add_argument(
        "--mask-by-region",
        action="store_true",
        help="Mask low quality regions with 'N'",
    )
    region_group.add_argument(
        "--no-split-subreads",
        dest="split_subreads",
        action="store_false",
        help="Do not split reads on adapter sequences",
    )

    # Filtering
    filter_group = p.add_argument_group("Filtering")
    filter_group.add_argument(
        "--min-subread-length",
        type=int,
        default=0,
        help="Do not write subreads of this length or shorter (default: 0)",
    )
    filter_group.add_argument(
        "--min-read-score",
        type=int,
        default=0,
        help=(
            "Minimum HQ region score (0-1000, expected accuracy * 10) for a read's "
            "subreads to be written. Typical values are 750-800."
        ),
    )
    filter_group.add_argument(
        "--hole-number",
        dest="hole_numbers",
        type=int,
        nargs="+",
        action="extend",
        default=None,
        help="Only write these hole numbers",
    )

    # Output
    output_group = p.add_argument_group("Output")
    output_group.add_argument(
        "--best",
        action="store_true",
        help="Write the consensus sequence if one exists, otherwise the best subread",
    )
    output_group.add_argument(
        "--ccs",
        action="store_true",
        help="Input reads are consensus sequences; write them whole",
    )
    output_group.add_argument(
        "--fastq",
        action="store_true",
        help="Write FASTQ with qualities",
    )
    output_group.add_argument(
        "--line-length",
        type=int,
        default=None,
        help=(
            f"Sequence line length; 0 writes one line "
            f"(default: {DEFAULT_FASTA_LINE_LENGTH} for FASTA, 0 for FASTQ)"
        ),
    )
    output_group.add_argument(
        "--simulated-metadata",
        dest="include_simulated_metadata",
        action="store_true",
        help="Append simulated origin (si/sp BAM tags) to titles",
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


def config_from_args(args: argparse.Namespace) -> ExtractionConfig:
    output_format = OutputFormat.FASTQ if args.fastq else OutputFormat.FASTA
    line_length = args.line_length
    if line_length is None:
        line_length = 0 if output_format is OutputFormat.FASTQ else DEFAULT_FASTA_LINE_LENGTH
    return ExtractionConfig(
        trim_by_region=args.trim_by_region,
        mask_by_region=args.mask_by_region,
        split_subreads=args.split_subreads,
        min_subread_length=args.min_subread_length,
        min_read_score=args.min_read_score,
        hole_numbers=frozenset(args.hole_numbers) if args.hole_numbers else None,
        print_only_best=args.best,
        print_ccs=args.ccs,
        output_format=output_format,
        line_length=line_length,
        include_simulated_metadata=args.include_simulated_metadata,
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info(f"[{PROGRAM}] started.")

    config = config_from_args(args)
    try:
        config.validate()
    except ValueError as err:
        logger.error(f"ERROR! {err}")
        sys.exit(1)
    logger.debug(f"ExtractionConfig: {config}")

    if config.split_subreads and args.regions is None and not config.print_ccs:
        logger.warning(
            "Splitting subreads without a region table writes no subreads; "
            "pass --regions or --no-split-subreads.",
        )

    try:
        region_table = (
            load_region_table(args.regions) if args.regions is not None else RegionTable()
        )
        totals = extract_file(
            args.in_path,
            args.out_path,
            region_table,
            config,
            ccs_path=args.ccs_path,
        )
    except (OSError, ValueError) as err:
        logger.error(f"ERROR! {err}")
        sys.exit(1)

    logger.success(
        f"Reads: {totals.reads_seen} | Subreads written: {totals.records_written} | "
        f"Consensus written: {totals.consensus_written} | "
        f"Without subreads: {totals.reads_without_subreads} | "
        f"Skipped (hole filter/empty): {totals.reads_filtered}/{totals.reads_empty}",
    )
    logger.info(f"[{PROGRAM}] ended.")


if __name__ == "__main__":
    main()
