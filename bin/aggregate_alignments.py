#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///

"""
Split a SAM/BAM/CRAM file into one alignment file per cell cluster.

Each record is assigned to a cluster through its cell-barcode tag (``CB`` by
default) and a barcode -> cluster table. Before it is written, the record is
corrected for the bases that were trimmed from the read ends ahead of
alignment: the alignment start (or the mate start, for reverse reads), the
insert size, the sequence, the base qualities and the CIGAR are all adjusted.
"""

from __future__ import annotations

import argparse
import copy
import re
import sys
import time
from collections import Counter
from collections.abc import Iterator, Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from enum import IntEnum
from functools import partial
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, NamedTuple, Protocol

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
CIGAR_CHARS = "MIDNSHP=X"

# 1-based alignment start of a record that is not placed on the reference
UNMAPPED_START: int = 0

DEFAULT_BARCODE_TAG: str = "CB"
DEFAULT_FORWARD_TRIM: int = 4
DEFAULT_REVERSE_TRIM: int = -5

OUTPUT_PREFIX: str = "cluster_"
OUTPUT_FORMATS = ("bam", "sam", "cram")

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000

_CLUSTER_LINE_SPLIT = re.compile(r"[\t,]")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_CIGAR_RUN = re.compile(r"(\d+)([MIDNSHP=X])")


# ------------------------------- EXCEPTIONS -------------------------------- #


class ConfigurationError(ValueError):
    """Invalid run parameters, detected before any file is touched."""


class OutputExistsError(FileExistsError):
    """A per-cluster output file would overwrite an existing path."""


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class TrimOffsets:
    """
    Bases removed from the read ends before alignment.

    ``forward_trim`` is the number of bases cut from the 5' end (>= 0) and
    ``reverse_trim`` is the negated number cut from the 3' end (<= 0), so the
    defaults of 4 and -5 describe a read that lost 4 bases at the start and 5
    at the end.
    """

    forward_trim: int = DEFAULT_FORWARD_TRIM
    reverse_trim: int = DEFAULT_REVERSE_TRIM

    def __post_init__(self) -> None:
        if self.forward_trim < 0:
            msg = f"--startbases must be 0 or positive, got {self.forward_trim}"
            raise ConfigurationError(msg)
        if self.reverse_trim > 0:
            msg = f"--endbases must be 0 or negative, got {self.reverse_trim}"
            raise ConfigurationError(msg)

    @property
    def insert_size_offset(self) -> int:
        """Total template shortening, applied with opposite signs per strand."""
        return self.forward_trim - self.reverse_trim


@dataclass
class RoutingStats:
    """Per-run record counters."""

    routed: int = 0
    missing_barcode: int = 0
    unknown_barcode: int = 0
    missing_cluster: int = 0
    # routed records whose CIGAR read length differs from the sequence length
    length_mismatch: int = 0
    per_cluster: Counter[str] = field(default_factory=Counter)

    @property
    def seen(self) -> int:
        return self.routed + self.dropped

    @property
    def dropped(self) -> int:
        return self.missing_barcode + self.unknown_barcode + self.missing_cluster


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


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOperator(IntEnum):
    """The closed set of CIGAR operations, numbered as in the BAM format."""

    M = 0  # alignment match (can be a sequence match or mismatch)
    I = 1  # insertion to the reference  # noqa: E741
    D = 2  # deletion from the reference
    N = 3  # skipped region from the reference
    S = 4  # soft clip
    H = 5  # hard clip
    P = 6  # padding
    EQ = 7  # sequence match
    X = 8  # sequence mismatch

    @property
    def consumes_read_bases(self) -> bool:
        return self.value in QRY_CONSUME

    @property
    def consumes_reference_bases(self) -> bool:
        return self.value in REF_CONSUME

    @property
    def char(self) -> str:
        return CIGAR_CHARS[self.value]

    @classmethod
    def from_char(cls, char: str) -> CigarOperator:
        return cls(CIGAR_CHARS.index(char))


class CigarOp(NamedTuple):
    """One CIGAR run: (operation, run length)."""

    op: CigarOperator
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw pysam (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(CigarOperator(op), ln)

    @staticmethod
    def to_tuple(run: CigarOp) -> tuple[int, int]:
        """Convert a CigarOp back to a raw (op, len) tuple."""
        return (int(run.op), run.length)


class Cigar(tuple[CigarOp, ...]):
    """An immutable sequence of CigarOp runs in read (left-to-right) order."""

    __slots__ = ()

    @classmethod
    def from_pysam(cls, cig_raw: Iterable[tuple[int, int]] | None) -> Cigar:
        """Convert pysam's list[(op, len)] to a Cigar; None becomes empty."""
        if cig_raw is None:
            return cls()
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    @classmethod
    def parse(cls, text: str) -> Cigar:
        """Parse a SAM CIGAR string such as ``4S20M1I3M``; ``*`` is empty."""
        if text in ("", "*"):
            return cls()
        runs = _CIGAR_RUN.findall(text)
        if "".join(f"{ln}{ch}" for ln, ch in runs) != text:
            msg = f"Malformed CIGAR string: {text!r}"
            raise ValueError(msg)
        return cls(CigarOp(CigarOperator.from_char(ch), int(ln)) for ln, ch in runs)

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [CigarOp.to_tuple(run) for run in self]

    @property
    def query_length(self) -> int:
        """Read bases described by this CIGAR."""
        return sum(run.length for run in self if run.op.consumes_read_bases)

    @property
    def reference_length(self) -> int:
        """Reference bases spanned by this CIGAR."""
        return sum(run.length for run in self if run.op.consumes_reference_bases)

    def __str__(self) -> str:
        if not self:
            return "*"
        return "".join(f"{run.length}{run.op.char}" for run in self)

    def __repr__(self) -> str:
        return f"Cigar({str(self)!r})"


def reverse_cigar(cig: Cigar) -> Cigar:
    """Return the runs of `cig` in opposite order."""
    return Cigar(reversed(cig))


# ------------------------------- TRIMMING ---------------------------------- #


def trim_leading(cig: Cigar, trim_q: int) -> Cigar:
    """
    Remove `trim_q` read bases from the LEFT edge of `cig`.

    Read-consuming runs (M/I/S/=/X) are dropped while they fit entirely inside
    the trimmed stretch. The run that straddles the trim boundary is kept at
    its original length. Structural runs (D/N/H/P) met while trimming survive
    only if no read-consuming run has been dropped yet, which preserves a
    leading hard clip. Everything after the trim boundary is copied verbatim.
    """
    assert trim_q >= 0, f"Left trim amount must be non-negative, got {trim_q}"

    out: list[CigarOp] = []
    runs = iter(cig)
    remaining = trim_q
    leading = True
    while remaining > 0:
        run = next(runs, None)
        if run is None:
            break
        if not run.op.consumes_read_bases:
            if leading:
                out.append(run)
            continue
        keep_len = run.length - remaining
        if keep_len > 0:
            # NOTE: emitted at run.length rather than keep_len (see DESIGN.md)
            out.append(run)
            break
        remaining -= run.length
        leading = False

    # Append untouched tail
    out.extend(runs)
    return Cigar(out)


def trim_trailing(cig: Cigar, trim_q: int) -> Cigar:
    """Remove `trim_q` read bases from the RIGHT edge of `cig`."""
    return reverse_cigar(trim_leading(reverse_cigar(cig), trim_q))


@dataclass(frozen=True)
class AlignmentRecord:
    """
    One alignment, as an immutable value.

    Coordinates are 1-based; ``alignment_start == UNMAPPED_START`` marks a
    record that is not placed on the reference. ``source`` keeps the pysam
    segment the value was read from so that writing it back preserves every
    field this tool does not touch.
    """

    alignment_start: int
    mate_alignment_start: int = 0
    insert_size: int = 0
    is_reverse: bool = False
    sequence: str | None = None
    qualities: tuple[int, ...] | None = None
    cigar: Cigar = field(default_factory=Cigar)
    attributes: Mapping[str, object] = field(default_factory=dict)
    query_name: str = "*"
    reference_name: str | None = None
    source: pysam.AlignedSegment | None = field(
        default=None,
        compare=False,
        repr=False,
    )

    @property
    def is_unmapped(self) -> bool:
        return self.alignment_start == UNMAPPED_START

    @classmethod
    def from_pysam(cls, aln: pysam.AlignedSegment) -> AlignmentRecord:
        """Snapshot a pysam segment (0-based coordinates) as a record value."""
        qual = aln.query_qualities
        return cls(
            alignment_start=aln.reference_start + 1,
            mate_alignment_start=aln.next_reference_start + 1,
            insert_size=aln.template_length,
            is_reverse=aln.is_reverse,
            sequence=aln.query_sequence,
            qualities=None if qual is None else tuple(qual),
            cigar=Cigar.from_pysam(aln.cigartuples),
            attributes=MappingProxyType(dict(aln.get_tags())),
            query_name=aln.query_name or "*",
            reference_name=aln.reference_name,
            source=aln,
        )

    def to_pysam(self, header: pysam.AlignmentHeader) -> pysam.AlignedSegment:
        """
        Build a new pysam segment carrying this record's values.

        The source segment, when present, is copied and left untouched.
        """
        if self.source is not None:
            aln = copy.copy(self.source)
        else:
            aln = pysam.AlignedSegment(header)
            aln.query_name = self.query_name
            aln.is_reverse = self.is_reverse
            aln.is_unmapped = self.is_unmapped
            if self.reference_name is None:
                aln.reference_id = -1
            else:
                aln.reference_name = self.reference_name
            aln.set_tags(list(self.attributes.items()))

        aln.reference_start = self.alignment_start - 1
        aln.next_reference_start = self.mate_alignment_start - 1
        aln.template_length = self.insert_size
        aln.cigartuples = self.cigar.to_pysam() if self.cigar else None
        # Setting the sequence resets the qualities, so it must come first
        aln.query_sequence = self.sequence
        aln.query_qualities = None if self.qualities is None else list(self.qualities)
        return aln


def _keep_prefix(
    values: str | tuple[int, ...] | None,
    n: int,
) -> str | tuple[int, ...] | None:
    """Drop the last `n` elements of `values`."""
    return None if values is None else values[: max(len(values) - n, 0)]


def trim_record(
    record: AlignmentRecord,
    forward_trim: int,
    reverse_trim: int,
) -> AlignmentRecord:
    """
    Return a copy of `record` corrected for end-trimmed bases.

    Forward reads lost `forward_trim` bases from their reference-leftmost end,
    so the alignment start moves right and the CIGAR loses leading bases.
    Reverse reads are stored reverse-complemented: their trimmed 3' end is on
    the reference-leftmost side, the mate start shifts by `forward_trim`, and
    the CIGAR loses trailing bases. Unmapped records are returned as-is.
    """
    assert forward_trim >= 0, f"forward_trim must be non-negative, got {forward_trim}"
    assert reverse_trim <= 0, f"reverse_trim must be non-positive, got {reverse_trim}"

    if record.is_unmapped:
        return record

    insert_size_offset = forward_trim - reverse_trim

    if not record.is_reverse:
        return replace(
            record,
            alignment_start=record.alignment_start + forward_trim,
            insert_size=record.insert_size - insert_size_offset,
            sequence=None if record.sequence is None else record.sequence[forward_trim:],
            qualities=None if record.qualities is None else record.qualities[forward_trim:],
            cigar=trim_leading(record.cigar, forward_trim),
        )

    return replace(
        record,
        mate_alignment_start=record.mate_alignment_start + forward_trim,
        insert_size=record.insert_size + insert_size_offset,
        sequence=_keep_prefix(record.sequence, -reverse_trim),
        qualities=_keep_prefix(record.qualities, -reverse_trim),
        cigar=trim_trailing(record.cigar, -reverse_trim),
    )


# ------------------------------ CLUSTER MAP -------------------------------- #


class ClusterMap(Mapping[str, "str | None"]):
    """
    Read-only barcode -> cluster id lookup.

    A barcode mapped to ``None`` is known but has no cluster assigned.
    ``clusters`` lists every cluster id the table was built from, sorted.
    """

    __slots__ = ("_assignments", "_clusters")

    def __init__(
        self,
        assignments: Mapping[str, str | None],
        clusters: Iterable[str] | None = None,
    ) -> None:
        self._assignments: Mapping[str, str | None] = MappingProxyType(
            dict(assignments)
        )
        if clusters is None:
            clusters = (c for c in self._assignments.values() if c is not None)
        self._clusters: tuple[str, ...] = tuple(sorted(set(clusters)))

    @property
    def clusters(self) -> tuple[str, ...]:
        return self._clusters

    def __getitem__(self, barcode: str) -> str | None:
        return self._assignments[barcode]

    def __iter__(self) -> Iterator[str]:
        return iter(self._assignments)

    def __len__(self) -> int:
        return len(self._assignments)

    def __repr__(self) -> str:
        return f"ClusterMap(barcodes={len(self)}, clusters={list(self._clusters)})"


def load_cluster_map(path: str | Path, *, skip_header: bool = False) -> ClusterMap:
    """
    Read ``barcode<TAB or COMMA>cluster`` lines into a ClusterMap.

    Lines with fewer than two fields (or an empty barcode) are reported and
    skipped, extra fields are ignored, and a repeated barcode keeps its last
    assignment. An empty cluster field records the barcode with no cluster.
    """
    assignments: dict[str, str | None] = {}
    clusters: set[str] = set()
    with open(path, encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            if skip_header and lineno == 1:
                logger.debug(f"Skipping header line of {path}: {line.rstrip()!r}")
                continue
            fields = _CLUSTER_LINE_SPLIT.split(line.rstrip("\r\n"))
            if len(fields) < 2 or not fields[0].strip():  # noqa: PLR2004
                logger.warning(f"Skipping malformed line {lineno} of {path}: {line.rstrip()!r}")
                continue
            barcode, cluster = fields[0].strip(), fields[1].strip()
            assignments[barcode] = cluster or None
            if cluster:
                clusters.add(cluster)

    cluster_map = ClusterMap(assignments, clusters)
    logger.info(
        f"Loaded {len(cluster_map)} barcodes in {len(cluster_map.clusters)} clusters from {path}",
    )
    return cluster_map


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
    path: str | Path,
    write: bool,  # noqa: FBT001
    template: pysam.AlignmentFile | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with the mode implied by its extension. Writers copy
    the header of `template`. CRAM needs a reference FASTA to be resolvable.
    """
    path = str(path)
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

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if template is None:
            msg = f"Writing to '{path}' requires a template AlignmentFile"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, template=template, **kwargs)
    return pysam.AlignmentFile(path, mode, **kwargs)


def iter_records(inp: Iterable[pysam.AlignedSegment]) -> Iterator[AlignmentRecord]:
    """Lazily adapt pysam segments to AlignmentRecord values, in file order."""
    for aln in inp:
        yield AlignmentRecord.from_pysam(aln)


# -------------------------------- ROUTING ---------------------------------- #


class Channel(Protocol):
    """Anything a ClusterRouter can write records to."""

    num_written: int

    def write(self, record: AlignmentRecord) -> None: ...

    def close(self) -> None: ...


class AlignmentChannel:
    """A per-cluster alignment file writer."""

    __slots__ = ("handle", "num_written", "path")

    def __init__(self, handle: pysam.AlignmentFile, path: Path) -> None:
        self.handle = handle
        self.path = path
        self.num_written = 0

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        template: pysam.AlignmentFile,
        reference: str | None = None,
    ) -> AlignmentChannel:
        return cls(open_alignment(path, write=True, template=template, reference=reference), path)

    def write(self, record: AlignmentRecord) -> None:
        self.handle.write(record.to_pysam(self.handle.header))
        self.num_written += 1

    def close(self) -> None:
        self.handle.close()


def cluster_output_path(out_dir: str | Path, cluster_id: str, suffix: str = "bam") -> Path:
    """Deterministic output path for one cluster: ``<out_dir>/cluster_<id>.<suffix>``."""
    safe = _UNSAFE_FILENAME_CHARS.sub("_", cluster_id)
    return Path(out_dir) / f"{OUTPUT_PREFIX}{safe}.{suffix}"


class ClusterRouter:
    """
    Owns one output channel per cluster and fans records out to them.

    Channels are opened eagerly by `prepare`, before any record is read, and
    closed once by `close_all` (or on leaving the ``with`` block).
    """

    def __init__(self, opener: Callable[[Path], Channel], suffix: str = "bam") -> None:
        self.opener = opener
        self.suffix = suffix
        self.channels: dict[str, Channel] = {}
        self._stack = ExitStack()
        self._closed = False

    def prepare(self, cluster_ids: Iterable[str], out_dir: str | Path) -> Mapping[str, Channel]:
        """
        Open one channel per cluster id in `out_dir`.

        Every target path is checked before anything is opened; an existing
        file, or two ids that sanitise to the same file name, abort the run.
        """
        assert not self.channels, "ClusterRouter.prepare() may only be called once"

        out_dir = Path(out_dir)
        if not out_dir.is_dir():
            msg = f"Output directory does not exist: {out_dir}"
            logger.error(msg)
            raise FileNotFoundError(msg)

        targets: dict[str, Path] = {}
        claimed: dict[Path, str] = {}
        for cluster_id in sorted(set(cluster_ids)):
            path = cluster_output_path(out_dir, cluster_id, self.suffix)
            if path.exists():
                msg = f"{path.absolute()} exists. Exiting."
                raise OutputExistsError(msg)
            if path in claimed:
                msg = f"Clusters {claimed[path]!r} and {cluster_id!r} both map to {path}"
                raise OutputExistsError(msg)
            claimed[path] = cluster_id
            targets[cluster_id] = path

        for cluster_id, path in targets.items():
            try:
                # Reserve the path so a concurrent writer cannot slip in
                path.touch(exist_ok=False)
            except FileExistsError as exc:
                msg = f"{path.absolute()} exists. Exiting."
                raise OutputExistsError(msg) from exc
            channel = self.opener(path)
            self._stack.callback(channel.close)
            self.channels[cluster_id] = channel
            logger.debug(f"Opened output for cluster {cluster_id!r}: {path}")

        logger.info(f"Prepared {len(self.channels)} cluster outputs in {out_dir}")
        return MappingProxyType(self.channels)

    def route(self, record: AlignmentRecord, cluster_id: str) -> None:
        try:
            channel = self.channels[cluster_id]
        except KeyError:
            msg = f"No output channel prepared for cluster {cluster_id!r}"
            logger.error(msg)
            raise KeyError(msg) from None
        channel.write(record)

    def close_all(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stack.close()
        logger.debug(f"Closed {len(self.channels)} cluster outputs")

    def __enter__(self) -> ClusterRouter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close_all()


# ------------------------------ CORE LOGIC --------------------------------- #


def _cigar_length_mismatch(record: AlignmentRecord) -> bool:
    """True when a record's CIGAR and sequence disagree on the read length."""
    if record.sequence is None or not record.cigar:
        return False
    return record.cigar.query_length != len(record.sequence)


def process_stream(
    records: Iterable[AlignmentRecord],
    cluster_map: Mapping[str, str | None],
    router: ClusterRouter,
    offsets: TrimOffsets,
    barcode_tag: str = DEFAULT_BARCODE_TAG,
) -> RoutingStats:
    """
    Trim and route every record to its cluster's channel, in input order.

    Records are dropped when they lack the barcode tag, when the barcode is
    absent from `cluster_map`, or when it maps to no cluster (the last case is
    reported as a warning).
    """
    stats = RoutingStats()

    for record in records:
        if stats.seen and stats.seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: seen={stats.seen}, routed={stats.routed}, dropped={stats.dropped}",
            )

        barcode = record.attributes.get(barcode_tag)
        if barcode is None:
            stats.missing_barcode += 1
            logger.debug(f"Dropping '{record.query_name}': no {barcode_tag} tag")
            continue
        barcode = str(barcode)

        if barcode not in cluster_map:
            stats.unknown_barcode += 1
            logger.debug(f"Dropping '{record.query_name}': barcode {barcode} not in cluster table")
            continue

        cluster = cluster_map[barcode]
        if cluster is None:
            stats.missing_cluster += 1
            logger.warning(f"Missing cluster for barcode {barcode}")
            continue

        trimmed = trim_record(record, offsets.forward_trim, offsets.reverse_trim)
        if _cigar_length_mismatch(trimmed):
            if not stats.length_mismatch:
                logger.warning(
                    f"Record '{trimmed.query_name}' has a CIGAR covering "
                    f"{trimmed.cigar.query_length} read bases but a sequence of "
                    f"{len(trimmed.sequence)}; htslib readers will reject the "
                    "affected cluster files. Further mismatches are counted, not logged.",
                )
            stats.length_mismatch += 1
        router.route(trimmed, cluster)
        stats.routed += 1
        stats.per_cluster[cluster] += 1

    logger.info(
        f"Process totals: seen={stats.seen}, routed={stats.routed}, "
        f"no_barcode={stats.missing_barcode}, unknown_barcode={stats.unknown_barcode}, "
        f"missing_cluster={stats.missing_cluster}, length_mismatch={stats.length_mismatch}",
    )
    for cluster, count in sorted(stats.per_cluster.items()):
        logger.debug(f"Cluster {cluster}: {count} records")
    return stats


def run(  # noqa: PLR0913
    in_path: str | Path,
    cluster_path: str | Path,
    out_dir: str | Path,
    offsets: TrimOffsets,
    barcode_tag: str = DEFAULT_BARCODE_TAG,
    output_format: str = "bam",
    reference: str | None = None,
    skip_header: bool = False,  # noqa: FBT001, FBT002
) -> RoutingStats:
    """Split `in_path` into per-cluster files under `out_dir`."""
    if output_format not in OUTPUT_FORMATS:
        msg = f"Unsupported output format {output_format!r}; choose from {OUTPUT_FORMATS}"
        raise ConfigurationError(msg)

    cluster_map = load_cluster_map(cluster_path, skip_header=skip_header)

    with open_alignment(in_path, write=False, reference=reference) as inp:
        opener = partial(AlignmentChannel.open, template=inp, reference=reference)
        with ClusterRouter(opener, suffix=output_format) as router:
            router.prepare(cluster_map.clusters, out_dir)
            logger.info("Splitting alignments into clusters.")
            return process_stream(
                iter_records(inp),
                cluster_map,
                router,
                offsets,
                barcode_tag=barcode_tag,
            )


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
            "Split a SAM/BAM/CRAM file into one file per cell cluster, using a\n"
            "barcode -> cluster table. Records are corrected for bases trimmed\n"
            "from the read ends before alignment."
        ),
    )

    # I/O
    p.add_argument("bamfile", help="Input SAM/BAM/CRAM")
    p.add_argument(
        "clusterbarcodes",
        help="Barcode to cluster table (tab- or comma-separated)",
    )
    p.add_argument("outdir", help="Existing directory for the per-cluster outputs")
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--output-format",
        choices=OUTPUT_FORMATS,
        default="bam",
        help="Format of the per-cluster outputs (default: bam)",
    )
    p.add_argument(
        "--mapping-header",
        action="store_true",
        help="Skip the first line of the cluster table",
    )

    # Barcode and trimming
    p.add_argument(
        "--bambc",
        default=DEFAULT_BARCODE_TAG,
        help=f'Alignment tag holding the cell barcode (default: "{DEFAULT_BARCODE_TAG}")',
    )
    p.add_argument(
        "--startbases",
        type=int,
        default=DEFAULT_FORWARD_TRIM,
        help=(
            "Bases to add to the start position (must be 0 or positive) "
            f"(default: {DEFAULT_FORWARD_TRIM})"
        ),
    )
    p.add_argument(
        "--endbases",
        type=int,
        default=DEFAULT_REVERSE_TRIM,
        help=(
            "Bases to add to the end position (must be 0 or negative) "
            f"(default: {DEFAULT_REVERSE_TRIM})"
        ),
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
    logger.info("Starting cluster split.")

    started = time.perf_counter()
    try:
        offsets = TrimOffsets(forward_trim=args.startbases, reverse_trim=args.endbases)
        logger.debug(f"TrimOffsets: {offsets}")
        stats = run(
            args.bamfile,
            args.clusterbarcodes,
            args.outdir,
            offsets,
            barcode_tag=args.bambc,
            output_format=args.output_format,
            reference=args.reference,
            skip_header=args.mapping_header,
        )
    except (ConfigurationError, OutputExistsError) as exc:
        logger.error(str(exc))
        sys.exit(1)

    elapsed = time.perf_counter() - started
    logger.success(
        f"Routed: {stats.routed} | Dropped (no barcode): {stats.missing_barcode} | "
        f"Dropped (barcode not in table): {stats.unknown_barcode} | "
        f"Dropped (no cluster): {stats.missing_cluster} | "
        f"Completed in: {elapsed:.3f} seconds.",
    )


if __name__ == "__main__":
    main()
