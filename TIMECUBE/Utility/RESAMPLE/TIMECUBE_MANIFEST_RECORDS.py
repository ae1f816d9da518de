"""
TIMECUBE_MANIFEST_RECORDS
=========================

Reader for TIMECUBE resample manifests (``*.resample.txt``).

A manifest maps every input frame onto the output time grid.  One record
per line, whitespace separated:

    <global_index> <interval_start_unix> <interval_end_unix> <source_name>
    <local_index> <resampled_start> <resampled_end>

- Lines starting with '#' are comments.  Comments of the form
  ``# key=value`` carry run metadata (tstart, tend, dt, sname) written by
  the manifest builder and are exposed through `read_manifest_metadata`.
- A line with fewer than 7 parseable fields is skipped silently.
- ``resampled_start`` / ``resampled_end`` are in output-bin units.

The stream must be non-decreasing in ``resampled_start``; the cube
driver's flush policy relies on it.  This module does not reorder.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import BIN_BOUNDARY_EPSILON


MANIFEST_COLUMNS: Tuple[str, ...] = (
    "global_index",
    "interval_start",
    "interval_end",
    "source_name",
    "local_index",
    "resampled_start",
    "resampled_end",
)

RECORD_FORMAT = "%d %.6f %.6f %s %d %.6f %.6f"


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ManifestRecord:
    """
    One input-frame-to-output-grid mapping step.

    Attributes
    ----------
    global_index : int
        Running index of the input frame across the whole run.
    interval_start, interval_end : float
        Frame interval [unix seconds].
    source_name : str
        Identifier of the file backing the frame (resolved externally).
    local_index : int
        Zero-based plane index inside that file.
    resampled_start, resampled_end : float
        Frame interval in output-bin units (fractional).
    """

    global_index: int
    interval_start: float
    interval_end: float
    source_name: str
    local_index: int
    resampled_start: float
    resampled_end: float

    @property
    def span(self) -> float:
        """Record duration in bin units."""
        return self.resampled_end - self.resampled_start

    def first_bin(self) -> int:
        """Lowest bin this record can contribute to."""
        return int(math.floor(self.resampled_start))

    def last_bin(self, eps: float = BIN_BOUNDARY_EPSILON) -> int:
        """Highest bin this record can contribute to."""
        return int(math.floor(self.resampled_end - eps))

    def to_line(self) -> str:
        """Serialize in manifest line format (no trailing newline)."""
        return RECORD_FORMAT % (
            self.global_index,
            self.interval_start,
            self.interval_end,
            self.source_name,
            self.local_index,
            self.resampled_start,
            self.resampled_end,
        )


@dataclass
class ManifestSummary:
    """Result of the manifest pre-scan."""

    max_bin_index: int
    first_source: Optional[str]
    n_records: int
    n_malformed: int
    max_span: float
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def n_frames(self) -> int:
        """Number of output planes implied by the pre-scan."""
        return self.max_bin_index + 1


# -----------------------------------------------------------------------------
# Line parsing
# -----------------------------------------------------------------------------
def parse_manifest_line(line: str) -> Optional[ManifestRecord]:
    """
    Parse one manifest line.

    Returns None for comments, blank lines and malformed lines (fewer than
    seven parseable fields, or an empty/negative interval in bin units).
    """
    text = line.strip()
    if not text or text.startswith("#"):
        return None

    tokens = text.split()
    if len(tokens) < 7:
        return None

    try:
        record = ManifestRecord(
            global_index=int(tokens[0]),
            interval_start=float(tokens[1]),
            interval_end=float(tokens[2]),
            source_name=tokens[3],
            local_index=int(tokens[4]),
            resampled_start=float(tokens[5]),
            resampled_end=float(tokens[6]),
        )
    except ValueError:
        return None

    if not (math.isfinite(record.resampled_start) and math.isfinite(record.resampled_end)):
        return None
    if record.resampled_end <= record.resampled_start or record.local_index < 0:
        return None
    return record


def _is_record_candidate(line: str) -> bool:
    text = line.strip()
    return bool(text) and not text.startswith("#")


def _parse_metadata_comment(line: str) -> Optional[Tuple[str, str]]:
    text = line.strip()
    if not text.startswith("#"):
        return None
    body = text.lstrip("#").strip()
    if "=" not in body or " " in body.split("=", 1)[0]:
        return None
    key, value = body.split("=", 1)
    key = key.strip()
    if not key:
        return None
    return key, value.strip()


# -----------------------------------------------------------------------------
# Streams
# -----------------------------------------------------------------------------
PathLike = Union[str, Path]


def iter_manifest_lines(lines: Iterable[str]) -> Iterator[Tuple[str, Optional[ManifestRecord]]]:
    """
    Yield (raw_line, record_or_None) for every record-candidate line.

    Comments and blank lines are not yielded; malformed candidates are
    yielded with None so callers can count them.
    """
    for line in lines:
        if not _is_record_candidate(line):
            continue
        yield line, parse_manifest_line(line)


def iter_manifest_records(path: PathLike) -> Iterator[ManifestRecord]:
    """Yield valid records from a manifest file in arrival order."""
    with Path(path).open("r", encoding="utf-8") as f:
        for _, record in iter_manifest_lines(f):
            if record is not None:
                yield record


def read_manifest_metadata(path: PathLike) -> Dict[str, str]:
    """Collect ``# key=value`` comments from a manifest file."""
    meta: Dict[str, str] = {}
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            kv = _parse_metadata_comment(line)
            if kv is not None:
                meta[kv[0]] = kv[1]
    return meta


def prescan_manifest(path: PathLike, eps: float = BIN_BOUNDARY_EPSILON) -> ManifestSummary:
    """
    First pass over a manifest.

    Determines the highest output bin any record reaches (which fixes the
    cube length), the first valid source name (used to read the frame
    shape), the widest record span and record counts.

    A summary with ``max_bin_index < 0`` means the manifest holds no valid
    record; the caller treats that as a fatal startup error.
    """
    max_bin = -1
    first_source: Optional[str] = None
    n_records = 0
    n_malformed = 0
    max_span = 0.0
    meta: Dict[str, str] = {}

    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            kv = _parse_metadata_comment(line)
            if kv is not None:
                meta[kv[0]] = kv[1]
                continue
            if not _is_record_candidate(line):
                continue
            record = parse_manifest_line(line)
            if record is None:
                n_malformed += 1
                continue
            n_records += 1
            if first_source is None:
                first_source = record.source_name
            max_bin = max(max_bin, record.last_bin(eps))
            max_span = max(max_span, record.span)

    return ManifestSummary(
        max_bin_index=max_bin,
        first_source=first_source,
        n_records=n_records,
        n_malformed=n_malformed,
        max_span=max_span,
        metadata=meta,
    )


def format_manifest_header(metadata: Optional[Dict[str, object]] = None) -> str:
    """Comment block written at the top of a manifest."""
    lines = []
    for key, value in (metadata or {}).items():
        lines.append(f"# {key}={value}")
    lines.append("# " + " ".join(MANIFEST_COLUMNS))
    return "\n".join(lines) + "\n"


__all__ = [
    "MANIFEST_COLUMNS",
    "RECORD_FORMAT",
    "ManifestRecord",
    "ManifestSummary",
    "parse_manifest_line",
    "iter_manifest_lines",
    "iter_manifest_records",
    "read_manifest_metadata",
    "prescan_manifest",
    "format_manifest_header",
]
