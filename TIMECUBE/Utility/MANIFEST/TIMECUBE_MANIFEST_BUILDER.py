"""
TIMECUBE_MANIFEST_BUILDER
=========================

Build a resample manifest from instrument timestamp files.

Inputs
------
- Timestamp files found by TIMECUBE_FILE_SCANNER.  Each non-comment line
  holds one frame start time as its first token, in any notation accepted
  by `parse_time_arg` (unix seconds, ``UT...``, or ``+offset`` relative to
  the start time in the file name).  Line i (counting non-comment,
  non-blank lines) is plane i of the sibling image file.
- The output grid: start `tstart`, end `tend`, bin width `dt` [s].

Frame intervals
---------------
A frame lasts until the next frame of the run starts (across file
boundaries).  The last frame of the run lasts the median frame spacing
(or `dt` when the run holds a single frame).  Frames with a non-positive
duration (repeated timestamps) are dropped.

Records
-------
Only frames overlapping [tstart, tend) produce records.  Resampled
coordinates are (t - tstart) / dt, clipped to [0, n_bins] with
n_bins = ceil((tend - tstart) / dt).  Records come out non-decreasing in
resampled start, which the cube driver relies on.

Output
------
``<run_name>.resample.txt`` with ``# key=value`` metadata comments
(sname, tstart, tend, dt, n_bins), a column comment and one record per
line.
"""

from __future__ import annotations

import argparse
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import (
    DEFAULT_RESAMPLE_CONFIG,
    PARTIAL_SUFFIX,
    ResampleConfig,
)
from TIMECUBE.Utility.MANIFEST.TIMECUBE_FILE_SCANNER import SourceFile, scan_source_files
from TIMECUBE.Utility.MANIFEST.TIMECUBE_TIME_PARSING import (
    format_ut,
    parse_time_arg,
)
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_MANIFEST_RECORDS import (
    ManifestRecord,
    format_manifest_header,
)
from TIMECUBE.Utility.TIMECUBE_LOGGING import get_logger


@dataclass(frozen=True)
class FrameTime:
    """Start time of one input frame and where its pixels live."""

    source_name: str
    local_index: int
    t: float


# -----------------------------------------------------------------------------
# Timestamp files
# -----------------------------------------------------------------------------
def read_frame_times(
    source: SourceFile,
    logger: Optional[logging.Logger] = None,
) -> List[FrameTime]:
    """
    Frame start times listed in one timestamp file.

    An unparseable line is reported and skipped; it still consumes its
    plane index so later frames keep their position in the image file.
    """
    log = logger or logging.getLogger("TIMECUBE_MANIFEST")
    frames: List[FrameTime] = []
    local_index = 0
    with source.path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            text = line.strip()
            if not text or text.startswith("#"):
                continue
            token = text.split()[0]
            try:
                t = parse_time_arg(token, relative_to=source.tstart)
            except ValueError as exc:
                log.warning("%s:%d: skipping frame %d: %s", source.path, lineno, local_index, exc)
            else:
                frames.append(FrameTime(source_name=str(source.path), local_index=local_index, t=t))
            local_index += 1
    return frames


def collect_frame_times(
    sources: Sequence[SourceFile],
    logger: Optional[logging.Logger] = None,
) -> List[FrameTime]:
    """All frames of `sources`, ordered by start time (stable for ties)."""
    frames: List[FrameTime] = []
    for source in sources:
        frames.extend(read_frame_times(source, logger=logger))
    frames.sort(key=lambda fr: fr.t)
    return frames


def frame_end_times(starts: np.ndarray, fallback_duration: float) -> np.ndarray:
    """
    End time of every frame: the next start, and for the last frame
    start + median spacing (or `fallback_duration` for a single frame).
    """
    starts = np.asarray(starts, dtype=float)
    if starts.size == 0:
        return starts.copy()
    ends = np.empty_like(starts)
    ends[:-1] = starts[1:]
    spacing = np.diff(starts)
    spacing = spacing[spacing > 0]
    last_duration = float(np.median(spacing)) if spacing.size else float(fallback_duration)
    ends[-1] = starts[-1] + last_duration
    return ends


# -----------------------------------------------------------------------------
# Manifest construction
# -----------------------------------------------------------------------------
def grid_bin_count(tstart: float, tend: float, dt: float) -> int:
    """Number of output bins of width `dt` needed to cover [tstart, tend)."""
    return int(math.ceil((tend - tstart) / dt))


def build_manifest(
    frames: Sequence[FrameTime],
    tstart: float,
    tend: float,
    dt: float,
    logger: Optional[logging.Logger] = None,
) -> List[ManifestRecord]:
    """
    Map time-ordered frames onto the output grid.

    Raises
    ------
    ValueError
        If dt <= 0 or tend <= tstart.
    """
    if not (dt > 0.0 and math.isfinite(dt)):
        raise ValueError(f"build_manifest: dt must be finite and > 0, got {dt!r}.")
    if not tend > tstart:
        raise ValueError(f"build_manifest: tend ({tend}) must be after tstart ({tstart}).")

    log = logger or logging.getLogger("TIMECUBE_MANIFEST")
    n_bins = grid_bin_count(tstart, tend, dt)

    ordered = sorted(frames, key=lambda fr: fr.t)
    starts = np.array([fr.t for fr in ordered], dtype=float)
    ends = frame_end_times(starts, fallback_duration=dt)

    records: List[ManifestRecord] = []
    n_degenerate = 0
    for fr, a, b in zip(ordered, starts, ends):
        if b <= a:
            n_degenerate += 1
            continue
        if b <= tstart or a >= tend:
            continue
        rs = max((a - tstart) / dt, 0.0)
        re = min((b - tstart) / dt, float(n_bins))
        if re <= rs:
            continue
        records.append(
            ManifestRecord(
                global_index=len(records),
                interval_start=float(a),
                interval_end=float(b),
                source_name=fr.source_name,
                local_index=fr.local_index,
                resampled_start=rs,
                resampled_end=re,
            )
        )

    if n_degenerate:
        log.warning("Dropped %d frame(s) with non-positive duration (repeated timestamps).", n_degenerate)
    log.info("Built %d manifest record(s) over %d bin(s) of %.6g s.", len(records), n_bins, dt)
    return records


def manifest_metadata(sname: str, tstart: float, tend: float, dt: float) -> Dict[str, object]:
    """``# key=value`` header entries for a manifest."""
    return {
        "sname": sname,
        "tstart": f"{tstart:.6f}",
        "tstart_ut": format_ut(tstart),
        "tend": f"{tend:.6f}",
        "dt": f"{dt:.9g}",
        "n_bins": grid_bin_count(tstart, tend, dt),
    }


def write_manifest(
    records: Sequence[ManifestRecord],
    path: Union[str, Path],
    metadata: Optional[Dict[str, object]] = None,
) -> Path:
    """
    Write `records` (plus metadata comments) to `path`.

    The text is written to `<path>.partial` and renamed onto `path` once
    complete; on failure the partial file is removed and `path` is untouched.
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    partial = out.with_name(out.name + PARTIAL_SUFFIX)
    try:
        with partial.open("w", encoding="utf-8") as f:
            f.write(format_manifest_header(metadata))
            for rec in records:
                f.write(rec.to_line() + "\n")
        partial.replace(out)
    except Exception:
        partial.unlink(missing_ok=True)
        raise
    return out


def generate_manifest(
    teldir: Union[str, Path],
    sname: str,
    tstart: float,
    tend: float,
    dt: float,
    output_path: Union[str, Path],
    *,
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """
    Scan, build and write a manifest in one call.

    Raises
    ------
    RuntimeError
        If no timestamp file covers the range.
    ValueError
        On an invalid grid (see build_manifest).
    """
    log = logger or logging.getLogger("TIMECUBE_MANIFEST")
    sources = scan_source_files(teldir, sname, tstart, tend, config=config, logger=log)
    if not sources:
        raise RuntimeError(
            f"TIMECUBE_MANIFEST_BUILDER: no '{sname}' timestamp files under {teldir} "
            f"cover {format_ut(tstart)} .. {format_ut(tend)}."
        )
    frames = collect_frame_times(sources, logger=log)
    records = build_manifest(frames, tstart, tend, dt, logger=log)
    out = write_manifest(records, output_path, manifest_metadata(sname, tstart, tend, dt))
    log.info("Wrote manifest %s", out)
    return out


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Write a resample manifest mapping instrument frames onto a regular time grid.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("teldir", help="Telescope data directory (contains YYYYMMDD/ folders).")
    p.add_argument("sname", help="Sensor/stream name.")
    p.add_argument("tstart", help="Grid start: UTYYYYMMDDTHH:MM:SS.SSS or unix seconds.")
    p.add_argument("tend", help="Grid end: absolute, or +SS / +MM:SS / +HH:MM:SS relative to tstart.")
    p.add_argument("dt", type=float, help="Bin width [s].")
    p.add_argument("-o", "--output", required=True, help="Manifest path (*.resample.txt).")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def _main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    log = get_logger("TIMECUBE_MANIFEST", level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        tstart = parse_time_arg(args.tstart)
        tend = parse_time_arg(args.tend, relative_to=tstart)
        generate_manifest(args.teldir, args.sname, tstart, tend, args.dt, args.output, logger=log)
    except (ValueError, RuntimeError, OSError) as exc:
        log.error("%s", exc)
        return 1
    return 0


__all__ = [
    "FrameTime",
    "read_frame_times",
    "collect_frame_times",
    "frame_end_times",
    "grid_bin_count",
    "build_manifest",
    "manifest_metadata",
    "write_manifest",
    "generate_manifest",
]


if __name__ == "__main__":
    raise SystemExit(_main())
