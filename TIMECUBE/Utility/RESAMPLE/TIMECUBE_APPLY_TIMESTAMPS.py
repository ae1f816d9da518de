"""
TIMECUBE_APPLY_TIMESTAMPS
=========================

Build a regularly time-binned FITS cube from a resample manifest.

Overview
--------
The manifest (see TIMECUBE_MANIFEST_RECORDS) lists every input frame with
its interval in output-bin units.  Each frame is spread over the output bins
it overlaps with box-kernel weights (TIMECUBE_OVERLAP_ACCUMULATOR), and
finished bins are written to the cube (TIMECUBE_CUBE_WRITER) as soon as no
later record can touch them.

Run sequence
------------
1) Pre-scan the manifest: highest bin reached (cube length), first valid
   source (frame shape), record counts.  No valid record is fatal.
2) Open the first source to learn (height, width).  Failure is fatal.
3) Create the cube, zero-filled, with one plane per bin.
4) For each record, in manifest order:
       read the plane (unreadable -> warning, record skipped)
       flush every active frame below the record's first bin
       add the weighted plane to every bin it overlaps
5) Flush the remaining frames, fill in the summary header cards, close.

Bins no record ever reaches stay zero and are never written.

Usage (command line)
--------------------
    python -m TIMECUBE.Utility.RESAMPLE.TIMECUBE_APPLY_TIMESTAMPS \
        run.resample.txt [-o run.fits] [--progress] [-v]

Exit status is 0 on success and 1 on a fatal startup or write error.
"""

from __future__ import annotations

import argparse
import enum
import logging
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence, Set, Tuple, Union

from tqdm import tqdm

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import (
    DEFAULT_RESAMPLE_CONFIG,
    ResampleConfig,
    describe_config,
)
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_CUBE_WRITER import CubeWriter
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_FRAME_SOURCE import InputFrameSource, SourceResolver
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_MANIFEST_RECORDS import (
    ManifestRecord,
    ManifestSummary,
    iter_manifest_records,
    prescan_manifest,
)
from TIMECUBE.Utility.RESAMPLE.TIMECUBE_OVERLAP_ACCUMULATOR import (
    ActiveFrameSet,
    iter_bin_weights,
    max_active_frames,
)
from TIMECUBE.Utility.TIMECUBE_LOGGING import get_logger


class LoopState(enum.Enum):
    """States of the record-application loop."""

    AWAITING_RECORD = "awaiting_record"
    HAVE_RECORD = "have_record"
    DRAINED = "drained"


@dataclass
class CubeBuildResult:
    """
    Summary of one cube build.

    Attributes
    ----------
    output_path : Path
        Finalized cube.
    shape : tuple[int, int, int]
        (n_frames, height, width).
    n_records : int
        Valid manifest records seen.
    n_applied : int
        Records whose plane was read and accumulated.
    n_malformed : int
        Manifest lines skipped as malformed.
    n_unreadable : int
        Records skipped because their plane could not be read.
    n_planes_written : int
        Output planes persisted (the rest of the cube stays zero).
    peak_active_frames : int
        Largest number of output frames held in memory at once.
    written_bins : set[int]
        Bins persisted to the cube.
    """

    output_path: Path
    shape: Tuple[int, int, int]
    n_records: int = 0
    n_applied: int = 0
    n_malformed: int = 0
    n_unreadable: int = 0
    n_planes_written: int = 0
    peak_active_frames: int = 0
    written_bins: Set[int] = field(default_factory=set)

    @property
    def n_skipped(self) -> int:
        return self.n_malformed + self.n_unreadable


def default_output_path(
    manifest_path: Union[str, Path],
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
) -> Path:
    """``run.resample.txt`` -> ``run.fits``; any other name gets ``.fits`` appended."""
    p = Path(manifest_path)
    name = p.name
    if name.endswith(config.manifest_suffix):
        return p.with_name(name[: -len(config.manifest_suffix)] + config.image_suffix)
    return p.with_name(name + config.image_suffix)


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


# -----------------------------------------------------------------------------
# Startup
# -----------------------------------------------------------------------------
def _startup(
    manifest_path: Path,
    source: InputFrameSource,
    config: ResampleConfig,
    log: logging.Logger,
) -> Tuple[ManifestSummary, Tuple[int, int]]:
    if not manifest_path.is_file():
        raise RuntimeError(f"TIMECUBE_APPLY_TIMESTAMPS: manifest not found: {manifest_path}")

    summary = prescan_manifest(manifest_path, eps=config.bin_epsilon)
    if summary.max_bin_index < 0 or summary.first_source is None:
        raise RuntimeError(
            f"TIMECUBE_APPLY_TIMESTAMPS: no valid records in manifest {manifest_path} "
            f"({summary.n_malformed} malformed line(s))."
        )
    log.info(
        "Manifest %s: %d record(s), %d malformed, %d output bin(s), widest record %.3f bin(s)",
        manifest_path,
        summary.n_records,
        summary.n_malformed,
        summary.n_frames,
        summary.max_span,
    )

    frame_shape = source.probe_frame_shape(summary.first_source)
    log.info("Frame shape %d x %d (from %s)", frame_shape[1], frame_shape[0], source.current_path)
    return summary, frame_shape


# -----------------------------------------------------------------------------
# Record loop
# -----------------------------------------------------------------------------
def _apply_records(
    records: Iterable[ManifestRecord],
    source: InputFrameSource,
    active: ActiveFrameSet,
    writer: CubeWriter,
    result: CubeBuildResult,
    config: ResampleConfig,
    log: logging.Logger,
) -> None:
    state = LoopState.AWAITING_RECORD
    prev_start: Optional[float] = None

    for record in records:
        state = LoopState.HAVE_RECORD
        log.debug("%s: record %d (%s[%d])", state.name, record.global_index, record.source_name, record.local_index)
        result.n_records += 1

        plane = source.read_plane(record.source_name, record.local_index)
        if plane is None:
            log.warning("Skipping record %d: %s", record.global_index, source.last_error)
            result.n_unreadable += 1
            state = LoopState.AWAITING_RECORD
            continue

        if prev_start is not None and record.resampled_start < prev_start:
            log.warning(
                "Record %d starts at %.6f, before the previous record (%.6f); "
                "manifest is not ordered by resampled start.",
                record.global_index,
                record.resampled_start,
                prev_start,
            )
        prev_start = record.resampled_start

        k_start = record.first_bin()
        active.flush_below(k_start, writer.write_plane)

        for k, w in iter_bin_weights(record.resampled_start, record.resampled_end, config.bin_epsilon):
            if k < 0:
                log.debug("Record %d: bin %d precedes the grid; dropped (weight %.6f).", record.global_index, k, w)
                continue
            if k < active.low_water_mark:
                log.warning(
                    "Record %d: bin %d was already written; contribution dropped (weight %.6f).",
                    record.global_index,
                    k,
                    w,
                )
                continue
            active.contribute(k, plane, w)

        result.n_applied += 1
        state = LoopState.AWAITING_RECORD

    state = LoopState.DRAINED
    log.debug("%s: flushing %d remaining frame(s)", state.name, len(active))
    active.flush_all(writer.write_plane)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def build_cube(
    manifest_path: Union[str, Path],
    *,
    output_path: Optional[Union[str, Path]] = None,
    resolver: Optional[SourceResolver] = None,
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
    logger: Optional[logging.Logger] = None,
) -> CubeBuildResult:
    """
    Apply a resample manifest and write the time-binned cube.

    Parameters
    ----------
    manifest_path : str or Path
        ``*.resample.txt`` manifest.
    output_path : str or Path, optional
        Cube path. Defaults to `default_output_path(manifest_path)`.
    resolver : callable, optional
        Maps manifest source names to image files (see TIMECUBE_FRAME_SOURCE).
    config : ResampleConfig
    logger : logging.Logger, optional

    Returns
    -------
    CubeBuildResult

    Raises
    ------
    RuntimeError
        Startup failure (missing manifest, no valid record, first source
        unreadable).
    CubeWriteError
        The cube could not be created, written or finalized.
    """
    log = logger or get_logger("TIMECUBE_APPLYTS")
    manifest_path = Path(manifest_path)
    out = Path(output_path) if output_path is not None else default_output_path(manifest_path, config)
    log.debug("Config: %s", describe_config(config))

    with InputFrameSource(resolver=resolver, config=config, logger=log) as source:
        summary, frame_shape = _startup(manifest_path, source, config, log)
        source.frame_shape = frame_shape

        writer = CubeWriter(
            out,
            summary.n_frames,
            frame_shape[0],
            frame_shape[1],
            tstart=_float_or_none(summary.metadata.get("tstart")),
            dt=_float_or_none(summary.metadata.get("dt")),
            overwrite=config.overwrite_output,
            logger=log,
        )
        result = CubeBuildResult(
            output_path=out,
            shape=writer.shape,
            n_malformed=summary.n_malformed,
        )
        active = ActiveFrameSet(frame_shape, logger=log)

        try:
            with closing(iter_manifest_records(manifest_path)) as record_iter:
                records: Iterable[ManifestRecord] = record_iter
                if config.show_progress:
                    records = tqdm(records, total=summary.n_records, desc="Applying timestamps", unit="rec")
                _apply_records(records, source, active, writer, result, config, log)
            writer.finalize(n_records=result.n_applied, n_skipped=result.n_skipped)
        finally:
            # No-op after a successful finalize.
            writer.abort()

    result.n_planes_written = len(writer.written_bins)
    result.written_bins = writer.written_bins
    result.peak_active_frames = active.peak_size

    bound = max_active_frames(summary.max_span)
    if active.peak_size > bound:
        log.warning("Active frame set peaked at %d, above the expected bound %d.", active.peak_size, bound)

    log.info(
        "Cube %s: %d/%d record(s) applied, %d unreadable, %d malformed, "
        "%d/%d plane(s) written, peak %d active frame(s).",
        out,
        result.n_applied,
        result.n_records,
        result.n_unreadable,
        result.n_malformed,
        result.n_planes_written,
        summary.n_frames,
        result.peak_active_frames,
    )
    return result


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Resample instrument frames onto a regular time grid and write a FITS cube.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("manifest", help="Resample manifest (*.resample.txt).")
    p.add_argument("-o", "--output", default=None, help="Output cube path (default: <manifest stem>.fits).")
    p.add_argument("--no-overwrite", action="store_true", help="Fail instead of replacing an existing cube.")
    p.add_argument("--progress", action="store_true", help="Show a progress bar over manifest records.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def _main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    log = get_logger("TIMECUBE_APPLYTS", level=logging.DEBUG if args.verbose else logging.INFO)
    config = ResampleConfig(
        overwrite_output=not args.no_overwrite,
        show_progress=args.progress,
    )
    try:
        build_cube(args.manifest, output_path=args.output, config=config, logger=log)
    except (RuntimeError, OSError) as exc:
        log.error("%s", exc)
        return 1
    return 0


__all__ = [
    "LoopState",
    "CubeBuildResult",
    "default_output_path",
    "build_cube",
]


if __name__ == "__main__":
    raise SystemExit(_main())
