"""
TIMECUBE_FILE_SCANNER
=====================

Locate the instrument files covering a time range.

Directory convention
--------------------
    <teldir>/<YYYYMMDD>/<sname>/<sname>_HH:MM:SS.sssssssss.txt

Each ``.txt`` timestamp file lists the start times of the frames stored in
its sibling image file (same stem, ``.fits``; compressed ``.fits.fz`` /
``.fits.gz`` variants are accepted).  The time in the file name is the start
of the sequence; the day comes from the ``YYYYMMDD`` directory.

Selection rule
--------------
A file whose name time is at or before `tstart` may still hold frames that
cover `tstart`, so the last such file (the "previous file") is kept, plus
every later file starting at or before `tend`.  Day directories are scanned
from the day before `tstart` so a previous file recorded just before
midnight is found.

Usage (command line)
--------------------
    python -m TIMECUBE.Utility.MANIFEST.TIMECUBE_FILE_SCANNER \
        /data/tel1 cam0 UT20240613T12:10:00 +2:05

prints the time-scan report and one file path per line.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import (
    DEFAULT_RESAMPLE_CONFIG,
    ResampleConfig,
)
from TIMECUBE.Utility.MANIFEST.TIMECUBE_TIME_PARSING import (
    day_directory_name,
    day_start,
    describe_time_range,
    parse_filename_time,
    parse_time_arg,
)
from TIMECUBE.Utility.TIMECUBE_LOGGING import get_logger


SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class SourceFile:
    """A timestamp file and the absolute start time encoded in its name."""

    path: Path
    tstart: float


# -----------------------------------------------------------------------------
# Image name resolution
# -----------------------------------------------------------------------------
def image_name_for(source_name: str, config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG) -> str:
    """``x.txt`` -> ``x.fits``; any other name gets ``.fits`` appended."""
    if source_name.endswith(config.timestamp_suffix):
        return source_name[: -len(config.timestamp_suffix)] + config.image_suffix
    return source_name + config.image_suffix


def resolve_image_path(
    source_name: str,
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
) -> Optional[Path]:
    """
    Map a manifest source name to an existing image file.

    Tries the plain image name first, then each compressed variant.  A name
    that already carries a compressed suffix is only tried as-is.  Returns
    None if no candidate exists.
    """
    direct = Path(source_name)
    if any(direct.name.endswith(s) for s in config.compressed_suffixes):
        return direct if direct.is_file() else None

    if direct.name.endswith(config.image_suffix):
        plain = direct
    else:
        plain = Path(image_name_for(source_name, config))
    candidates = [plain]
    stem = plain.name[: -len(config.image_suffix)]
    candidates.extend(plain.with_name(stem + s) for s in config.compressed_suffixes)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


# -----------------------------------------------------------------------------
# Scanning
# -----------------------------------------------------------------------------
def _iter_day_starts(tstart: float, tend: float):
    t = day_start(tstart) - SECONDS_PER_DAY
    while t <= tend:
        yield t
        t += SECONDS_PER_DAY


def list_day_files(
    teldir: Union[str, Path],
    sname: str,
    day_t0: float,
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
) -> List[SourceFile]:
    """All timestamp files of `sname` in the day directory starting at `day_t0`."""
    dirpath = Path(teldir) / day_directory_name(day_t0) / sname
    if not dirpath.is_dir():
        return []

    found: List[SourceFile] = []
    for entry in dirpath.iterdir():
        name = entry.name
        if not (entry.is_file() and name.startswith(sname) and name.endswith(config.timestamp_suffix)):
            continue
        t_in_day = parse_filename_time(name)
        if t_in_day is None:
            continue
        found.append(SourceFile(path=entry, tstart=day_t0 + t_in_day))
    return found


def select_covering_files(files: Sequence[SourceFile], tstart: float, tend: float) -> List[SourceFile]:
    """Apply the previous-file rule to a list of files (any order)."""
    ordered = sorted(files, key=lambda f: (f.tstart, str(f.path)))
    if not ordered:
        return []

    start_idx = 0
    for i, f in enumerate(ordered):
        if f.tstart <= tstart:
            start_idx = i
        else:
            break

    return [f for f in ordered[start_idx:] if f.tstart <= tend]


def scan_source_files(
    teldir: Union[str, Path],
    sname: str,
    tstart: float,
    tend: float,
    config: ResampleConfig = DEFAULT_RESAMPLE_CONFIG,
    logger: Optional[logging.Logger] = None,
) -> List[SourceFile]:
    """
    Timestamp files of `sname` under `teldir` covering [tstart, tend], in time order.

    Raises
    ------
    ValueError
        If tend < tstart.
    """
    if tend < tstart:
        raise ValueError(f"scan_source_files: tend ({tend}) precedes tstart ({tstart}).")

    log = logger or logging.getLogger("TIMECUBE_SCANNER")
    files: List[SourceFile] = []
    for t0 in _iter_day_starts(tstart, tend):
        day_files = list_day_files(teldir, sname, t0, config)
        if day_files:
            log.debug("%s: %d file(s)", day_directory_name(t0), len(day_files))
        files.extend(day_files)

    selected = select_covering_files(files, tstart, tend)
    log.info("Scanned %d file(s) for '%s'; %d cover the requested range.", len(files), sname, len(selected))
    return selected


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="List instrument timestamp files covering a time range.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("teldir", help="Telescope data directory (contains YYYYMMDD/ folders).")
    p.add_argument("sname", help="Sensor/stream name.")
    p.add_argument("tstart", help="Start time: UTYYYYMMDDTHH:MM:SS.SSS or unix seconds.")
    p.add_argument("tend", help="End time: absolute, or +SS / +MM:SS / +HH:MM:SS relative to tstart.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def _main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    log = get_logger("TIMECUBE_SCANNER", level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        tstart = parse_time_arg(args.tstart)
        tend = parse_time_arg(args.tend, relative_to=tstart)
    except ValueError as exc:
        log.error("%s", exc)
        return 1

    for line in describe_time_range(tstart, tend):
        print(line)

    try:
        files = scan_source_files(args.teldir, args.sname, tstart, tend, logger=log)
    except ValueError as exc:
        log.error("%s", exc)
        return 1

    for f in files:
        print(f.path)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
